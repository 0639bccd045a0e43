from __future__ import annotations
from decimal import Decimal, ROUND_FLOOR
from typing import List

from metering.schemas.models import FreeUnitOptions


class RunningTotalCalculator:
    """
    Produces the cumulative unit sequence pricing walks to decide which units
    fall inside a free allowance. An empty sequence means no free-unit option
    is set and the per-unit classification pass can be skipped.
    """

    def __init__(self, options: FreeUnitOptions | None = None):
        self.options = options or FreeUnitOptions()

    @property
    def enabled(self) -> bool:
        return self.options.enabled

    def from_aggregation(self, aggregation: Decimal) -> List[int]:
        """
        [1, 2, ..., N] for N = aggregation (whole units only).
        """
        if not self.enabled:
            return []
        units = int(Decimal(aggregation).to_integral_value(rounding=ROUND_FLOOR))
        return list(range(1, units + 1))
