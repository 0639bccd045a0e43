from __future__ import annotations
from decimal import Decimal
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import (
    AggregationType,
    AggregationWindow,
    GroupedValue,
    UsageEvent,
)


class SumAggregation(AggregationStrategy):
    """
    Arithmetic sum of the metric field. In advance mode the increment is the
    triggering event's own value.
    """

    aggregation_type = AggregationType.SUM
    pay_in_advance_unit = None
    requires_field = True

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        return await self.event_store.grouped_sum(window, self.field, grouping_key)

    async def compute_pay_in_advance_aggregation(self, window: AggregationWindow, event: UsageEvent) -> Decimal:
        return self.event_store.event_value(event, self.field)

    async def compute_per_event_aggregation(self, window: AggregationWindow) -> List[Decimal]:
        return await self.event_store.event_values(window, self.field)
