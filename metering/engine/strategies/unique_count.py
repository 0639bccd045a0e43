from __future__ import annotations
from decimal import Decimal
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import AggregationType, AggregationWindow, GroupedValue, UsageEvent

REMOVE_OPERATION = "remove"


class UniqueCountAggregation(AggregationStrategy):
    """
    Distinct values of the metric field seen in the window.

    Current usage only counts values still active: a value whose latest
    event carries `operation_type: remove` no longer counts.
    """

    aggregation_type = AggregationType.UNIQUE_COUNT
    requires_field = True

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        return await self.event_store.grouped_unique_count(window, self.field, grouping_key)

    def _current_usage_units(self, group: GroupedValue) -> Decimal:
        return group.current if group.current is not None else group.value

    async def compute_pay_in_advance_aggregation(self, window: AggregationWindow, event: UsageEvent) -> Decimal:
        if str((event.properties or {}).get("operation_type") or "add") == REMOVE_OPERATION:
            return Decimal(0)
        return Decimal(1)
