from __future__ import annotations
from decimal import Decimal
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import AggregationType, AggregationWindow, GroupedValue


class CountAggregation(AggregationStrategy):
    """
    Number of events in the window. Each new event adds exactly one unit.
    """

    aggregation_type = AggregationType.COUNT

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        return await self.event_store.grouped_count(window, grouping_key)

    async def compute_per_event_aggregation(self, window: AggregationWindow) -> List[Decimal]:
        return [Decimal(1)] * await self.event_store.count(window)
