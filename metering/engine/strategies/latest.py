from __future__ import annotations
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import AggregationType, AggregationWindow, GroupedValue


class LatestAggregation(AggregationStrategy):
    """
    Field value of the most recent event in the window; equal timestamps
    resolve to the event ingested last.
    """

    aggregation_type = AggregationType.LATEST
    requires_field = True

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        return await self.event_store.grouped_latest(window, self.field, grouping_key)
