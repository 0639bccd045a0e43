from __future__ import annotations
from decimal import Decimal
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import AggregationType, AggregationWindow, GroupedValue


class TimeBasedAggregation(AggregationStrategy):
    """
    Presence signal: the subscription is active for the period, so the
    aggregation is always one unit, whatever the events say.
    """

    aggregation_type = AggregationType.TIME_BASED

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        if not grouping_key:
            return [GroupedValue(value=Decimal(1), count=1)]

        # one active unit per group that showed up in the period
        return [
            GroupedValue(groups=g.groups, value=Decimal(1), count=1)
            for g in await self.event_store.grouped_count(window, grouping_key)
        ]
