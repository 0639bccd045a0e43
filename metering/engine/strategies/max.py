from __future__ import annotations
from decimal import Decimal
from typing import List

from metering.engine.strategies.base import AggregationStrategy
from metering.schemas.models import AggregationType, AggregationWindow, GroupedValue


class MaxAggregation(AggregationStrategy):
    """
    Peak value of the metric field in the window.

    Current usage is the peak from the window start up to now, whatever the
    window end, so an open period can already report its peak.
    """

    aggregation_type = AggregationType.MAX
    requires_field = True

    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        groups = await self.event_store.grouped_max(window, self.field, grouping_key)
        if not groups:
            return groups

        now = self.clock()
        current = {}
        if now > window.from_datetime:
            current_window = window.model_copy(update={"to_datetime": now})
            for row in await self.event_store.grouped_max(current_window, self.field, grouping_key):
                current[_key(row)] = row.value

        return [
            g.model_copy(update={"current": current.get(_key(g), Decimal(0))})
            for g in groups
        ]

    def _current_usage_units(self, group: GroupedValue) -> Decimal:
        return group.current if group.current is not None else group.value


def _key(group: GroupedValue) -> tuple:
    return tuple(sorted(group.groups.items(), key=lambda kv: kv[0]))
