from __future__ import annotations
from decimal import Decimal
from typing import Dict, List, Optional, Tuple, Iterable, Callable

from metering.persistence.store import BaseEventStore, GroupingKey, to_decimal, group_value
from metering.schemas.models import AggregationWindow, GroupedValue, UsageEvent

REMOVE_OPERATION = "remove"


def _order_key(event: UsageEvent) -> Tuple:
    return (event.timestamp, event.sequence or 0)


def _sort_groups(key: Tuple[Optional[str], ...]) -> Tuple:
    # None sorts first, like NULLS FIRST
    return tuple((v is not None, v or "") for v in key)


class InMemoryEventStore(BaseEventStore):
    """
    Event store over a Python list, used for previews and tests.

    Events are immutable once added; `add()` stamps the ingestion order used
    to break timestamp ties.
    """

    def __init__(self, events: Iterable[UsageEvent] = ()):
        self._events: List[UsageEvent] = []
        for e in events:
            self.add(e)

    def add(self, event: UsageEvent) -> UsageEvent:
        stored = event.model_copy(update={"sequence": len(self._events) + 1})
        self._events.append(stored)
        return stored

    # ---------------- helpers ----------------

    def _matching(self, window: AggregationWindow, field: Optional[str] = None) -> List[UsageEvent]:
        scope = window.scope
        out = []
        for e in self._events:
            if e.organization_id != scope.organization_id or e.subscription_id != scope.subscription_id:
                continue
            if e.code != window.code:
                continue
            if not (window.from_datetime <= e.timestamp < window.to_datetime):
                continue
            props = e.properties or {}
            if any(group_value(props.get(k)) != v for k, v in window.grouped_by_values.items()):
                continue
            if field is not None and props.get(field) is None:
                continue
            out.append(e)
        return sorted(out, key=_order_key)

    def _partition(
        self, events: List[UsageEvent], grouping_key: GroupingKey
    ) -> List[Tuple[Dict[str, Optional[str]], List[UsageEvent]]]:
        buckets: Dict[Tuple[Optional[str], ...], List[UsageEvent]] = {}
        for e in events:
            props = e.properties or {}
            key = tuple(group_value(props.get(k)) for k in grouping_key)
            buckets.setdefault(key, []).append(e)
        return [
            (dict(zip(grouping_key, key)), buckets[key])
            for key in sorted(buckets, key=_sort_groups)
        ]

    def _grouped(
        self,
        window: AggregationWindow,
        field: Optional[str],
        grouping_key: GroupingKey,
        reducer: Callable[[List[UsageEvent]], Tuple[Decimal, Optional[Decimal]]],
    ) -> List[GroupedValue]:
        rows = []
        for groups, events in self._partition(self._matching(window, field), tuple(grouping_key)):
            value, current = reducer(events)
            rows.append(GroupedValue(groups=groups, value=value, count=len(events), current=current))
        return rows

    # ---------------- grouped queries ----------------

    async def grouped_count(self, window: AggregationWindow, grouping_key: GroupingKey) -> List[GroupedValue]:
        return self._grouped(window, None, grouping_key, lambda evs: (Decimal(len(evs)), None))

    async def grouped_sum(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        def reduce(evs):
            return sum((self.event_value(e, field) for e in evs), Decimal(0)), None
        return self._grouped(window, field, grouping_key, reduce)

    async def grouped_max(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        return self._grouped(
            window, field, grouping_key, lambda evs: (max(self.event_value(e, field) for e in evs), None)
        )

    async def grouped_latest(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        # events are already in (timestamp, ingestion order)
        return self._grouped(window, field, grouping_key, lambda evs: (self.event_value(evs[-1], field), None))

    async def grouped_unique_count(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        def reduce(evs):
            last_operation: Dict[str, str] = {}
            for e in evs:
                props = e.properties or {}
                last_operation[group_value(props[field])] = str(props.get("operation_type") or "add")
            active = sum(1 for op in last_operation.values() if op != REMOVE_OPERATION)
            return Decimal(len(last_operation)), Decimal(active)
        return self._grouped(window, field, grouping_key, reduce)

    # ---------------- events ----------------

    async def last_event(self, window: AggregationWindow) -> Optional[UsageEvent]:
        events = self._matching(window)
        return events[-1] if events else None

    async def event_values(self, window: AggregationWindow, field: str) -> List[Decimal]:
        return [to_decimal(e.properties[field], field=field) for e in self._matching(window, field)]
