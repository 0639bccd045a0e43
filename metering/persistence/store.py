from __future__ import annotations
import json
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol, Sequence, List

from metering.engine.errors import StoreQueryFailed
from metering.schemas.models import AggregationWindow, GroupedValue, UsageEvent

GroupingKey = Sequence[str]


class EventStore(Protocol):
    """
    Query contract the aggregation strategies consume.

    Every query is scoped by the window: organization, subscription, metric
    code, the half-open interval [from, to) and the optional
    `grouped_by_values` filter. Grouped queries return one row per non-empty
    group, ordered by group values; empty groups are omitted.
    """

    async def count(self, window: AggregationWindow) -> int: ...

    async def grouped_count(self, window: AggregationWindow, grouping_key: GroupingKey) -> List[GroupedValue]: ...

    async def sum(self, window: AggregationWindow, field: str) -> Decimal: ...

    async def grouped_sum(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]: ...

    async def max(self, window: AggregationWindow, field: str) -> Optional[Decimal]: ...

    async def grouped_max(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]: ...

    async def latest(self, window: AggregationWindow, field: str) -> Optional[Decimal]: ...

    async def grouped_latest(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]: ...

    async def unique_count(self, window: AggregationWindow, field: str) -> int: ...

    async def grouped_unique_count(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]: ...

    async def last_event(self, window: AggregationWindow) -> Optional[UsageEvent]: ...

    async def event_values(self, window: AggregationWindow, field: str) -> List[Decimal]: ...

    def event_value(self, event: UsageEvent, field: str) -> Decimal: ...


def to_decimal(raw, *, field: str) -> Decimal:
    if isinstance(raw, bool):
        raise StoreQueryFailed(f"Property '{field}' is not numeric: {raw!r}")
    try:
        # str() keeps floats from leaking binary noise into the Decimal
        return Decimal(str(raw))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise StoreQueryFailed(f"Property '{field}' is not numeric: {raw!r}") from e


def group_value(raw) -> Optional[str]:
    """
    Group values compare as JSON text: strings as-is, other scalars the way
    json.dumps writes them (`true`, `3`, `2.5`).
    """
    if raw is None:
        return None
    if isinstance(raw, str):
        return raw
    return json.dumps(raw, default=str)


def _single(rows: List[GroupedValue]) -> Optional[GroupedValue]:
    return rows[0] if rows else None


class BaseEventStore(ABC):
    """
    Ungrouped queries are the degenerate case of the grouped ones with an
    empty grouping key. Subclasses only implement the grouped side.
    """

    @abstractmethod
    async def grouped_count(self, window: AggregationWindow, grouping_key: GroupingKey) -> List[GroupedValue]:
        raise NotImplementedError

    @abstractmethod
    async def grouped_sum(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        raise NotImplementedError

    @abstractmethod
    async def grouped_max(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        raise NotImplementedError

    @abstractmethod
    async def grouped_latest(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        raise NotImplementedError

    @abstractmethod
    async def grouped_unique_count(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        """
        `value` is the number of distinct values seen, `current` the number
        of values whose latest operation is not a removal.
        """
        raise NotImplementedError

    @abstractmethod
    async def last_event(self, window: AggregationWindow) -> Optional[UsageEvent]:
        raise NotImplementedError

    @abstractmethod
    async def event_values(self, window: AggregationWindow, field: str) -> List[Decimal]:
        raise NotImplementedError

    # ---------------- ungrouped ----------------

    async def count(self, window: AggregationWindow) -> int:
        row = _single(await self.grouped_count(window, ()))
        return row.count if row else 0

    async def sum(self, window: AggregationWindow, field: str) -> Decimal:
        row = _single(await self.grouped_sum(window, field, ()))
        return row.value if row else Decimal(0)

    async def max(self, window: AggregationWindow, field: str) -> Optional[Decimal]:
        row = _single(await self.grouped_max(window, field, ()))
        return row.value if row else None

    async def latest(self, window: AggregationWindow, field: str) -> Optional[Decimal]:
        row = _single(await self.grouped_latest(window, field, ()))
        return row.value if row else None

    async def unique_count(self, window: AggregationWindow, field: str) -> int:
        row = _single(await self.grouped_unique_count(window, field, ()))
        return int(row.value) if row else 0

    # ---------------- single event ----------------

    def event_value(self, event: UsageEvent, field: str) -> Decimal:
        raw = (event.properties or {}).get(field)
        if raw is None:
            return Decimal(0)
        return to_decimal(raw, field=field)
