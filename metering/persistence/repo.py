from __future__ import annotations
from datetime import timezone
from decimal import Decimal
from typing import Optional, List, Sequence, Any

import structlog
from sqlalchemy import select, func, cast, case, literal, Numeric, String
from sqlalchemy.exc import (
    SQLAlchemyError,
    OperationalError,
    InterfaceError,
    DisconnectionError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncSession

from metering.core.settings import settings
from metering.engine.errors import StoreUnavailable, StoreQueryFailed
from metering.persistence.models import UsageEventRecord
from metering.persistence.store import BaseEventStore, GroupingKey, to_decimal, group_value
from metering.schemas.models import AggregationWindow, GroupedValue, UsageEvent

logger = structlog.get_logger(__name__)

_UNAVAILABLE = (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError, OSError)


def _to_event(row: UsageEventRecord) -> UsageEvent:
    ts = row.timestamp
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return UsageEvent(
        transaction_id=row.transaction_id,
        organization_id=row.organization_id,
        subscription_id=row.subscription_id,
        code=row.code,
        timestamp=ts,
        properties=row.properties or {},
        sequence=row.id,
    )


# -------------------- Usage Events (metered billing) --------------------
class SqlEventStore(BaseEventStore):
    """
    Event store backed by the `usage_events` table.

    Each grouped query is a single statement, so one grouped answer always
    reflects one snapshot of the table.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        numeric_precision: Optional[int] = None,
        numeric_scale: Optional[int] = None,
    ):
        self.db = db
        self.numeric = Numeric(
            numeric_precision or settings.NUMERIC_PRECISION,
            settings.NUMERIC_SCALE if numeric_scale is None else numeric_scale,
            asdecimal=True,
        )

    # ---------------- ingestion (used by the ingestion service and tests) ----------------

    async def upsert_event(self, event: UsageEvent) -> UsageEvent:
        """
        Insert a usage event; a repeated transaction_id for the same
        (organization, subscription) returns the stored row (idempotent).
        """
        existing = await self.db.execute(
            select(UsageEventRecord).where(
                UsageEventRecord.organization_id == event.organization_id,
                UsageEventRecord.subscription_id == event.subscription_id,
                UsageEventRecord.transaction_id == event.transaction_id,
            )
        )
        row = existing.scalar_one_or_none()
        if row:
            return _to_event(row)

        row = UsageEventRecord(
            organization_id=event.organization_id,
            subscription_id=event.subscription_id,
            code=event.code,
            transaction_id=event.transaction_id,
            timestamp=event.timestamp,
            properties=dict(event.properties or {}),
        )
        self.db.add(row)
        await self.db.flush()
        await self.db.refresh(row)
        return _to_event(row)

    # ---------------- helpers ----------------

    def _prop(self, name: str):
        return UsageEventRecord.properties[name].as_string()

    @property
    def _dialect(self) -> str:
        return self.db.get_bind().dialect.name

    def _text(self, name: str):
        """
        Property as JSON text, the form group_value() gives on the Python side.
        """
        if self._dialect != "sqlite":
            # ->> already renders booleans and numbers as JSON text
            return self._prop(name)
        # JSON_EXTRACT hands back 1/0 for JSON booleans
        kind = func.json_type(UsageEventRecord.properties, f'$."{name}"')
        return case(
            (kind == "true", literal("true")),
            (kind == "false", literal("false")),
            else_=cast(self._prop(name), String),
        )

    def _num(self, name: str):
        return cast(self._prop(name), self.numeric)

    def _where(self, window: AggregationWindow, field: Optional[str] = None) -> list:
        clauses = [
            UsageEventRecord.organization_id == window.scope.organization_id,
            UsageEventRecord.subscription_id == window.scope.subscription_id,
            UsageEventRecord.code == window.code,
            UsageEventRecord.timestamp >= window.from_datetime,
            UsageEventRecord.timestamp < window.to_datetime,
        ]
        for key, value in window.grouped_by_values.items():
            prop = self._text(key)
            clauses.append(prop.is_(None) if value is None else prop == value)
        if field is not None:
            clauses.append(self._prop(field).is_not(None))
        return clauses

    def _group_columns(self, grouping_key: GroupingKey) -> list:
        return [self._text(k).label(f"group_{i}") for i, k in enumerate(grouping_key)]

    @staticmethod
    def _ordered(stmt, cols: list):
        if not cols:
            return stmt
        return stmt.group_by(*cols).order_by(*[c.asc().nulls_first() for c in cols])

    async def _rows(self, stmt) -> Sequence[Any]:
        try:
            res = await self.db.execute(stmt)
            return res.all()
        except _UNAVAILABLE as e:
            logger.exception("event_store_unavailable")
            raise StoreUnavailable(str(e)) from e
        except SQLAlchemyError as e:
            logger.exception("event_store_query_failed")
            raise StoreQueryFailed(str(e)) from e

    @staticmethod
    def _groups(grouping_key: GroupingKey, row) -> dict:
        return {k: group_value(row[i]) for i, k in enumerate(grouping_key)}

    async def _aggregate(self, window, field, grouping_key, reduce) -> List[GroupedValue]:
        # grouping happens over a subquery so GROUP BY only sees plain columns
        key = tuple(grouping_key)
        value = self._num(field) if field is not None else literal(1)
        sub = (
            select(*self._group_columns(key), UsageEventRecord.id.label("event_id"), value.label("value"))
            .where(*self._where(window, field))
            .subquery()
        )
        cols = [sub.c[f"group_{i}"] for i in range(len(key))]
        stmt = select(*cols, reduce(sub.c.value), func.count(sub.c.event_id))
        out = []
        for row in await self._rows(self._ordered(stmt, cols)):
            value, count = row[len(key)], row[len(key) + 1]
            # aggregate-only selects answer one row even when nothing matched
            if not count:
                continue
            out.append(GroupedValue(
                groups=self._groups(key, row),
                value=to_decimal(value, field=field or "count"),
                count=int(count),
            ))
        return out

    def _ranked(self, window, field, partition: list, grouping_key: GroupingKey, *extra):
        """
        Subquery ranking events newest-first within the group plus
        `partition` (timestamp, then ingestion order), along with the
        group's event count.
        """
        cols = self._group_columns(grouping_key)
        raw = [self._text(k) for k in grouping_key]
        rank = func.row_number().over(
            partition_by=[*raw, *partition] or None,
            order_by=(UsageEventRecord.timestamp.desc(), UsageEventRecord.id.desc()),
        )
        events = func.count(UsageEventRecord.id).over(partition_by=raw or None)
        return (
            select(*cols, *extra, rank.label("rank"), events.label("events"))
            .where(*self._where(window, field))
            .subquery()
        )

    # ---------------- grouped queries ----------------

    async def grouped_count(self, window: AggregationWindow, grouping_key: GroupingKey) -> List[GroupedValue]:
        return await self._aggregate(window, None, grouping_key, func.count)

    async def grouped_sum(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        return await self._aggregate(window, field, grouping_key, lambda v: func.coalesce(func.sum(v), 0))

    async def grouped_max(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        return await self._aggregate(window, field, grouping_key, func.max)

    async def grouped_latest(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        key = tuple(grouping_key)
        sub = self._ranked(window, field, [], key, self._num(field).label("value"))
        cols = [sub.c[f"group_{i}"] for i in range(len(key))]
        stmt = select(*cols, sub.c.value, sub.c.events).where(sub.c.rank == 1)
        if cols:
            stmt = stmt.order_by(*[c.asc().nulls_first() for c in cols])
        return [
            GroupedValue(
                groups=self._groups(key, row),
                value=to_decimal(row[len(key)], field=field),
                count=int(row[len(key) + 1]),
            )
            for row in await self._rows(stmt)
        ]

    async def grouped_unique_count(self, window: AggregationWindow, field: str, grouping_key: GroupingKey) -> List[GroupedValue]:
        key = tuple(grouping_key)
        unique_value = self._text(field)
        operation = func.coalesce(self._prop("operation_type"), "add")
        sub = self._ranked(
            window, field, [unique_value], key,
            unique_value.label("unique_value"), operation.label("operation"),
        )
        cols = [sub.c[f"group_{i}"] for i in range(len(key))]
        active = func.sum(case((sub.c.operation != "remove", 1), else_=0))
        stmt = self._ordered(
            select(*cols, func.count(), active, func.max(sub.c.events)).where(sub.c.rank == 1),
            cols,
        )
        out = []
        for row in await self._rows(stmt):
            distinct, active_count, events = row[len(key)], row[len(key) + 1], row[len(key) + 2]
            if not distinct:
                continue
            out.append(GroupedValue(
                groups=self._groups(key, row),
                value=Decimal(int(distinct)),
                count=int(events or 0),
                current=Decimal(int(active_count or 0)),
            ))
        return out

    # ---------------- events ----------------

    async def last_event(self, window: AggregationWindow) -> Optional[UsageEvent]:
        stmt = (
            select(UsageEventRecord)
            .where(*self._where(window))
            .order_by(UsageEventRecord.timestamp.desc(), UsageEventRecord.id.desc())
            .limit(1)
        )
        rows = await self._rows(stmt)
        return _to_event(rows[0][0]) if rows else None

    async def event_values(self, window: AggregationWindow, field: str) -> List[Decimal]:
        stmt = (
            select(self._num(field))
            .where(*self._where(window, field))
            .order_by(UsageEventRecord.timestamp.asc(), UsageEventRecord.id.asc())
        )
        return [to_decimal(row[0], field=field) for row in await self._rows(stmt)]
