from __future__ import annotations
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, ClassVar, List, Optional, Sequence

from metering.engine.errors import UnsupportedAggregationType
from metering.engine.running_total import RunningTotalCalculator
from metering.persistence.store import EventStore
from metering.schemas.models import (
    AggregationResult,
    AggregationType,
    AggregationWindow,
    BillableMetric,
    FreeUnitOptions,
    GroupedValue,
    UsageEvent,
)


def _now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class AggregationStrategy(ABC):
    """
    One computation per billable metric type, parameterized by an optional
    grouping key. Ungrouped is the degenerate case of one implicit group:

      - ungrouped: a single result, zero-valued when nothing matched
      - grouped: `aggregations` holds one result per non-empty group,
        each tagged with `grouped_by`; groups without events are absent
    """

    aggregation_type: ClassVar[AggregationType]
    # increment of one triggering event in advance mode; None => event-derived
    pay_in_advance_unit: ClassVar[Optional[Decimal]] = Decimal(1)
    # the event property aggregated, when the type needs one
    requires_field: ClassVar[bool] = False

    def __init__(
        self,
        *,
        metric: BillableMetric,
        event_store: EventStore,
        clock: Callable[[], datetime] = _now_utc,
    ):
        self.metric = metric
        self.event_store = event_store
        self.clock = clock

    @property
    def field(self) -> str:
        return self.metric.field_name or ""

    # ---------------- public operations ----------------

    async def compute(
        self,
        window: AggregationWindow,
        grouping_key: Sequence[str] = (),
        options: Optional[FreeUnitOptions] = None,
    ) -> AggregationResult:
        options = options or FreeUnitOptions()
        key = tuple(grouping_key)
        groups = await self._query(window, key)

        if not key:
            if not groups:
                return await self._empty_result(window, options)
            return await self._build(window, groups[0], options)

        results = []
        for group in groups:
            group_window = window.narrowed(group.groups)
            res = await self._build(group_window, group, options)
            results.append(res.model_copy(update={"grouped_by": dict(group.groups)}))
        return AggregationResult(aggregations=results)

    async def compute_aggregation(
        self, window: AggregationWindow, options: Optional[FreeUnitOptions] = None
    ) -> AggregationResult:
        return await self.compute(window, (), options)

    async def compute_grouped_by_aggregation(
        self,
        window: AggregationWindow,
        grouping_key: Sequence[str],
        options: Optional[FreeUnitOptions] = None,
    ) -> AggregationResult:
        return await self.compute(window, grouping_key, options)

    async def compute_pay_in_advance_aggregation(
        self, window: AggregationWindow, event: UsageEvent
    ) -> Decimal:
        """
        Units contributed by the single triggering event, never the window.
        """
        return self.pay_in_advance_unit if self.pay_in_advance_unit is not None else Decimal(0)

    async def compute_per_event_aggregation(self, window: AggregationWindow) -> List[Decimal]:
        raise UnsupportedAggregationType(
            self.aggregation_type.value,
            f"Per-event aggregation is not available for '{self.aggregation_type.value}' metrics",
        )

    async def running_total(
        self, window: AggregationWindow, aggregation: Decimal, options: FreeUnitOptions
    ) -> list:
        return RunningTotalCalculator(options).from_aggregation(aggregation)

    # ---------------- strategy hooks ----------------

    @abstractmethod
    async def _query(self, window: AggregationWindow, grouping_key: tuple) -> List[GroupedValue]:
        raise NotImplementedError

    def _current_usage_units(self, group: GroupedValue) -> Decimal:
        return group.value

    async def _build(
        self, window: AggregationWindow, group: GroupedValue, options: FreeUnitOptions
    ) -> AggregationResult:
        return AggregationResult(
            aggregation=group.value,
            count=group.count,
            current_usage_units=self._current_usage_units(group),
            pay_in_advance_aggregation=self.pay_in_advance_unit or Decimal(0),
            options={"running_total": await self.running_total(window, group.value, options)},
        )

    async def _empty_result(self, window: AggregationWindow, options: FreeUnitOptions) -> AggregationResult:
        return AggregationResult(
            pay_in_advance_aggregation=self.pay_in_advance_unit or Decimal(0),
            options={"running_total": await self.running_total(window, Decimal(0), options)},
        )
