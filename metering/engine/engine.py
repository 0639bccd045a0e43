from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Type

import structlog

from metering.engine.errors import (
    EmptyWindow,
    InvalidAggregationRequest,
    InvalidGroupingKey,
)
from metering.engine.strategies.base import AggregationStrategy
from metering.engine.strategies.registry import STRATEGIES, build_strategy
from metering.persistence.store import EventStore, group_value
from metering.schemas.models import (
    AggregationRequest,
    AggregationResult,
    AggregationType,
    AggregationWindow,
    BillingMode,
)
from metering.schemas.validator import load_aggregation_request

logger = structlog.get_logger(__name__)


class AggregationService:
    """
    Entry point for pricing callers:

      - arrears: aggregate the whole window, grouped or not
      - advance: aggregate the triggering event's own group and report the
        event's isolated contribution in `pay_in_advance_aggregation`
      - estimate: the event's isolated contribution only, no window query

    Every call is independent and holds no state beyond the event store
    handle, so calls for different (subscription, metric, window) tuples can
    run concurrently.
    """

    def __init__(
        self,
        event_store: EventStore,
        *,
        strategies: Optional[Dict[AggregationType, Type[AggregationStrategy]]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.event_store = event_store
        self.strategies = STRATEGIES if strategies is None else strategies
        self.clock = clock

    # ---------------- helpers ----------------

    def _strategy(self, request: AggregationRequest) -> AggregationStrategy:
        strategy = build_strategy(
            request.billable_metric,
            self.event_store,
            clock=self.clock,
            mapping=self.strategies,
        )
        if strategy.requires_field and not request.billable_metric.field_name:
            raise InvalidAggregationRequest(
                f"Billable metric '{request.billable_metric.code}' needs a field_name "
                f"for '{request.billable_metric.aggregation_type}' aggregation"
            )
        return strategy

    @staticmethod
    def _validate_window(request: AggregationRequest) -> AggregationWindow:
        window = request.window()
        if window.is_empty:
            raise EmptyWindow(
                f"Aggregation window is empty: from {window.from_datetime.isoformat()} "
                f"is not before to {window.to_datetime.isoformat()}"
            )
        return window

    @staticmethod
    def _validate_grouping_key(request: AggregationRequest) -> None:
        declared = set(request.billable_metric.event_properties)
        seen = set()
        for field in request.grouping_key:
            if field in seen:
                raise InvalidGroupingKey(field, f"Grouping field '{field}' is repeated")
            seen.add(field)
            if declared and field not in declared:
                raise InvalidGroupingKey(field)

    def _prepare(self, request: AggregationRequest):
        window = self._validate_window(request)
        strategy = self._strategy(request)
        self._validate_grouping_key(request)
        if request.mode == BillingMode.ADVANCE and request.event is None:
            raise InvalidAggregationRequest("Pay-in-advance aggregation needs the triggering event")
        return window, strategy

    # ---------------- public operations ----------------

    async def aggregate(self, request: AggregationRequest) -> AggregationResult:
        window, strategy = self._prepare(request)
        log = logger.bind(
            metric=request.billable_metric.code,
            aggregation_type=request.billable_metric.aggregation_type,
            subscription_id=request.subscription_scope.subscription_id,
            mode=request.mode.value,
        )

        if request.mode == BillingMode.ARREARS:
            result = await strategy.compute(window, request.grouping_key, request.free_unit_options)
            log.debug(
                "aggregation_computed",
                aggregation=result.aggregation,
                groups=None if result.aggregations is None else len(result.aggregations),
            )
            return result

        # Pay in advance: one group only, the one the new event belongs to
        event = request.event
        grouped_by = None
        if request.grouping_key:
            props = event.properties or {}
            grouped_by = {k: group_value(props.get(k)) for k in request.grouping_key}
            window = window.narrowed(grouped_by)

        result = await strategy.compute(window, (), request.free_unit_options)
        units = await strategy.compute_pay_in_advance_aggregation(window, event)
        result = result.model_copy(update={"pay_in_advance_aggregation": units, "grouped_by": grouped_by})
        log.debug(
            "aggregation_computed",
            aggregation=result.aggregation,
            pay_in_advance_aggregation=units,
            transaction_id=event.transaction_id,
        )
        return result

    async def estimate(self, request: AggregationRequest) -> AggregationResult:
        """
        Mirrors pay-in-advance pricing for an event that is not stored yet.
        """
        window, strategy = self._prepare(request.model_copy(update={"mode": BillingMode.ADVANCE}))
        units = await strategy.compute_pay_in_advance_aggregation(window, request.event)
        props = request.event.properties or {}
        grouped_by = {k: group_value(props.get(k)) for k in request.grouping_key} or None
        return AggregationResult(
            aggregation=units,
            count=1,
            current_usage_units=units,
            pay_in_advance_aggregation=units,
            grouped_by=grouped_by,
        )

    async def per_event_aggregation(self, request: AggregationRequest) -> List[Decimal]:
        window, strategy = self._prepare(request)
        return await strategy.compute_per_event_aggregation(window)

    async def aggregate_payload(self, payload: Dict[str, Any]) -> AggregationResult:
        return await self.aggregate(self.from_payload(payload))

    @staticmethod
    def from_payload(payload: Dict[str, Any]) -> AggregationRequest:
        return load_aggregation_request(payload)
