from datetime import timedelta
from decimal import Decimal

import pytest

from metering.engine.engine import AggregationService
from metering.engine.errors import (
    EmptyWindow,
    InvalidAggregationRequest,
    InvalidGroupingKey,
    StoreQueryFailed,
    StoreUnavailable,
    UnsupportedAggregationType,
)
from metering.engine.strategies.registry import STRATEGIES
from metering.persistence.memory import InMemoryEventStore
from metering.schemas.models import (
    AggregationRequest,
    AggregationType,
    BillableMetric,
    BillingMode,
    FreeUnitOptions,
)

from conftest import PERIOD_END, PERIOD_START


class UnreachableStore(InMemoryEventStore):
    """
    fails the test if the service ever runs a window query.
    """

    def _matching(self, window, field=None):
        raise AssertionError("event store should not be queried")


class FailingStore(InMemoryEventStore):
    def __init__(self, error: Exception):
        super().__init__()
        self.error = error

    async def grouped_count(self, window, grouping_key):
        raise self.error

    async def grouped_sum(self, window, field, grouping_key):
        raise self.error


def _request(scope, aggregation_type="count", field_name=None, **kwargs) -> AggregationRequest:
    metric_kwargs = {}
    if "event_properties" in kwargs:
        metric_kwargs["event_properties"] = kwargs.pop("event_properties")
    return AggregationRequest(
        billable_metric=BillableMetric(
            code="api_calls", aggregation_type=aggregation_type, field_name=field_name, **metric_kwargs
        ),
        subscription_scope=scope,
        from_datetime=kwargs.pop("from_datetime", PERIOD_START),
        to_datetime=kwargs.pop("to_datetime", PERIOD_END),
        **kwargs,
    )


class TestRegistry:
    def test_every_aggregation_type_has_a_strategy(self):
        assert set(STRATEGIES) == set(AggregationType)
        for tag, cls in STRATEGIES.items():
            assert cls.aggregation_type == tag


class TestValidation:
    async def test_unsupported_type(self, scope):
        service = AggregationService(UnreachableStore())

        with pytest.raises(UnsupportedAggregationType) as exc:
            await service.aggregate(_request(scope, "weighted_sum"))
        assert exc.value.aggregation_type == "weighted_sum"

    async def test_unregistered_type(self, scope):
        strategies = {k: v for k, v in STRATEGIES.items() if k != AggregationType.LATEST}
        service = AggregationService(UnreachableStore(), strategies=strategies)

        with pytest.raises(UnsupportedAggregationType):
            await service.aggregate(_request(scope, "latest", "gauge"))

    @pytest.mark.parametrize("span", [timedelta(0), timedelta(hours=-1)])
    async def test_empty_window_rejected_before_querying(self, scope, span):
        service = AggregationService(UnreachableStore())

        with pytest.raises(EmptyWindow):
            await service.aggregate(_request(scope, to_datetime=PERIOD_START + span))

    async def test_unknown_grouping_field(self, scope):
        service = AggregationService(UnreachableStore())
        request = _request(scope, grouping_key=("country",), event_properties=("region", "tier"))

        with pytest.raises(InvalidGroupingKey) as exc:
            await service.aggregate(request)
        assert exc.value.field == "country"

    async def test_repeated_grouping_field(self, scope):
        service = AggregationService(UnreachableStore())

        with pytest.raises(InvalidGroupingKey):
            await service.aggregate(_request(scope, grouping_key=("region", "region")))

    async def test_field_based_metric_needs_field(self, scope):
        service = AggregationService(UnreachableStore())

        with pytest.raises(InvalidAggregationRequest):
            await service.aggregate(_request(scope, "sum"))

    async def test_advance_mode_needs_event(self, scope):
        service = AggregationService(UnreachableStore())

        with pytest.raises(InvalidAggregationRequest):
            await service.aggregate(_request(scope, mode=BillingMode.ADVANCE))


class TestArrears:
    async def test_count_scenario(self, scope, store, make_event):
        for i in range(3):
            store.add(make_event(at=i))

        result = await AggregationService(store).aggregate(_request(scope))

        assert result.aggregation == 3
        assert result.count == 3
        assert result.current_usage_units == 3
        assert result.options == {"running_total": []}
        assert result.aggregations is None

    async def test_sum_scenario(self, scope, store, make_event):
        for v in (2, 3, 5):
            store.add(make_event(amount=v))

        result = await AggregationService(store).aggregate(_request(scope, "sum", "amount"))

        assert result.aggregation == Decimal(10)

    async def test_grouping_dispatches_grouped_path(self, scope, store, make_event):
        store.add(make_event(region="eu"))
        store.add(make_event(region="us"))
        store.add(make_event(region="us"))

        result = await AggregationService(store).aggregate(
            _request(scope, grouping_key=("region",), event_properties=("region",))
        )

        assert [(r.grouped_by, r.aggregation) for r in result.aggregations] == [
            ({"region": "eu"}, Decimal(1)),
            ({"region": "us"}, Decimal(2)),
        ]

    async def test_grouped_empty_differs_from_ungrouped(self, scope, store):
        service = AggregationService(store)

        grouped = await service.aggregate(_request(scope, grouping_key=("region",)))
        ungrouped = await service.aggregate(_request(scope))

        assert grouped.aggregations == []
        assert ungrouped.aggregations is None
        assert ungrouped.aggregation == 0

    async def test_running_total_with_free_units(self, scope, store, make_event):
        for i in range(12):
            store.add(make_event(at=i))

        result = await AggregationService(store).aggregate(
            _request(scope, free_unit_options=FreeUnitOptions(free_units_per_events=5))
        )

        assert result.running_total == list(range(1, 13))

    async def test_idempotent(self, scope, store, make_event):
        for i, v in enumerate((2, 3, 5)):
            store.add(make_event(at=i, amount=v, region="eu" if i else "us"))
        service = AggregationService(store)
        request = _request(
            scope, "sum", "amount",
            grouping_key=("region",),
            free_unit_options=FreeUnitOptions(free_units_per_total_aggregation=Decimal(3)),
        )

        first = await service.aggregate(request)
        second = await service.aggregate(request)

        assert first.model_dump_json() == second.model_dump_json()

    async def test_per_event_aggregation(self, scope, store, make_event):
        for v in (2, 3):
            store.add(make_event(amount=v))

        values = await AggregationService(store).per_event_aggregation(_request(scope, "sum", "amount"))

        assert values == [Decimal(2), Decimal(3)]


class TestAdvance:
    async def test_sum_prices_only_the_triggering_event(self, scope, store, make_event):
        store.add(make_event(at=1, amount=2))
        store.add(make_event(at=2, amount=3))
        event = store.add(make_event(at=3, amount=7.5))

        result = await AggregationService(store).aggregate(
            _request(scope, "sum", "amount", mode=BillingMode.ADVANCE, event=event)
        )

        assert result.pay_in_advance_aggregation == Decimal("7.5")
        assert result.aggregation == Decimal("12.5")

    async def test_count_increment_is_one(self, scope, store, make_event):
        for i in range(5):
            event = store.add(make_event(at=i))

        result = await AggregationService(store).aggregate(
            _request(scope, mode=BillingMode.ADVANCE, event=event)
        )

        assert result.pay_in_advance_aggregation == 1
        assert result.aggregation == 5

    async def test_grouped_advance_uses_the_event_group(self, scope, store, make_event):
        store.add(make_event(amount=10, region="us"))
        store.add(make_event(amount=4, region="eu"))
        event = store.add(make_event(amount=1, region="eu"))

        result = await AggregationService(store).aggregate(
            _request(
                scope, "sum", "amount",
                mode=BillingMode.ADVANCE, event=event, grouping_key=("region",),
            )
        )

        assert result.grouped_by == {"region": "eu"}
        assert result.aggregation == Decimal(5)
        assert result.pay_in_advance_aggregation == Decimal(1)
        assert result.aggregations is None

    async def test_estimate_does_not_query_the_window(self, scope, make_event):
        service = AggregationService(UnreachableStore())
        event = make_event(amount=7.5, region="eu")

        result = await service.estimate(
            _request(scope, "sum", "amount", event=event, grouping_key=("region",))
        )

        assert result.pay_in_advance_aggregation == Decimal("7.5")
        assert result.aggregation == Decimal("7.5")
        assert result.count == 1
        assert result.grouped_by == {"region": "eu"}

    async def test_estimate_fixed_unit_metric(self, scope, make_event):
        service = AggregationService(UnreachableStore())

        result = await service.estimate(_request(scope, "max", "seats", event=make_event(seats=40)))

        assert result.pay_in_advance_aggregation == 1


class TestStoreFailures:
    @pytest.mark.parametrize("error", [StoreUnavailable("db down"), StoreQueryFailed("bad cast")])
    async def test_propagated_unmodified(self, scope, error):
        service = AggregationService(FailingStore(error))

        with pytest.raises(type(error)) as exc:
            await service.aggregate(_request(scope, grouping_key=("region",)))
        assert exc.value is error

    async def test_non_numeric_value_fails_query(self, scope, store, make_event):
        store.add(make_event(amount="lots"))

        with pytest.raises(StoreQueryFailed):
            await AggregationService(store).aggregate(_request(scope, "sum", "amount"))


class TestPayload:
    async def test_aggregate_payload(self, store, make_event):
        for v in (2, 3, 5):
            store.add(make_event(amount=v))

        result = await AggregationService(store).aggregate_payload({
            "billable_metric": {"code": "api_calls", "aggregation_type": "sum", "field_name": "amount"},
            "subscription_scope": {"organization_id": "org-1", "subscription_id": "sub-1"},
            "window": {"from": "2024-01-01T00:00:00Z", "to": "2024-02-01T00:00:00Z"},
            "mode": "arrears",
            "free_unit_options": {"free_units_per_events": 1},
        })

        assert result.aggregation == Decimal(10)
        assert result.running_total == list(range(1, 11))
