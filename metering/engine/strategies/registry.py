from __future__ import annotations
from datetime import datetime
from typing import Callable, Dict, Optional, Type

from metering.engine.errors import UnsupportedAggregationType
from metering.engine.strategies.base import AggregationStrategy
from metering.engine.strategies.count import CountAggregation
from metering.engine.strategies.latest import LatestAggregation
from metering.engine.strategies.max import MaxAggregation
from metering.engine.strategies.sum import SumAggregation
from metering.engine.strategies.time_based import TimeBasedAggregation
from metering.engine.strategies.unique_count import UniqueCountAggregation
from metering.persistence.store import EventStore
from metering.schemas.models import AggregationType, BillableMetric

STRATEGIES: Dict[AggregationType, Type[AggregationStrategy]] = {
    AggregationType.COUNT: CountAggregation,
    AggregationType.UNIQUE_COUNT: UniqueCountAggregation,
    AggregationType.SUM: SumAggregation,
    AggregationType.MAX: MaxAggregation,
    AggregationType.LATEST: LatestAggregation,
    AggregationType.TIME_BASED: TimeBasedAggregation,
}


def resolve_strategy_class(
    aggregation_type: str,
    mapping: Dict[AggregationType, Type[AggregationStrategy]] = STRATEGIES,
) -> Type[AggregationStrategy]:
    try:
        tag = AggregationType(aggregation_type)
    except ValueError:
        raise UnsupportedAggregationType(aggregation_type)
    cls = mapping.get(tag)
    if cls is None:
        raise UnsupportedAggregationType(aggregation_type)
    return cls


def build_strategy(
    metric: BillableMetric,
    event_store: EventStore,
    *,
    clock: Optional[Callable[[], datetime]] = None,
    mapping: Dict[AggregationType, Type[AggregationStrategy]] = STRATEGIES,
) -> AggregationStrategy:
    """
    Instantiates the strategy registered for the metric's aggregation type.
    Raises UnsupportedAggregationType for any tag outside the registry.
    """
    cls = resolve_strategy_class(metric.aggregation_type, mapping)
    if clock is None:
        return cls(metric=metric, event_store=event_store)
    return cls(metric=metric, event_store=event_store, clock=clock)
