from __future__ import annotations


class AggregationError(Exception):
    pass


class UnsupportedAggregationType(AggregationError):
    def __init__(self, aggregation_type: str, message: str | None = None):
        self.aggregation_type = aggregation_type
        super().__init__(message or f"No aggregation strategy registered for '{aggregation_type}'")


class EmptyWindow(AggregationError, ValueError):
    pass


class InvalidGroupingKey(AggregationError, ValueError):
    def __init__(self, field: str, message: str | None = None):
        self.field = field
        super().__init__(message or f"Grouping field '{field}' is not an event property of the metric")


class InvalidAggregationRequest(AggregationError, ValueError):
    pass


# ---------- Event store ----------

class EventStoreError(AggregationError):
    pass


class StoreUnavailable(EventStoreError):
    pass


class StoreQueryFailed(EventStoreError):
    pass
