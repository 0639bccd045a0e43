from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple
from pydantic import BaseModel, ConfigDict, Field


class AggregationType(str, Enum):
    COUNT = "count"
    UNIQUE_COUNT = "unique_count"
    SUM = "sum"
    MAX = "max"
    LATEST = "latest"
    TIME_BASED = "time_based"


class BillingMode(str, Enum):
    ADVANCE = "advance"
    ARREARS = "arrears"


class _ValueObject(BaseModel):
    model_config = ConfigDict(frozen=True)


# -------------------------
# Billable metric / scope
# -------------------------
class BillableMetric(_ValueObject):
    code: str = Field(..., min_length=1)
    # kept as a plain string: an unknown tag is an unsupported type, not a bad payload
    aggregation_type: str
    field_name: Optional[str] = None
    # declared event properties; empty means the schema is not declared
    event_properties: Tuple[str, ...] = ()


class SubscriptionScope(_ValueObject):
    organization_id: str = Field(..., min_length=1)
    subscription_id: str = Field(..., min_length=1)


class AggregationWindow(_ValueObject):
    """
    Half-open interval [from_datetime, to_datetime) over the events of one
    subscription and one billable metric code.

    `grouped_by_values` narrows the view to events whose properties match
    every given value exactly (None matches a missing property).
    """

    from_datetime: datetime
    to_datetime: datetime
    scope: SubscriptionScope
    code: str
    grouped_by_values: Dict[str, Optional[str]] = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.from_datetime >= self.to_datetime

    def narrowed(self, grouped_by_values: Dict[str, Optional[str]]) -> "AggregationWindow":
        merged = {**self.grouped_by_values, **grouped_by_values}
        return self.model_copy(update={"grouped_by_values": merged})


class FreeUnitOptions(_ValueObject):
    free_units_per_events: int = Field(0, ge=0)
    free_units_per_total_aggregation: Decimal = Field(Decimal(0), ge=0)

    @property
    def enabled(self) -> bool:
        return self.free_units_per_events != 0 or self.free_units_per_total_aggregation != 0


# -------------------------
# Events
# -------------------------
class UsageEvent(_ValueObject):
    transaction_id: str
    organization_id: str
    subscription_id: str
    code: str
    timestamp: datetime
    properties: Dict[str, Any] = Field(default_factory=dict)
    # ingestion order, assigned by the store
    sequence: Optional[int] = None


class GroupedValue(_ValueObject):
    groups: Dict[str, Optional[str]] = Field(default_factory=dict)
    value: Decimal
    count: int = 0
    current: Optional[Decimal] = None


# -------------------------
# Request / result
# -------------------------
class AggregationRequest(_ValueObject):
    billable_metric: BillableMetric
    subscription_scope: SubscriptionScope
    from_datetime: datetime
    to_datetime: datetime
    mode: BillingMode = BillingMode.ARREARS
    grouping_key: Tuple[str, ...] = ()
    free_unit_options: FreeUnitOptions = Field(default_factory=FreeUnitOptions)
    # triggering event, required in advance mode
    event: Optional[UsageEvent] = None

    def window(self) -> AggregationWindow:
        return AggregationWindow(
            from_datetime=self.from_datetime,
            to_datetime=self.to_datetime,
            scope=self.subscription_scope,
            code=self.billable_metric.code,
        )


class AggregationResult(_ValueObject):
    aggregation: Decimal = Decimal(0)
    count: int = 0
    current_usage_units: Decimal = Decimal(0)
    pay_in_advance_aggregation: Decimal = Decimal(0)
    options: Dict[str, Any] = Field(default_factory=dict)
    grouped_by: Optional[Dict[str, Optional[str]]] = None
    # None: no grouping requested; []: grouping requested, no group had events
    aggregations: Optional[List["AggregationResult"]] = None

    @property
    def running_total(self) -> list:
        return self.options.get("running_total", [])


AggregationResult.model_rebuild()
