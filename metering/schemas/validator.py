# metering/schemas/validator.py
from __future__ import annotations
import json
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict
from jsonschema import Draft202012Validator

from metering.engine.errors import InvalidAggregationRequest
from metering.schemas.models import (
    AggregationRequest,
    BillableMetric,
    BillingMode,
    FreeUnitOptions,
    SubscriptionScope,
    UsageEvent,
)

_schema_cache: Draft202012Validator | None = None


def _load_schema() -> Draft202012Validator:
    global _schema_cache
    if _schema_cache is not None:
        return _schema_cache

    schema_path = Path(__file__).with_name("aggregation_request_schema.json")

    try:
        schema_dict = json.loads(schema_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise RuntimeError(f"Failed to load schema: {e}") from e

    Draft202012Validator.check_schema(schema_dict)
    _schema_cache = Draft202012Validator(schema_dict)
    return _schema_cache


def _parse_iso(value: str, *, at: str) -> datetime:
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise InvalidAggregationRequest(f"{at}: must be ISO8601")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def validate_request_or_raise(payload: Dict[str, Any]) -> None:
    """
    Raises InvalidAggregationRequest on the first schema violation.
    """
    validator = _load_schema()
    errors = sorted(validator.iter_errors(payload), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        loc = "/".join(str(p) for p in first.path) or "(root)"
        raise InvalidAggregationRequest(f"{loc}: {first.message}")


def load_aggregation_request(payload: Dict[str, Any]) -> AggregationRequest:
    """
    Caller payload -> AggregationRequest, validated once at the boundary:

    {
      "billable_metric": {"code": "...", "aggregation_type": "sum", "field_name": "amount"},
      "subscription_scope": {"organization_id": "...", "subscription_id": "..."},
      "window": {"from": "2024-01-01T00:00:00Z", "to": "2024-02-01T00:00:00Z"},
      "mode": "advance" | "arrears",
      "grouping_key": ["region"],
      "free_unit_options": {"free_units_per_events": 5},
      "event": {"transaction_id": "...", "timestamp": "...", "properties": {...}}
    }
    """
    validate_request_or_raise(payload)

    metric_data = payload["billable_metric"]
    metric = BillableMetric(
        code=metric_data["code"],
        aggregation_type=metric_data["aggregation_type"],
        field_name=metric_data.get("field_name"),
        event_properties=tuple(metric_data.get("event_properties") or ()),
    )
    scope = SubscriptionScope(**payload["subscription_scope"])

    free = payload.get("free_unit_options") or {}
    options = FreeUnitOptions(
        free_units_per_events=free.get("free_units_per_events") or 0,
        free_units_per_total_aggregation=Decimal(str(free.get("free_units_per_total_aggregation") or 0)),
    )

    event = None
    event_data = payload.get("event")
    if event_data:
        event = UsageEvent(
            transaction_id=event_data["transaction_id"],
            organization_id=scope.organization_id,
            subscription_id=scope.subscription_id,
            code=metric.code,
            timestamp=_parse_iso(event_data["timestamp"], at="event/timestamp"),
            properties=event_data.get("properties") or {},
        )

    return AggregationRequest(
        billable_metric=metric,
        subscription_scope=scope,
        from_datetime=_parse_iso(payload["window"]["from"], at="window/from"),
        to_datetime=_parse_iso(payload["window"]["to"], at="window/to"),
        mode=BillingMode(payload.get("mode") or BillingMode.ARREARS.value),
        grouping_key=tuple(payload.get("grouping_key") or ()),
        free_unit_options=options,
        event=event,
    )
