# metering/core/logger.py
from __future__ import annotations
import logging
import sys
from decimal import Decimal
from typing import Optional
import structlog
from metering.core.settings import Settings, settings as default_settings


def decimals_as_strings(logger, method_name, event_dict):
    # quantities are Decimal; render them exactly instead of as Decimal('...')
    for key, value in event_dict.items():
        if isinstance(value, Decimal):
            event_dict[key] = str(value)
    return event_dict


def _service_name(cfg: Settings):
    def add_service(logger, method_name, event_dict):
        event_dict.setdefault("service", cfg.APP_NAME)
        return event_dict
    return add_service


def setup_logging(cfg: Optional[Settings] = None) -> None:
    cfg = cfg or default_settings
    level = getattr(logging, cfg.LOG_LEVEL.upper(), logging.INFO)

    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        decimals_as_strings,
    ]
    if cfg.DEV_MODE:
        processors += [
            structlog.processors.ExceptionRenderer(),
            structlog.processors.KeyValueRenderer(key_order=["event", "level"], sort_keys=True),
        ]
    else:
        processors += [
            _service_name(cfg),
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
