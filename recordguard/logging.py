from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from opentelemetry import trace

from recordguard.context import get_correlation_id


_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "correlation_id"}

# Structured fields emitted through ``extra=``; anything else is dropped.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # record writes
        "entity_type",
        "entity_id",
        "strategy",
        "expected_version",
        "actual_version",
        "retry_count",
        "plan_count",
        # compound operations
        "operation",
        "step",
        "rows_affected",
        # classified failures
        "error_type",
        "error",
        "actor_id",
        "organization_id",
        "request_id",
    }
)
_TRUNCATED_FIELDS = {"error": 500, "entity_id": 64}


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


def _normalize(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    return value


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line.

    ``trace_id``/``span_id`` are added when the record is emitted inside a
    recording span, so log lines can be joined with the trace of the write
    that produced them.
    """

    def __init__(self, service: str = "recordguard") -> None:
        super().__init__()
        self.service = service

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            payload["trace_id"] = format(span_context.trace_id, "032x")
            payload["span_id"] = format(span_context.span_id, "016x")

        fields: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _BASE_RECORD_KEYS or key not in _KNOWN_FIELDS:
                continue
            value = _normalize(value)
            limit = _TRUNCATED_FIELDS.get(key)
            if limit is not None and isinstance(value, str):
                value = value[:limit]
            fields[key] = value

        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(level_name: str | None = None, service: str = "recordguard") -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_recordguard_configured", False):
        return

    level = logging.getLevelName((level_name or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(service))

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._recordguard_configured = True  # type: ignore[attr-defined]
