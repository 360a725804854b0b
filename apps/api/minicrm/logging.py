from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from minicrm.context import get_backup_stage, get_correlation_id

MAX_ERROR_CHARS = 500

_BASE_RECORD_KEYS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime"}

# Only these ``extra`` keys reach the output; anything else (record payloads,
# credentials) stays out of the log stream.
_KNOWN_FIELDS = frozenset(
    {
        # http
        "method",
        "path",
        "status_code",
        "duration_ms",
        # pipeline
        "operation",
        "stage",
        "status",
        "error",
        "version",
        "holder",
        "attempt",
        "shortfalls",
        # records
        "entity",
        "section",
        "list",
        "business_key",
        "position",
        "reason",
        "count",
        "counts",
        "before",
        "failed",
        "dropped",
        "warnings",
        # bus
        "event_name",
    }
)


class CorrelationIdFilter(logging.Filter):
    """Copies the request correlation id and current import stage onto records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        if not getattr(record, "stage", None):
            stage = get_backup_stage()
            if stage is not None:
                record.stage = stage
        return True


_default_record_factory = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _default_record_factory(*args, **kwargs)
    record.correlation_id = get_correlation_id()
    return record


def _extra_fields(record: logging.LogRecord) -> dict[str, Any]:
    fields = {
        key: value
        for key, value in record.__dict__.items()
        if key in _KNOWN_FIELDS and key not in _BASE_RECORD_KEYS
    }
    error = fields.get("error")
    if isinstance(error, str) and len(error) > MAX_ERROR_CHARS:
        fields["error"] = error[:MAX_ERROR_CHARS]
    return fields


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = _extra_fields(record)
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level_name: str = "INFO") -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_minicrm_configured", False):
        return

    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.setLevel(level)
    root_logger.addHandler(handler)
    logging.setLogRecordFactory(_record_factory)
    # request_logging already emits one line per request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._minicrm_configured = True  # type: ignore[attr-defined]
