from __future__ import annotations

import json
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Any

from app.core.context import get_correlation_id


_BASE_RECORD_KEYS = set(logging.makeLogRecord({}).__dict__.keys())
_KNOWN_FIELDS = {
    "method",
    "path",
    "status_code",
    "duration_ms",
    "user_id",
    "enterprise_id",
    "membership_id",
    "invitation_id",
    "claim_id",
    "role",
    "required_role",
    "reason",
    "model",
    "operation_type",
    "cost",
    "balance",
    "event_id",
    "event_type",
    "event_name",
    "recipient",
    "subject",
    "status",
    "error",
}
_REDACTED = "[redacted]"

# Path segments and query parameters that carry invitation or claim tokens.
_TOKEN_PATH_RE = re.compile(r"(/(?:invitations|claims)/(?:accept/)?)(?!\{)([^/?#]+)")
_TOKEN_QUERY_RE = re.compile(r"((?:^|[?&])token=)[^&#]+")


def redact_tokens(value: str) -> str:
    redacted = _TOKEN_PATH_RE.sub(lambda match: f"{match.group(1)}{_redact_segment(match.group(2))}", value)
    return _TOKEN_QUERY_RE.sub(rf"\1{_REDACTED}", redacted)


def _redact_segment(segment: str) -> str:
    # Invitation ids under /enterprises/{id}/invitations are UUIDs, not secrets.
    if re.fullmatch(r"[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}", segment):
        return segment
    return _REDACTED


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()
    return record


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        correlation_id = getattr(record, "correlation_id", None)
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": correlation_id,
        }

        extras: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key.startswith("_"):
                continue
            if key in _BASE_RECORD_KEYS:
                continue
            if key in {"args", "msg"}:
                continue
            if key in _KNOWN_FIELDS:
                extras[key] = value

        if record.exc_info:
            extras["exception"] = self.formatException(record.exc_info)

        path_value = extras.get("path")
        if isinstance(path_value, str):
            extras["path"] = redact_tokens(path_value)

        error_value = extras.get("error")
        if isinstance(error_value, str):
            extras["error"] = redact_tokens(error_value[:500])

        payload["fields"] = extras
        return json.dumps(payload, default=str)


def configure_logging() -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_control_plane_configured", False):
        return

    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    root_logger._control_plane_configured = True  # type: ignore[attr-defined]
