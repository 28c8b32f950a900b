"""
Structured logging with correlation id support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound request_id for correlation (the HTTP request id for quota
  checks, the job run id for daily cycle advances).
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional
from uuid import uuid4

from quotacycle.core.config import settings

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys copied from `extra=` into the JSON payload when present.
STRUCTURED_FIELDS = (
    "organization_id",
    "plan_id",
    "event_type",
    "error_code",
    "current_usage",
    "monthly_quota",
    "status",
    "transitions",
    "state",
)


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def bind_request_id(request_id: Optional[str] = None) -> Iterator[str]:
    """Bind a correlation id for the duration of the block."""
    rid = request_id or str(uuid4())
    token = request_id_ctx_var.set(rid)
    try:
        yield rid
    finally:
        request_id_ctx_var.reset(token)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class RequestIdFilter(logging.Filter):
    """Inject request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "request_id": getattr(record, "request_id", None),
        }
        for key in STRUCTURED_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        rid_part = f" [rid={rid}]" if rid else ""
        org = getattr(record, "organization_id", None)
        org_part = f" [org={org}]" if org is not None else ""
        ts = _format_timestamp(record)
        return f"{ts} {record.levelname} [quotacycle]{rid_part}{org_part} {record.getMessage()}"


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("quotacycle")
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    request_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
    limit: int = 500,
):
    """Structured logging helper with safe truncation and request correlation."""

    logger = logging.getLogger("quotacycle")
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests)
        configure_logging(settings.ENV, settings.LOG_LEVEL)

    payload = {
        "request_id": request_id or get_request_id(),
        "organization_id": organization_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v, limit)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
