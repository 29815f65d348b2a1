"""
Structured logging for the entitlement service.

- One `eclipse` logger; JSON lines in production, one readable line otherwise.
- request_id comes from a ContextVar set per request and rides on every record.
- Billing identifiers (user, event, outcome) are first-class fields so a
  webhook can be followed from delivery to the record it changed.
- Stripe secrets never reach the output, even when they end up inside an
  exception message.
"""

import json
import logging
import os
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

LOGGER_NAME = "eclipse"

# Copied from `extra` into the output when present, in this order
_STRUCTURED_FIELDS = (
    "user_id",
    "event_id",
    "event_type",
    "outcome",
    "error_code",
    "path",
    "method",
    "status",
    "latency_bucket",
)

# sk_live_..., sk_test_..., rk_live_..., whsec_...
_SECRET_RE = re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+|\bwhsec_[A-Za-z0-9]+")

_TRUNCATE_AT = 500


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


def redact(text: str) -> str:
    return _SECRET_RE.sub("[redacted]", text)


def latency_bucket_ms(latency_ms: Optional[float]) -> str:
    if latency_ms is None:
        return "unknown"
    for bound, label in ((10, "<10ms"), (100, "10-100ms"), (500, "100-500ms"), (1000, "500-1000ms")):
        if latency_ms < bound:
            return label
    return ">=1000ms"


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z")


def _fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in _STRUCTURED_FIELDS
        if getattr(record, name, None) is not None
    }


class RequestIdFilter(logging.Filter):
    """Stamp records with the current request_id unless one was passed explicitly."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": _timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": redact(record.getMessage()),
            "request_id": getattr(record, "request_id", None),
        }
        payload.update(_fields(record))
        if record.exc_info:
            payload["exc_info"] = redact(self.formatException(record.exc_info))
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        parts = [_timestamp(record), record.levelname, f"[{LOGGER_NAME}]"]
        if rid:
            parts.append(f"[rid={rid}]")
        parts.append(redact(record.getMessage()))
        parts.extend(f"{name}={value}" for name, value in _fields(record).items())
        line = " ".join(parts)
        if record.exc_info:
            line = f"{line}\n{redact(self.formatException(record.exc_info))}"
        return line


def configure_logging(env: str = "development", level: Optional[str] = None) -> None:
    """Install the handler on the `eclipse` logger. Safe to call repeatedly."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel((level or os.getenv("LOG_LEVEL") or "INFO").upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if env.lower() == "production" else PrettyFormatter())
    handler.addFilter(RequestIdFilter())

    logger.handlers = [handler]
    logger.propagate = True

    # uvicorn keeps its own handlers; don't double-print through the root logger
    logging.getLogger("uvicorn").propagate = False
    logging.getLogger("uvicorn.error").propagate = False


def _safe_truncate(value, limit: int = _TRUNCATE_AT):
    try:
        text = redact(str(value))
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
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """
    Log one structured billing event.

    `extra` values are stringified, redacted and truncated; None values are
    dropped so pretty output stays short.
    """
    logger = logging.getLogger(LOGGER_NAME)
    if not logger.handlers:
        configure_logging(os.getenv("ENV", "development"))

    payload: Dict[str, object] = {"request_id": request_id or get_request_id()}
    for key, value in (
        ("user_id", user_id),
        ("event_id", event_id),
        ("event_type", event_type),
        ("error_code", error_code),
    ):
        if value is not None:
            payload[key] = value
    for key, value in (extra or {}).items():
        if value is not None:
            payload[key] = _safe_truncate(value)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
