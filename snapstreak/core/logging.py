"""
Structured logging with correlation id support.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound request_id for correlation (the penalty sweep binds its run id).
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional
from uuid import uuid4

request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys passed through log_event that the JSON formatter emits alongside the message.
_STRUCTURED_KEYS = (
    "user_id",
    "habit_id",
    "pair",
    "event_type",
    "error_code",
    "error",
    "attempt",
    "delta",
    "score",
    "habit_streak",
    "consecutive_misses",
    "run_id",
    "day",
    "habits",
    "processed",
    "penalized",
    "skipped",
    "failed",
    "expired",
)

# Report counters the pretty formatter appends as key=value.
_PRETTY_KEYS = ("day", "habits", "processed", "penalized", "skipped", "failed", "expired", "error")


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
        for key in _STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = getattr(record, "request_id", None)
        rid_part = f" [rid={rid}]" if rid else ""
        ts = _format_timestamp(record)
        line = f"{ts} {record.levelname} [snapstreak]{rid_part} {record.getMessage()}"
        fields = [f"{key}={getattr(record, key)}" for key in _PRETTY_KEYS if getattr(record, key, None) is not None]
        if fields:
            line = f"{line} " + " ".join(fields)
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development", level: str = "INFO") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("snapstreak")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

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
    user_id: Optional[str] = None,
    habit_id: Optional[str] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Structured logging helper with safe truncation and request correlation."""

    logger = logging.getLogger("snapstreak")
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests)
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "request_id": request_id or get_request_id(),
        "user_id": user_id,
        "habit_id": habit_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
