from __future__ import annotations

import logging
import re
from collections import deque
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from threading import Lock
from typing import Any, Literal, TypedDict
from uuid import uuid4

EventLevel = Literal["info", "warning", "error"]

CORRELATION_ID_HEADER = "x-request-id"
REDACTED = "[REDACTED]"

EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
# Link tokens are 64 hex chars; they appear in verify paths and in log messages.
LINK_TOKEN_RE = re.compile(r"\b[a-fA-F0-9]{64}\b")
SENSITIVE_KEYWORDS = ("email", "token", "otp", "password", "secret", "api_key", "authorization")

_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class OpsEvent(TypedDict):
    timestamp: str
    level: EventLevel
    component: str
    event_type: str
    message: str
    correlation_id: str | None
    payload: dict[str, Any]


def iso_now() -> str:
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def redact_text(value: str) -> str:
    return LINK_TOKEN_RE.sub(REDACTED, EMAIL_RE.sub(REDACTED, value))


def sanitize_value(value: Any, key_hint: str | None = None) -> Any:
    """Redact addresses and tokens from a log payload, recursing into dicts and lists."""
    if key_hint and any(keyword in key_hint.lower() for keyword in SENSITIVE_KEYWORDS):
        return REDACTED
    if isinstance(value, str):
        return redact_text(value)
    if isinstance(value, dict):
        return {key: sanitize_value(nested, key) for key, nested in value.items()}
    if isinstance(value, list):
        return [sanitize_value(item) for item in value]
    return value


def new_correlation_id() -> str:
    return uuid4().hex


def set_correlation_id(correlation_id: str) -> Token[str | None]:
    return _correlation_id.set(correlation_id)


def reset_correlation_id(token: Token[str | None]) -> None:
    _correlation_id.reset(token)


class OpsEventBuffer:
    """Bounded, newest-first view of recent verification and request events."""

    def __init__(self, max_size: int = 500) -> None:
        self._events: deque[OpsEvent] = deque(maxlen=max_size)
        self._lock = Lock()

    def add(self, event: OpsEvent) -> None:
        with self._lock:
            self._events.append(event)

    def recent(
        self,
        *,
        limit: int,
        level: EventLevel | None = None,
        event_type: str | None = None,
        correlation_id: str | None = None,
    ) -> list[OpsEvent]:
        with self._lock:
            items = list(self._events)
        matched = [
            item
            for item in reversed(items)
            if (level is None or item["level"] == level)
            and (event_type is None or event_type in item["event_type"])
            and (correlation_id is None or correlation_id in (item["correlation_id"] or ""))
        ]
        return matched[:limit]


ops_event_buffer = OpsEventBuffer()


def _event_level(record: logging.LogRecord) -> EventLevel:
    if record.levelno >= logging.ERROR:
        return "error"
    if record.levelno >= logging.WARNING:
        return "warning"
    return "info"


class OpsEventHandler(logging.Handler):
    """Copies log records into the ops buffer. Everything is redacted on the way in."""

    def emit(self, record: logging.LogRecord) -> None:
        payload = sanitize_value(getattr(record, "ops_payload", {}))
        ops_event_buffer.add(
            {
                "timestamp": iso_now(),
                "level": _event_level(record),
                "component": record.name,
                "event_type": str(getattr(record, "event_type", record.name)),
                "message": redact_text(record.getMessage()),
                "correlation_id": getattr(record, "correlation_id", None) or _correlation_id.get(),
                "payload": payload if isinstance(payload, dict) else {"value": payload},
            }
        )


def configure_ops_event_logging(max_size: int) -> None:
    global ops_event_buffer
    ops_event_buffer = OpsEventBuffer(max_size=max_size)

    root_logger = logging.getLogger()
    if not any(isinstance(handler, OpsEventHandler) for handler in root_logger.handlers):
        root_logger.addHandler(OpsEventHandler())
