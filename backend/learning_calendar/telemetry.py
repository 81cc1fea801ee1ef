"""Structured telemetry for calendar generation, rescheduling and adaptation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List

logger = logging.getLogger("learning_calendar.telemetry")


@dataclass(frozen=True)
class TelemetryEvent:
    name: str
    payload: Dict[str, Any]
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


TelemetryListener = Callable[[TelemetryEvent], None]

_listeners: List[TelemetryListener] = []
_lock = RLock()


def register_listener(listener: TelemetryListener) -> None:
    """Register an in-process listener (tests, audit sinks)."""
    with _lock:
        _listeners.append(listener)


def clear_listeners() -> None:
    with _lock:
        _listeners.clear()


def emit_event(name: str, **fields: Any) -> TelemetryEvent:
    """Emit a structured event, fan it out to listeners and log it."""
    event = TelemetryEvent(name=name, payload=_sanitize(fields))

    with _lock:
        listeners = list(_listeners)

    for listener in listeners:
        try:
            listener(event)
        except Exception:  # noqa: BLE001
            logger.exception("Telemetry listener failed for %s", name)

    structured = {"event": name, "recorded_at": event.recorded_at, **event.payload}
    logger.info("TELEMETRY %s", json.dumps(structured, default=_json_default))
    return event


def _sanitize(fields: Dict[str, Any]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in fields.items():
        if isinstance(value, (datetime, date)):
            sanitized[key] = value.isoformat()
        elif isinstance(value, Enum):
            sanitized[key] = value.value
        else:
            sanitized[key] = value
    return sanitized


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


__all__ = [
    "TelemetryEvent",
    "TelemetryListener",
    "clear_listeners",
    "emit_event",
    "register_listener",
]
