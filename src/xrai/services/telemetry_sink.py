from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Dict, List, Optional

_logger = logging.getLogger("xrai.telemetry")


@dataclass
class TelemetryEvent:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    conversation_id: Optional[str] = None


# Rolling buffer of recent events for the diagnostics endpoint
_RECENT_EVENTS: List[TelemetryEvent] = []
_MAX_BUFFER = 200
_LOCK = Lock()


def record_event(event: TelemetryEvent) -> None:
    """Log a telemetry event and keep it in the in-memory buffer."""

    with _LOCK:
        _RECENT_EVENTS.append(event)
        if len(_RECENT_EVENTS) > _MAX_BUFFER:
            del _RECENT_EVENTS[0 : len(_RECENT_EVENTS) - _MAX_BUFFER]

    _logger.info(
        "telemetry_event",
        extra={
            "telemetry_name": event.name,
            "telemetry_conversation": event.conversation_id,
            "telemetry_properties": event.properties,
        },
    )


def list_recent_events(limit: int = 50) -> List[TelemetryEvent]:
    if limit <= 0:
        return []
    with _LOCK:
        return list(_RECENT_EVENTS[-limit:])


def clear_events() -> None:
    with _LOCK:
        _RECENT_EVENTS.clear()
