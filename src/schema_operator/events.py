"""Event recording for resources.

Events are the user-facing trail of what the operator did to a resource:
schema applied, plan waiting for approval, failures. They complement the
Ready condition, which only shows the latest state.

Every event is logged as structured JSON and kept in a bounded in-memory
buffer that the CLI and tests can inspect.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .models import ResourceKey

logger = logging.getLogger(__name__)

DEFAULT_EVENT_BUFFER_SIZE = 1000


class EventType(str, Enum):
    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """A single event emitted for a resource."""

    resource: ResourceKey
    type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = asdict(self)
        result["resource"] = str(self.resource)
        result["type"] = self.type.value
        result["timestamp"] = self.timestamp.isoformat()
        return result


class EventRecorder:
    """Records events for resources.

    Warnings are logged at WARNING level, normal events at INFO.
    """

    def __init__(self, max_events: int = DEFAULT_EVENT_BUFFER_SIZE) -> None:
        self._events: deque[Event] = deque(maxlen=max_events)
        self._lock = threading.Lock()

    def event(self, resource: ResourceKey, type_: EventType, reason: str, message: str) -> Event:
        """Record an event.

        Args:
            resource: Resource the event is about.
            type_: Normal or Warning.
            reason: Short machine-readable reason.
            message: Human-readable message.

        Returns:
            The recorded event.
        """
        ev = Event(resource=resource, type=type_, reason=reason, message=message)
        with self._lock:
            self._events.append(ev)

        level = logging.WARNING if type_ == EventType.WARNING else logging.INFO
        logger.log(level, message, extra={"event": ev.to_dict()})
        return ev

    def normal(self, resource: ResourceKey, reason: str, message: str) -> Event:
        return self.event(resource, EventType.NORMAL, reason, message)

    def warning(self, resource: ResourceKey, reason: str, message: str) -> Event:
        return self.event(resource, EventType.WARNING, reason, message)

    def events(self, resource: ResourceKey | None = None) -> list[Event]:
        """Recorded events, oldest first, optionally filtered by resource."""
        with self._lock:
            snapshot = list(self._events)
        if resource is None:
            return snapshot
        return [ev for ev in snapshot if ev.resource == resource]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()
