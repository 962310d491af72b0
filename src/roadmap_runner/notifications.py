"""Fire-and-forget notifications to observers of a session or project.

Envelopes are kept in a bounded history and fanned out to subscriber
callbacks.  A failing subscriber is logged and skipped; it never breaks the
orchestration that produced the event.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from loguru import logger

from .constants import NOTIFIER_HISTORY_LIMIT


def session_room(session_id: str) -> str:
    return f"session:{session_id}"


def project_room(project_id: str) -> str:
    return f"project:{project_id}"


@dataclass
class Envelope:
    type: str
    event: str
    payload: dict[str, Any]
    room: str
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "event": self.event,
            "payload": self.payload,
            "room": self.room,
            "timestamp": self.timestamp,
        }


Subscriber = Callable[[Envelope], None]


class Notifier:
    """Publishes ``{type, event, payload, timestamp}`` envelopes to rooms."""

    def __init__(self, history_limit: int = NOTIFIER_HISTORY_LIMIT) -> None:
        self._history: deque[Envelope] = deque(maxlen=history_limit)
        self._subscribers: list[tuple[Optional[str], Subscriber]] = []

    def subscribe(self, callback: Subscriber, room: Optional[str] = None) -> Callable[[], None]:
        """Register *callback* for one room (or all rooms). Returns an unsubscribe function."""
        entry = (room, callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def notify(self, room: str, event: str, payload: Optional[dict[str, Any]] = None) -> Envelope:
        """Publish *event* to *room*; the envelope type is the event prefix."""
        kind = event.split(":", 1)[0] if ":" in event else "event"
        envelope = Envelope(type=kind, event=event, payload=dict(payload or {}), room=room)
        self._history.append(envelope)
        logger.debug("{} -> {}", event, room)
        for sub_room, callback in list(self._subscribers):
            if sub_room is not None and sub_room != room:
                continue
            try:
                callback(envelope)
            except Exception:
                logger.exception("Notification subscriber failed for {}", event)
        return envelope

    def history(self, room: Optional[str] = None, event: Optional[str] = None) -> list[Envelope]:
        return [
            e for e in self._history
            if (room is None or e.room == room) and (event is None or e.event == event)
        ]

    def events(self, room: Optional[str] = None) -> list[str]:
        return [e.event for e in self.history(room)]

    def clear(self) -> None:
        self._history.clear()
