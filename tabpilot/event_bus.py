import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from loguru import logger
from pydantic import BaseModel, Field


class SessionEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    session_id: str
    payload: Dict[str, Any]


class EventBus:
    """A lightweight, synchronous event bus for decoupling TABPILOT observability."""

    def __init__(self):
        self._subscribers: List[Callable[[SessionEvent], None]] = []

    def subscribe(self, callback: Callable[[SessionEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[SessionEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event_type: str, session_id: Any, payload: Dict[str, Any]) -> None:
        """Construct and broadcast a SessionEvent to all subscribers."""
        event = SessionEvent(
            event_type=event_type,
            session_id=str(session_id),
            payload=payload
        )

        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                # A failing subscriber (like a bad file write) must not crash the engine
                logger.warning(f"[BUS] Subscriber failed on {event_type}: {e}")


# Global singleton instance for easy imports across the project
bus = EventBus()
