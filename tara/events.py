"""Event channel owned by the turn coordinator.

Front ends subscribe to topics (``state``, ``transcript``, ``turn``,
``speech_started``, ``speech_ended``, ``error``) instead of sharing
process-wide flags with the speech components.  Delivery is synchronous, on
the thread that publishes, which is always the coordinator's event loop.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
import time
from typing import Any, Callable, DefaultDict, List

from .utils.logging_system import setup_log_system

logger = setup_log_system("events")

STATE = "state"
TRANSCRIPT = "transcript"
TURN = "turn"
SPEECH_STARTED = "speech_started"
SPEECH_ENDED = "speech_ended"
ERROR = "error"


@dataclass(frozen=True)
class Event:
    topic: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)


Handler = Callable[[Event], None]


class EventChannel:
    """Minimal topic-based publish/subscribe channel."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``topic``; returns a function that unsubscribes it."""
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            if handler in self._handlers[topic]:
                self._handlers[topic].remove(handler)

        return _unsubscribe

    def publish(self, topic: str, **payload: Any) -> Event:
        event = Event(topic=topic, payload=payload)
        for handler in list(self._handlers.get(topic, ())):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Event handler for '{topic}' failed: {e}", exc_info=True)
        return event
