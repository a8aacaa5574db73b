"""
In-process event emitter for internal service events.

The inbound handler emits ``queue.message`` for every payload received on a
per-user queue; live-connection collaborators (the SSE hub) listen for it.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Coroutine

import structlog

log = structlog.get_logger()

QUEUE_MESSAGE = "queue.message"

Listener = Callable[[Any], Coroutine[Any, Any, None]]


@dataclass
class QueueMessage:
    """Payload of the ``queue.message`` event."""

    user_id: str
    queue_name: str
    message: Any
    timestamp: datetime


class EventEmitter:
    """Named events with async listeners, awaited in registration order."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def on(self, event: str, listener: Listener) -> None:
        self._listeners[event].append(listener)

    def off(self, event: str, listener: Listener) -> None:
        try:
            self._listeners[event].remove(listener)
        except ValueError:
            pass

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, ()))

    async def emit(self, event: str, payload: Any) -> int:
        """Deliver *payload* to every listener of *event*. Returns listeners called."""
        listeners = list(self._listeners.get(event, ()))
        for listener in listeners:
            try:
                await listener(payload)
            except Exception:
                log.exception("events.listener_error", event_name=event)
        return len(listeners)
