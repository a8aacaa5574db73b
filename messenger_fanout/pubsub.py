"""
In-process publish/subscribe bridge for GraphQL subscriptions.

Broadcast only: a payload reaches the listeners registered when it is
published. There is no buffering or replay for late listeners. Each
listener owns a bounded FIFO queue, so payloads on one topic arrive in
publish order; a listener that stops reading loses payloads once its
queue is full instead of growing without limit.
"""

from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator

import structlog

from .metrics import MetricsCollector

log = structlog.get_logger()

MESSAGE_RECEIVED = "messageReceived"
MESSAGE_RECEIVED_IN_CONVERSATION = "messageReceivedInConversation"


class PubSub:
    """Topic-keyed broadcast bus consumed through async iterators."""

    def __init__(
        self, metrics: MetricsCollector | None = None, queue_size: int = 100
    ) -> None:
        self._listeners: dict[str, list[asyncio.Queue[Any]]] = {}
        self._metrics = metrics
        self._queue_size = queue_size

    async def publish(self, trigger: str, payload: Any) -> int:
        """Push *payload* to every listener of *trigger*. Returns listeners reached."""
        queues = list(self._listeners.get(trigger, ()))
        reached = 0
        for queue in queues:
            try:
                queue.put_nowait(payload)
                reached += 1
            except asyncio.QueueFull:
                log.warning("pubsub.listener_full", trigger=trigger)
                if self._metrics:
                    self._metrics.inc("pubsub_overflow_total", trigger=trigger)
        if self._metrics:
            self._metrics.inc("pubsub_published_total")
            if not queues:
                self._metrics.inc("pubsub_dropped_total")
        log.debug("pubsub.published", trigger=trigger, listeners=reached)
        return reached

    async def async_iterator(
        self, triggers: str | list[str]
    ) -> AsyncGenerator[Any, None]:
        """
        Yield payloads published on *triggers* until the consumer stops.

        Registration happens on the first ``__anext__``; the listener is
        removed when the generator is closed or its task is cancelled.
        """
        names = [triggers] if isinstance(triggers, str) else list(triggers)
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._queue_size)
        for name in names:
            self._listeners.setdefault(name, []).append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            for name in names:
                listeners = self._listeners.get(name)
                if listeners and queue in listeners:
                    listeners.remove(queue)
                if listeners == []:
                    self._listeners.pop(name, None)

    def listener_count(self, trigger: str) -> int:
        return len(self._listeners.get(trigger, ()))
