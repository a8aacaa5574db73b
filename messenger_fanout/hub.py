"""
Live connection hub for Server-Sent-Event clients.

Listens for ``queue.message`` events and forwards each one to the open
streams of its user, tagged with an event type derived from the queue
name. A user with no open stream misses the event.

With presence enabled, a user's first stream broadcasts ``user:online``
and their last disconnect broadcasts ``user:offline`` to every other
connected user.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, AsyncGenerator

import structlog

from .events import QueueMessage
from .metrics import MetricsCollector
from .queues import event_type_for_queue

log = structlog.get_logger()

USER_ONLINE = "user:online"
USER_OFFLINE = "user:offline"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionHub:
    """Tracks open SSE streams per user."""

    def __init__(
        self,
        queue_size: int = 100,
        presence: bool = True,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self._queue_size = queue_size
        self._presence = presence
        self._metrics = metrics
        self._streams: dict[str, list[asyncio.Queue[dict[str, Any]]]] = {}

    def connect(self, user_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._queue_size)
        first = not self._streams.get(user_id)
        self._streams.setdefault(user_id, []).append(queue)
        log.info("hub.connected", user_id=user_id, streams=len(self._streams[user_id]))
        self._update_gauge()
        if first and self._presence:
            self._broadcast(USER_ONLINE, {"userId": user_id, "timestamp": _now()}, user_id)
        return queue

    def disconnect(self, user_id: str, queue: asyncio.Queue[dict[str, Any]]) -> bool:
        """Remove one stream. Returns True when it was the user's last one."""
        streams = self._streams.get(user_id)
        if not streams:
            return False
        try:
            streams.remove(queue)
        except ValueError:
            pass
        if streams:
            self._update_gauge()
            return False
        del self._streams[user_id]
        log.info("hub.disconnected", user_id=user_id)
        self._update_gauge()
        if self._presence:
            self._broadcast(USER_OFFLINE, {"userId": user_id, "timestamp": _now()}, user_id)
        return True

    def is_connected(self, user_id: str) -> bool:
        return bool(self._streams.get(user_id))

    def connected_users(self) -> list[str]:
        return sorted(self._streams)

    async def handle_queue_message(self, event: QueueMessage) -> int:
        streams = self._streams.get(event.user_id)
        if not streams:
            log.debug("hub.user_not_connected", user_id=event.user_id, queue=event.queue_name)
            return 0

        event_type = event_type_for_queue(event.queue_name)
        body = dict(event.message) if isinstance(event.message, dict) else {"message": event.message}
        body["receivedAt"] = _now()

        delivered = self._push(event.user_id, streams, {"event": event_type, "data": body})
        log.debug("hub.forwarded", user_id=event.user_id, event_type=event_type, streams=delivered)
        return delivered

    async def stream(
        self, queue: asyncio.Queue[dict[str, Any]]
    ) -> AsyncGenerator[dict[str, str], None]:
        """Yield SSE-ready dicts from a connected stream queue."""
        while True:
            item = await queue.get()
            yield {"event": item["event"], "data": json.dumps(item["data"], default=str)}

    def _broadcast(self, event_type: str, data: dict[str, Any], exclude: str) -> int:
        item = {"event": event_type, "data": data}
        delivered = 0
        for user_id, streams in list(self._streams.items()):
            if user_id != exclude:
                delivered += self._push(user_id, streams, item)
        log.debug("hub.broadcast", event_type=event_type, user_id=exclude, streams=delivered)
        return delivered

    def _push(
        self,
        user_id: str,
        streams: list[asyncio.Queue[dict[str, Any]]],
        item: dict[str, Any],
    ) -> int:
        delivered = 0
        for queue in list(streams):
            try:
                queue.put_nowait(item)
                delivered += 1
            except asyncio.QueueFull:
                log.warning("hub.stream_full", user_id=user_id, event_type=item["event"])
                if self._metrics:
                    self._metrics.inc("stream_dropped_total")
        return delivered

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge(
                "connected_streams", sum(len(s) for s in self._streams.values())
            )
