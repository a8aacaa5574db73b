"""
Broker subscription registry.

Owns every open queue consumer, keyed by (user_id, queue_name), and the
ordered list of queue names each user is subscribed to.

- At most one consumer per key: the key is reserved before the first
  suspension point, so concurrent subscribe calls share one pending open.
- Subscribe failures are returned as results, never raised.
- A consumer whose connection drops is removed; there is no retry.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

import structlog

from .broker import Broker, ConsumerHandle
from .metrics import MetricsCollector
from .queues import conversation_queue_name, queue_kind, user_queue_names

log = structlog.get_logger()

QueueCallback = Callable[[str, str, Any, datetime], Coroutine[Any, Any, None]]


class QueueStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    ALREADY_SUBSCRIBED = "already_subscribed"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class QueueResult:
    user_id: str
    queue_name: str
    status: QueueStatus
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is not QueueStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "queue": self.queue_name,
            "status": self.status.value,
            "error": self.error,
        }


class SubscriptionRegistry:
    """Per-user broker consumers with idempotent subscribe and scoped release."""

    def __init__(
        self,
        broker: Broker,
        on_message: QueueCallback,
        metrics: MetricsCollector | None = None,
    ):
        self._broker = broker
        self._on_message = on_message
        self._metrics = metrics
        self._consumers: dict[tuple[str, str], asyncio.Task[ConsumerHandle]] = {}
        self._user_queues: dict[str, list[str]] = {}

    # --- Subscribe ---

    async def subscribe_user_to_queues(self, user_id: str) -> list[QueueResult]:
        """Subscribe a user to their five personal queues."""
        results = []
        for queue_name in user_queue_names(user_id).values():
            results.append(await self.subscribe_to_queue(user_id, queue_name))

        # an overlapping unsubscribe may have released some of these already
        active = [
            r.queue_name
            for r in results
            if r.ok and (user_id, r.queue_name) in self._consumers
        ]
        extra = [q for q in self._user_queues.get(user_id, []) if q not in active]
        if active or extra:
            self._user_queues[user_id] = active + extra

        log.info(
            "registry.user_subscribed",
            user_id=user_id,
            queues=len(active),
            failed=len(results) - len(active),
        )
        return results

    async def subscribe_to_conversation_queue(
        self, user_id: str, conversation_id: str
    ) -> QueueResult:
        queue_name = conversation_queue_name(conversation_id)
        result = await self.subscribe_to_queue(user_id, queue_name)
        if result.ok and (user_id, queue_name) in self._consumers:
            queues = self._user_queues.setdefault(user_id, [])
            if queue_name not in queues:
                queues.append(queue_name)
            log.info(
                "registry.conversation_subscribed",
                user_id=user_id,
                conversation_id=conversation_id,
            )
        return result

    async def subscribe_to_queue(self, user_id: str, queue_name: str) -> QueueResult:
        key = (user_id, queue_name)
        pending = self._consumers.get(key)
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except Exception as exc:
                return QueueResult(user_id, queue_name, QueueStatus.FAILED, str(exc))
            if self._consumers.get(key) is pending:
                return QueueResult(user_id, queue_name, QueueStatus.ALREADY_SUBSCRIBED)
            # released while we waited
            return await self.subscribe_to_queue(user_id, queue_name)

        task = asyncio.ensure_future(self._open(user_id, queue_name))
        self._consumers[key] = task
        try:
            await asyncio.shield(task)
        except Exception as exc:
            if self._consumers.get(key) is task:
                del self._consumers[key]
            log.error(
                "registry.subscribe_failed",
                user_id=user_id,
                queue=queue_name,
                error=str(exc),
            )
            self._count("subscriptions_failed_total")
            return QueueResult(user_id, queue_name, QueueStatus.FAILED, str(exc))

        log.debug("registry.queue_subscribed", user_id=user_id, queue=queue_name)
        self._count("subscriptions_opened_total")
        return QueueResult(user_id, queue_name, QueueStatus.SUBSCRIBED)

    async def _open(self, user_id: str, queue_name: str) -> ConsumerHandle:
        key = (user_id, queue_name)
        owner = asyncio.current_task()

        async def _deliver(payload: Any) -> None:
            if self._consumers.get(key) is not owner:
                return
            if self._metrics:
                self._metrics.inc(
                    "queue_messages_total", kind=queue_kind(queue_name) or "other"
                )
            await self._on_message(
                user_id, queue_name, payload, datetime.now(timezone.utc)
            )

        def _lost(_queue: str, exc: BaseException | None) -> None:
            if self._consumers.get(key) is not owner:
                return
            self._forget(user_id, queue_name)
            log.warning(
                "registry.consumer_lost",
                user_id=user_id,
                queue=queue_name,
                error=str(exc) if exc else None,
            )
            self._count("subscriptions_lost_total")

        return await self._broker.consume(queue_name, _deliver, on_lost=_lost)

    # --- Unsubscribe ---

    async def unsubscribe_from_conversation_queue(
        self, user_id: str, conversation_id: str
    ) -> QueueResult:
        queue_name = conversation_queue_name(conversation_id)
        task = self._consumers.pop((user_id, queue_name), None)
        self._drop_queue_name(user_id, queue_name)
        if task is None:
            return QueueResult(user_id, queue_name, QueueStatus.CLOSED)
        result = await self._release(user_id, queue_name, task)
        log.info(
            "registry.conversation_unsubscribed",
            user_id=user_id,
            conversation_id=conversation_id,
        )
        return result

    async def unsubscribe_user(self, user_id: str) -> list[QueueResult]:
        """Close every consumer of *user_id* and forget the user."""
        self._user_queues.pop(user_id, None)
        # every key leaves the table before the first await
        owned = [
            (key[1], self._consumers.pop(key))
            for key in [key for key in self._consumers if key[0] == user_id]
        ]
        self._update_gauge()
        results = []
        for queue_name, task in owned:
            results.append(await self._release(user_id, queue_name, task))

        if results:
            log.info(
                "registry.user_unsubscribed",
                user_id=user_id,
                closed=sum(1 for r in results if r.ok),
            )
        return results

    async def close(self) -> None:
        """Release every consumer."""
        for user_id in {key[0] for key in self._consumers}:
            await self.unsubscribe_user(user_id)
        self._user_queues.clear()

    async def _release(
        self,
        user_id: str,
        queue_name: str,
        task: asyncio.Task[ConsumerHandle],
    ) -> QueueResult:
        self._update_gauge()
        try:
            handle = await asyncio.shield(task)
        except Exception:
            # never opened, nothing to close
            return QueueResult(user_id, queue_name, QueueStatus.CLOSED)
        try:
            await handle.close()
        except Exception as exc:
            log.warning(
                "registry.close_failed",
                user_id=user_id,
                queue=queue_name,
                error=str(exc),
            )
            return QueueResult(user_id, queue_name, QueueStatus.FAILED, str(exc))
        self._count("subscriptions_closed_total")
        return QueueResult(user_id, queue_name, QueueStatus.CLOSED)

    # --- Introspection ---

    def is_subscribed(self, user_id: str, queue_name: str) -> bool:
        task = self._consumers.get((user_id, queue_name))
        return (
            task is not None
            and task.done()
            and not task.cancelled()
            and task.exception() is None
        )

    def get_active_subscriptions(self) -> list[dict[str, Any]]:
        return [
            {"user_id": user_id, "queues": list(queues)}
            for user_id, queues in self._user_queues.items()
        ]

    @property
    def consumer_count(self) -> int:
        return len(self._consumers)

    # --- Internals ---

    def _forget(self, user_id: str, queue_name: str) -> None:
        self._consumers.pop((user_id, queue_name), None)
        self._drop_queue_name(user_id, queue_name)
        self._update_gauge()

    def _drop_queue_name(self, user_id: str, queue_name: str) -> None:
        queues = self._user_queues.get(user_id)
        if queues is None:
            return
        if queue_name in queues:
            queues.remove(queue_name)
        if not queues:
            del self._user_queues[user_id]

    def _count(self, name: str) -> None:
        if self._metrics:
            self._metrics.inc(name)
        self._update_gauge()

    def _update_gauge(self) -> None:
        if self._metrics:
            self._metrics.set_gauge("active_consumers", len(self._consumers))
