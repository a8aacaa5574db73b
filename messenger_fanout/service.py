"""
Fan-out service orchestrator.

Wires broker, registry, handler, dispatcher, pub/sub, hub and store
together and owns their lifecycle: startup, status, shutdown.
"""

from __future__ import annotations

from typing import Any

import structlog

from .broker import Broker, ConsumerHandle, create_broker
from .config import ServiceConfig
from .events import QUEUE_MESSAGE, EventEmitter
from .handler import InboundEventHandler
from .hub import ConnectionHub
from .metrics import MetricsCollector
from .notifications import NotificationDispatcher
from .publisher import EventPublisher
from .pubsub import PubSub
from .registry import SubscriptionRegistry
from .router import EventRouter
from .store import SqliteMessageStore

log = structlog.get_logger()


class FanoutService:
    """
    Main fan-out process.

    Consumes the shared events queue into the router, and manages
    per-user queue subscriptions whose payloads reach SSE clients
    through the connection hub.
    """

    def __init__(
        self,
        config: ServiceConfig,
        broker: Broker | None = None,
        store: SqliteMessageStore | None = None,
    ):
        self._config = config
        self.metrics = MetricsCollector()
        self.broker = broker or create_broker(config.broker)
        if store is None and config.store.enabled:
            store = SqliteMessageStore(config.store.db_path)
        self.store = store

        self.pubsub = PubSub(self.metrics, config.fanout.subscription_queue_size)
        self.emitter = EventEmitter()
        self.dispatcher = NotificationDispatcher(self.pubsub, self.metrics)
        self.handler = InboundEventHandler(
            self.dispatcher,
            self.pubsub,
            self.emitter,
            store=self.store,
            metrics=self.metrics,
        )
        self.router = EventRouter(self.handler)
        self.registry = SubscriptionRegistry(
            self.broker, self.handler.on_queue_message, self.metrics
        )
        self.hub = ConnectionHub(
            config.fanout.stream_queue_size,
            presence=config.fanout.presence,
            metrics=self.metrics,
        )
        self.emitter.on(QUEUE_MESSAGE, self.hub.handle_queue_message)
        self.publisher = EventPublisher(
            self.broker, config.broker.events_queue, self.metrics
        )

        self._events_consumer: ConsumerHandle | None = None
        self._running = False

    @property
    def config(self) -> ServiceConfig:
        return self._config

    @property
    def running(self) -> bool:
        return self._running

    @property
    def events_consumer_active(self) -> bool:
        return self._events_consumer is not None

    async def start(self) -> None:
        """Open the store and start consuming the shared events queue."""
        if self._running:
            return
        log.info("service.starting", backend=self._config.broker.backend)

        if self.store is not None:
            await self.store.open()

        events_queue = self._config.broker.events_queue
        try:
            self._events_consumer = await self.broker.consume(
                events_queue, self.router.dispatch, on_lost=self._on_events_lost
            )
            log.info("service.events_consumer_started", queue=events_queue)
        except Exception as exc:
            log.error("service.events_consumer_failed", queue=events_queue, error=str(exc))

        self._running = True
        log.info("service.started")

    async def stop(self) -> None:
        """Release every consumer, then close broker and store."""
        if not self._running:
            return
        self._running = False
        log.info("service.stopping")

        await self.registry.close()
        if self._events_consumer is not None:
            try:
                await self._events_consumer.close()
            except Exception as exc:
                log.warning("service.events_consumer_close_failed", error=str(exc))
            self._events_consumer = None

        await self.broker.close()
        if self.store is not None:
            await self.store.close()

        log.info("service.stopped")

    def status(self) -> dict[str, Any]:
        subscriptions = self.registry.get_active_subscriptions()
        return {
            "running": self._running,
            "broker": {
                "backend": self._config.broker.backend,
                "events_queue": self._config.broker.events_queue,
                "events_consumer_active": self.events_consumer_active,
            },
            "subscriptions": {
                "total": len(subscriptions),
                "consumers": self.registry.consumer_count,
                "by_user": {s["user_id"]: len(s["queues"]) for s in subscriptions},
            },
            "connected_users": self.hub.connected_users(),
        }

    def _on_events_lost(self, queue_name: str, exc: BaseException | None) -> None:
        self._events_consumer = None
        log.error("service.events_consumer_lost", queue=queue_name, error=str(exc))
