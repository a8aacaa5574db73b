"""
Broker adapters.

Two implementations of one small contract:
- AmqpBroker: RabbitMQ through aio-pika, one connection per consumer
- InMemoryBroker: single-process queues for local development and tests

A consumer handle owns its broker resources; closing it releases them.
"""

from __future__ import annotations

import json
from collections import defaultdict, deque
from typing import Any, Callable, Coroutine, Protocol

import aio_pika
import structlog
from aio_pika.abc import AbstractIncomingMessage

from .config import BrokerConfig

log = structlog.get_logger()

MessageCallback = Callable[[Any], Coroutine[Any, Any, None]]
LostCallback = Callable[[str, BaseException | None], None]


class ConsumerHandle(Protocol):
    queue_name: str

    async def close(self) -> None: ...


class Broker(Protocol):
    async def consume(
        self,
        queue_name: str,
        on_message: MessageCallback,
        on_lost: LostCallback | None = None,
    ) -> ConsumerHandle: ...

    async def publish(self, queue_name: str, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


# --- RabbitMQ ---


class AmqpConsumer:
    """A durable queue consumer holding its own AMQP connection."""

    def __init__(
        self,
        queue_name: str,
        connection: aio_pika.abc.AbstractConnection,
        queue: aio_pika.abc.AbstractQueue,
        consumer_tag: str,
    ):
        self.queue_name = queue_name
        self._connection = connection
        self._queue = queue
        self._consumer_tag = consumer_tag
        self._closing = False

    @property
    def closing(self) -> bool:
        return self._closing

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        try:
            await self._queue.cancel(self._consumer_tag)
        finally:
            await self._connection.close()


class AmqpBroker:
    """
    RabbitMQ adapter.

    Each consumer opens a dedicated connection and declares its queue as
    durable. Deliveries are JSON-decoded and acknowledged on receipt.
    Publishing shares one lazily opened connection.
    """

    def __init__(self, url: str, prefetch_count: int = 10):
        self._url = url
        self._prefetch_count = prefetch_count
        self._publish_connection: aio_pika.abc.AbstractConnection | None = None
        self._publish_channel: aio_pika.abc.AbstractChannel | None = None
        self._declared: set[str] = set()

    async def consume(
        self,
        queue_name: str,
        on_message: MessageCallback,
        on_lost: LostCallback | None = None,
    ) -> AmqpConsumer:
        connection = await aio_pika.connect(self._url)
        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._prefetch_count)
            queue = await channel.declare_queue(queue_name, durable=True)

            async def _deliver(message: AbstractIncomingMessage) -> None:
                async with message.process():
                    try:
                        payload = json.loads(message.body)
                    except (json.JSONDecodeError, UnicodeDecodeError):
                        log.warning(
                            "broker.decode_error",
                            queue=queue_name,
                            body=message.body[:200],
                        )
                        return
                    await on_message(payload)

            consumer_tag = await queue.consume(_deliver)
        except Exception:
            await connection.close()
            raise

        consumer = AmqpConsumer(queue_name, connection, queue, consumer_tag)

        def _on_close(_sender: Any, exc: BaseException | None = None) -> None:
            if consumer.closing:
                return
            log.warning("broker.connection_lost", queue=queue_name, error=str(exc))
            if on_lost:
                on_lost(queue_name, exc)

        connection.close_callbacks.add(_on_close)
        return consumer

    async def publish(self, queue_name: str, payload: dict[str, Any]) -> None:
        channel = await self._get_publish_channel()
        if queue_name not in self._declared:
            await channel.declare_queue(queue_name, durable=True)
            self._declared.add(queue_name)
        await channel.default_exchange.publish(
            aio_pika.Message(
                body=json.dumps(payload, default=str).encode(),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue_name,
        )

    async def close(self) -> None:
        if self._publish_connection:
            await self._publish_connection.close()
            self._publish_connection = None
            self._publish_channel = None
            self._declared.clear()

    async def _get_publish_channel(self) -> aio_pika.abc.AbstractChannel:
        if self._publish_connection is None or self._publish_connection.is_closed:
            self._publish_connection = await aio_pika.connect(self._url)
            self._publish_channel = await self._publish_connection.channel()
            self._declared.clear()
        assert self._publish_channel
        return self._publish_channel


# --- In-memory ---


class MemoryConsumer:
    def __init__(
        self,
        broker: InMemoryBroker,
        queue_name: str,
        on_message: MessageCallback,
        on_lost: LostCallback | None,
    ):
        self.queue_name = queue_name
        self.on_message = on_message
        self.on_lost = on_lost
        self._broker = broker
        self.closed = False

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._broker._detach(self)


class InMemoryBroker:
    """
    Single-process stand-in for RabbitMQ.

    Queues are durable for the broker's lifetime: messages published with
    no consumer attached wait for the next one. Consumers sharing a queue
    receive messages round-robin, as competing consumers do on RabbitMQ.
    """

    def __init__(self) -> None:
        self._consumers: dict[str, list[MemoryConsumer]] = defaultdict(list)
        self._pending: dict[str, deque[dict[str, Any]]] = defaultdict(deque)
        self._cursor: dict[str, int] = defaultdict(int)
        self.fail_queues: set[str] = set()
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.fail_publish = False

    async def consume(
        self,
        queue_name: str,
        on_message: MessageCallback,
        on_lost: LostCallback | None = None,
    ) -> MemoryConsumer:
        if queue_name in self.fail_queues:
            raise ConnectionError(f"Connection refused for queue {queue_name}")
        consumer = MemoryConsumer(self, queue_name, on_message, on_lost)
        self._consumers[queue_name].append(consumer)

        pending = self._pending.pop(queue_name, None)
        while pending:
            await on_message(pending.popleft())
        return consumer

    async def publish(self, queue_name: str, payload: dict[str, Any]) -> None:
        if self.fail_publish:
            raise ConnectionError("Broker unavailable")
        self.published.append((queue_name, payload))
        consumers = self._consumers.get(queue_name)
        if not consumers:
            self._pending[queue_name].append(payload)
            return
        index = self._cursor[queue_name] % len(consumers)
        self._cursor[queue_name] = index + 1
        await consumers[index].on_message(payload)

    def consumer_count(self, queue_name: str) -> int:
        return len(self._consumers.get(queue_name, ()))

    def pending_count(self, queue_name: str) -> int:
        return len(self._pending.get(queue_name, ()))

    def drop(self, queue_name: str) -> None:
        """Simulate a lost connection for every consumer of *queue_name*."""
        for consumer in list(self._consumers.get(queue_name, ())):
            consumer.closed = True
            self._detach(consumer)
            if consumer.on_lost:
                consumer.on_lost(queue_name, ConnectionResetError("connection lost"))

    async def close(self) -> None:
        for consumers in list(self._consumers.values()):
            for consumer in list(consumers):
                await consumer.close()

    def _detach(self, consumer: MemoryConsumer) -> None:
        consumers = self._consumers.get(consumer.queue_name)
        if consumers and consumer in consumers:
            consumers.remove(consumer)
        if consumers == []:
            self._consumers.pop(consumer.queue_name, None)


def create_broker(config: BrokerConfig) -> Broker:
    if config.backend == "memory":
        return InMemoryBroker()
    return AmqpBroker(config.url, prefetch_count=config.prefetch_count)
