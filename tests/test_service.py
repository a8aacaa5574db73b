"""End-to-end tests of the wired fan-out service."""

import asyncio

from messenger_fanout.config import ServiceConfig
from messenger_fanout.pubsub import MESSAGE_RECEIVED_IN_CONVERSATION
from messenger_fanout.schemas import MessageSentPayload
from messenger_fanout.service import FanoutService

from .test_pubsub import collect, wait_for_listeners


def _message(**overrides):
    fields = dict(
        message_id="m1", sender_id="A", receiver_id="B", conversation_id="C1", content="hi"
    )
    fields.update(overrides)
    return MessageSentPayload(**fields)


async def test_published_message_reaches_sse_stream(service):
    stream = service.hub.connect("B")
    await service.registry.subscribe_user_to_queues("B")

    assert await service.publisher.publish_message_sent(_message())

    item = await asyncio.wait_for(stream.get(), timeout=1)
    assert item["event"] == "message:received"
    assert item["data"]["content"] == "hi"
    assert service.metrics.get("queue_messages_total") == 1


async def test_published_message_reaches_conversation_feed(service):
    received: list = []
    task = collect(service.pubsub, MESSAGE_RECEIVED_IN_CONVERSATION, 1, received)
    await wait_for_listeners(service.pubsub, MESSAGE_RECEIVED_IN_CONVERSATION)

    await service.publisher.publish_message_sent(_message())
    await asyncio.wait_for(task, timeout=1)

    assert received[0]["conversationId"] == "C1"
    assert received[0]["messageReceivedInConversation"]["content"] == "hi"


async def test_queued_messages_delivered_on_subscribe(service):
    stream = service.hub.connect("B")
    await service.publisher.publish_message_sent(_message())

    await service.registry.subscribe_user_to_queues("B")

    item = await asyncio.wait_for(stream.get(), timeout=1)
    assert item["data"]["messageId"] == "m1"


async def test_stop_releases_consumers(config, broker):
    service = FanoutService(config, broker=broker)
    await service.start()
    await service.registry.subscribe_user_to_queues("u1")

    await service.stop()

    assert not service.running
    assert service.registry.consumer_count == 0
    assert broker.consumer_count("messages_queue") == 0
    assert broker.consumer_count("user.u1.messages") == 0


async def test_events_consumer_failure_degrades(config, broker):
    broker.fail_queues.add("messages_queue")
    service = FanoutService(config, broker=broker)

    await service.start()

    assert service.running
    assert not service.events_consumer_active
    assert service.status()["broker"]["events_consumer_active"] is False
    await service.stop()


async def test_events_consumer_loss_detected(service, broker):
    assert service.events_consumer_active

    broker.drop("messages_queue")

    assert not service.events_consumer_active


async def test_store_records_inbound_messages(config_dict, broker):
    config_dict["store"]["enabled"] = True
    service = FanoutService(ServiceConfig.model_validate(config_dict), broker=broker)
    await service.start()
    try:
        await service.publisher.publish_message_sent(_message())
        assert await service.store.count() == 1
        assert (await service.store.recent_messages("C1"))[0]["content"] == "hi"
    finally:
        await service.stop()


async def test_status_reports_subscriptions(service):
    await service.registry.subscribe_user_to_queues("u1")
    service.hub.connect("u1")

    status = service.status()

    assert status["subscriptions"]["by_user"] == {"u1": 5}
    assert status["subscriptions"]["consumers"] == 5
    assert status["connected_users"] == ["u1"]
