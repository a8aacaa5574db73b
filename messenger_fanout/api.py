"""
HTTP endpoints.

- Subscription management: subscribe, conversation subscribe, unsubscribe
- Queue name lookup
- Publishing of chat events onto the broker, bulk announcements, test messages
- Per-user SSE stream of queue events
- Health, status and metrics
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sse_starlette.sse import EventSourceResponse
from starlette.background import BackgroundTask

from .queues import conversation_queue_name, user_queue_names
from .registry import QueueResult
from .schemas import (
    BulkNotifyPayload,
    ConversationPayload,
    DiagnosticMessagePayload,
    FriendRequestPayload,
    MessageSentPayload,
    UserStatusPayload,
    UserTypingPayload,
)
from .service import FanoutService

router = APIRouter()

SSE_PING_SECONDS = 15


def get_service(request: Request) -> FanoutService:
    return request.app.state.service


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _subscribe_response(user_id: str, results: list[QueueResult]) -> dict:
    if results and not any(r.ok for r in results):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": "Broker subscription failed",
                "queues": [r.to_dict() for r in results],
            },
        )
    return {
        "success": True,
        "userId": user_id,
        "queues": [r.to_dict() for r in results],
        "timestamp": _now(),
    }


def _published(ok: bool, what: str) -> None:
    if not ok:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to publish {what}",
        )


# --- System ---


@router.get("/health", tags=["System"])
async def health(service: FanoutService = Depends(get_service)):
    state = "ok" if service.events_consumer_active else "degraded"
    return {
        "status": state,
        "activeSubscriptions": len(service.registry.get_active_subscriptions()),
        "timestamp": _now(),
    }


@router.get("/status", tags=["System"])
async def detailed_status(service: FanoutService = Depends(get_service)):
    return {
        **service.status(),
        "queues": {"patterns": list(user_queue_names("example"))},
        "timestamp": _now(),
    }


@router.get("/metrics", tags=["System"], response_class=PlainTextResponse)
async def metrics(service: FanoutService = Depends(get_service)):
    if not service.config.metrics.enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metrics disabled")
    return PlainTextResponse(service.metrics.to_prometheus())


# --- Subscriptions ---


@router.get("/subscriptions", tags=["Subscriptions"])
async def active_subscriptions(service: FanoutService = Depends(get_service)):
    subscriptions = service.registry.get_active_subscriptions()
    return {
        "total": len(subscriptions),
        "subscriptions": [
            {"userId": s["user_id"], "queues": s["queues"]} for s in subscriptions
        ],
        "timestamp": _now(),
    }


@router.post("/subscribe/{user_id}", tags=["Subscriptions"])
async def subscribe_user(user_id: str, service: FanoutService = Depends(get_service)):
    results = await service.registry.subscribe_user_to_queues(user_id)
    return _subscribe_response(user_id, results)


@router.post("/subscribe/{user_id}/conversation/{conversation_id}", tags=["Subscriptions"])
async def subscribe_conversation(
    user_id: str,
    conversation_id: str,
    service: FanoutService = Depends(get_service),
):
    result = await service.registry.subscribe_to_conversation_queue(user_id, conversation_id)
    body = _subscribe_response(user_id, [result])
    body["conversationId"] = conversation_id
    return body


@router.delete("/unsubscribe/{user_id}", tags=["Subscriptions"])
async def unsubscribe_user(user_id: str, service: FanoutService = Depends(get_service)):
    results = await service.registry.unsubscribe_user(user_id)
    return {
        "success": all(r.ok for r in results),
        "userId": user_id,
        "queues": [r.to_dict() for r in results],
        "timestamp": _now(),
    }


@router.delete("/unsubscribe/{user_id}/conversation/{conversation_id}", tags=["Subscriptions"])
async def unsubscribe_conversation(
    user_id: str,
    conversation_id: str,
    service: FanoutService = Depends(get_service),
):
    result = await service.registry.unsubscribe_from_conversation_queue(user_id, conversation_id)
    return {
        "success": result.ok,
        "userId": user_id,
        "conversationId": conversation_id,
        "queue": result.to_dict(),
        "timestamp": _now(),
    }


# --- Queue names ---


@router.get("/queues/conversation/{conversation_id}", tags=["Queues"])
async def conversation_queue(conversation_id: str):
    return {
        "conversationId": conversation_id,
        "queueName": conversation_queue_name(conversation_id),
        "timestamp": _now(),
    }


@router.get("/queues/{user_id}", tags=["Queues"])
async def user_queues(user_id: str):
    return {"userId": user_id, "queues": user_queue_names(user_id), "timestamp": _now()}


# --- Publishing ---


@router.post("/publish/message", tags=["Publishing"])
async def publish_message(
    payload: MessageSentPayload, service: FanoutService = Depends(get_service)
):
    _published(await service.publisher.publish_message_sent(payload), "message")
    return {
        "success": True,
        "messageId": payload.message_id,
        "conversationId": payload.conversation_id,
        "recipients": len(payload.recipients),
        "timestamp": _now(),
    }


@router.post("/publish/user-status", tags=["Publishing"])
async def publish_user_status(
    payload: UserStatusPayload, service: FanoutService = Depends(get_service)
):
    _published(await service.publisher.publish_user_status(payload), "user status")
    return {
        "success": True,
        "userId": payload.user_id,
        "status": payload.status.value,
        "notifiedUsers": len(payload.notify_users),
        "timestamp": _now(),
    }


@router.post("/publish/typing", tags=["Publishing"])
async def publish_typing(
    payload: UserTypingPayload, service: FanoutService = Depends(get_service)
):
    _published(await service.publisher.publish_user_typing(payload), "typing status")
    return {
        "success": True,
        "userId": payload.user_id,
        "conversationId": payload.conversation_id,
        "isTyping": payload.is_typing,
        "timestamp": _now(),
    }


@router.post("/publish/friend-request", tags=["Publishing"])
async def publish_friend_request(
    payload: FriendRequestPayload, service: FanoutService = Depends(get_service)
):
    _published(await service.publisher.publish_friend_request(payload), "friend request")
    return {
        "success": True,
        "requestId": payload.request_id,
        "receiverId": payload.receiver_id,
        "timestamp": _now(),
    }


@router.post("/publish/conversation", tags=["Publishing"])
async def publish_conversation(
    payload: ConversationPayload, service: FanoutService = Depends(get_service)
):
    _published(
        await service.publisher.publish_conversation_created(payload), "conversation event"
    )
    return {
        "success": True,
        "conversationId": payload.conversation_id,
        "participants": len(payload.participant_ids),
        "timestamp": _now(),
    }


# --- System messages ---


@router.post("/bulk/notify", tags=["Publishing"])
async def bulk_notify(
    payload: BulkNotifyPayload, service: FanoutService = Depends(get_service)
):
    successful, failed = await service.publisher.publish_bulk_notify(payload)
    return {
        "total": successful + failed,
        "successful": successful,
        "failed": failed,
        "type": payload.type,
        "timestamp": _now(),
    }


@router.post("/test/message", tags=["Publishing"])
async def send_test_message(
    payload: DiagnosticMessagePayload, service: FanoutService = Depends(get_service)
):
    ok, message = await service.publisher.publish_diagnostic_message(payload)
    _published(ok, "test message")
    return {"success": True, "testPayload": message.to_wire(), "timestamp": _now()}


# --- SSE ---


@router.get("/stream/{user_id}", tags=["Streaming"])
async def stream_user_events(
    request: Request,
    user_id: str,
    service: FanoutService = Depends(get_service),
):
    """
    Stream a user's queue events via SSE.

    With ``fanout.auto_subscribe`` the user's personal queues are opened
    on connect and released when their last stream closes.
    """
    auto_subscribe = service.config.fanout.auto_subscribe
    queue = service.hub.connect(user_id)
    if auto_subscribe:
        await service.registry.subscribe_user_to_queues(user_id)

    released = False

    async def release():
        nonlocal released
        if released:
            return
        released = True
        last = service.hub.disconnect(user_id, queue)
        if last and auto_subscribe:
            await service.registry.unsubscribe_user(user_id)

    async def generate():
        try:
            yield {
                "event": "connection:established",
                "data": json.dumps({"userId": user_id, "timestamp": _now()}),
            }
            async for item in service.hub.stream(queue):
                if await request.is_disconnected():
                    break
                yield item
        finally:
            await release()

    # the background task covers clients that leave before the first yield
    return EventSourceResponse(
        generate(), ping=SSE_PING_SECONDS, background=BackgroundTask(release)
    )
