"""
Broker queue naming.

Personal queues:      user.<userId>.{messages,status,typing,friends,conversations}
Conversation queues:  conversation.<conversationId>.events
"""

from __future__ import annotations

PERSONAL_QUEUE_KINDS = ("messages", "status", "typing", "friends", "conversations")

# Queue kind -> client-facing event type
_EVENT_TYPES = {
    "messages": "message:received",
    "status": "user:status",
    "typing": "typing:update",
    "friends": "friend:update",
    "conversations": "conversation:update",
    "conversation": "conversation:event",
}


def user_queue_names(user_id: str) -> dict[str, str]:
    return {kind: f"user.{user_id}.{kind}" for kind in PERSONAL_QUEUE_KINDS}


def conversation_queue_name(conversation_id: str) -> str:
    return f"conversation.{conversation_id}.events"


def queue_kind(queue_name: str) -> str | None:
    """Return the kind of a personal queue, ``conversation``, or None.

    Ids may contain dots, so only the prefix and the last segment are matched.
    """
    prefix, _, suffix = queue_name.rpartition(".")
    if prefix.startswith("user.") and suffix in PERSONAL_QUEUE_KINDS:
        return suffix
    if prefix.startswith("conversation.") and suffix == "events":
        return "conversation"
    return None


def event_type_for_queue(queue_name: str) -> str:
    """Map a queue name to the event type pushed to live connections."""
    return _EVENT_TYPES.get(queue_kind(queue_name), "notification")
