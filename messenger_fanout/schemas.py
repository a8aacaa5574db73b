"""Broker payload schemas. Field names travel camelCased on the wire."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def _now() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    IDLE = "idle"
    DND = "dnd"


class ConversationType(str, Enum):
    DIRECT_MESSAGE = "DIRECT_MESSAGE"
    GROUP_CHAT = "GROUP_CHAT"


class WirePayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    timestamp: datetime = Field(default_factory=_now)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessageSentPayload(WirePayload):
    message_id: str
    sender_id: str
    conversation_id: str
    content: str
    receiver_id: Optional[str] = None
    message_type: Literal["text", "image", "file"] = "text"
    recipients: List[str] = Field(default_factory=list)


class UserStatusPayload(WirePayload):
    user_id: str
    status: UserStatus
    notify_users: List[str] = Field(default_factory=list)


class UserTypingPayload(WirePayload):
    user_id: str
    conversation_id: str
    is_typing: bool
    recipients: List[str] = Field(default_factory=list)


class FriendRequestPayload(WirePayload):
    request_id: str
    sender_id: str
    receiver_id: str
    sender_display_name: str
    sender_avatar: Optional[str] = None


class ConversationPayload(WirePayload):
    conversation_id: str
    conversation_type: ConversationType
    participant_ids: List[str]
    initiator_id: str
    conversation_name: Optional[str] = None


class BulkNotifyPayload(WirePayload):
    user_ids: List[str]
    message: str
    type: Literal["announcement", "maintenance", "update"] = "announcement"


class DiagnosticMessagePayload(WirePayload):
    user_id: str
    message: Optional[str] = None
