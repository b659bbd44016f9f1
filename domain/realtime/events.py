"""
Realtime events.

An Event is an immutable payload addressed to one channel. Payloads form
a tagged union over the ``type`` field, so an unknown tag or a missing
field fails when the event is built, not when it is delivered.

Transient payloads (typing indicators, presence changes) set ``tracked = False``: they are
fanned out in order like any other event but never recorded for
acknowledgement or catch-up.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .channels import Channel


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_event_id() -> str:
    return uuid.uuid4().hex


class _Payload(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    tracked: ClassVar[bool] = True


class NewNotification(_Payload):
    type: Literal["new-notification"] = "new-notification"
    # like_post, comment, follow, mention ...
    notification_type: str = Field(min_length=1)
    sender_id: Optional[int] = None
    content: str = ""
    reference_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)


class NewMessage(_Payload):
    type: Literal["new-message"] = "new-message"
    conversation_id: int
    message: dict[str, Any]


class MessageRead(_Payload):
    type: Literal["message-read"] = "message-read"
    conversation_id: int
    message_id: str
    reader_id: int


class MessageReactionUpdated(_Payload):
    type: Literal["message-reaction-updated"] = "message-reaction-updated"
    conversation_id: int
    message_id: str
    reactions: list[dict[str, Any]] = Field(default_factory=list)


class ReelLiked(_Payload):
    type: Literal["reel-liked"] = "reel-liked"
    reel_id: str
    liker_id: int
    likes_count: int = Field(ge=0)


class UserTyping(_Payload):
    type: Literal["user-typing"] = "user-typing"
    conversation_id: int
    user_id: int

    tracked: ClassVar[bool] = False


class UserStoppedTyping(_Payload):
    type: Literal["user-stopped-typing"] = "user-stopped-typing"
    conversation_id: int
    user_id: int

    tracked: ClassVar[bool] = False


class UserStatus(_Payload):
    type: Literal["user-status"] = "user-status"
    user_id: int
    online: bool

    tracked: ClassVar[bool] = False


EventPayload = Annotated[
    Union[
        NewNotification,
        NewMessage,
        MessageRead,
        MessageReactionUpdated,
        ReelLiked,
        UserTyping,
        UserStoppedTyping,
        UserStatus,
    ],
    Field(discriminator="type"),
]

EVENT_TYPES = frozenset(
    {
        "new-notification",
        "new-message",
        "message-read",
        "message-reaction-updated",
        "reel-liked",
        "user-typing",
        "user-stopped-typing",
        "user-status",
    }
)


class Event(BaseModel):
    """Immutable event addressed to a single channel.

    ``sequence`` is stamped by the dispatcher when the event is accepted
    for a channel; producers leave it unset.
    """

    model_config = ConfigDict(frozen=True)

    event_id: str = Field(default_factory=new_event_id, min_length=1)
    channel: str
    payload: EventPayload
    sequence: Optional[int] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @field_validator("channel")
    @classmethod
    def _normalize_channel(cls, v: str) -> str:
        return Channel.parse(v).name

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def tracked(self) -> bool:
        return type(self.payload).tracked

    def with_sequence(self, sequence: int) -> "Event":
        return self.model_copy(update={"sequence": sequence})

    def body(self) -> dict[str, Any]:
        """Payload fields as JSON-ready data, without the type tag."""
        return self.payload.model_dump(mode="json", exclude={"type"})


__all__ = [
    "Event",
    "EventPayload",
    "EVENT_TYPES",
    "NewNotification",
    "NewMessage",
    "MessageRead",
    "MessageReactionUpdated",
    "ReelLiked",
    "UserTyping",
    "UserStoppedTyping",
    "UserStatus",
    "new_event_id",
]
