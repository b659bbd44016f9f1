"""
事件发布门面 - 供业务模块（通知、私信、短视频）调用

Producers build domain payloads here instead of hand-writing wire dicts;
every call ends up in ``RealtimeService.publish`` and therefore in the
broker, so all gateway processes see it.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from application.services.realtime_service import RealtimeService
from domain.realtime.channels import conversation_channel, user_channel
from domain.realtime.events import (
    Event,
    MessageRead,
    MessageReactionUpdated,
    NewMessage,
    NewNotification,
    ReelLiked,
)


class RealtimeEventPublisher:
    def __init__(self, service: RealtimeService) -> None:
        self._service = service

    async def notify(
        self,
        recipient_id: int,
        notification_type: str,
        *,
        sender_id: Optional[int] = None,
        content: str = "",
        reference_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> Event:
        """推送通知到接收者的个人频道"""
        payload = NewNotification(
            notification_type=notification_type,
            sender_id=sender_id,
            content=content,
            reference_id=reference_id,
        )
        return await self._publish(user_channel(recipient_id), payload, event_id)

    async def message_sent(self, conversation_id: int, message: dict[str, Any], *, event_id: Optional[str] = None) -> Event:
        payload = NewMessage(conversation_id=conversation_id, message=message)
        return await self._publish(conversation_channel(conversation_id), payload, event_id)

    async def message_read(self, conversation_id: int, message_id: str, reader_id: int) -> Event:
        payload = MessageRead(conversation_id=conversation_id, message_id=message_id, reader_id=reader_id)
        return await self._publish(conversation_channel(conversation_id), payload)

    async def reactions_updated(
        self, conversation_id: int, message_id: str, reactions: Iterable[dict[str, Any]]
    ) -> Event:
        payload = MessageReactionUpdated(
            conversation_id=conversation_id, message_id=message_id, reactions=list(reactions)
        )
        return await self._publish(conversation_channel(conversation_id), payload)

    async def reel_liked(self, owner_id: int, reel_id: str, liker_id: int, likes_count: int) -> Event:
        """通知短视频作者被点赞"""
        payload = ReelLiked(reel_id=reel_id, liker_id=liker_id, likes_count=likes_count)
        return await self._publish(user_channel(owner_id), payload)

    async def _publish(self, channel: str, payload, event_id: Optional[str] = None) -> Event:
        fields: dict[str, Any] = {"channel": channel, "payload": payload}
        if event_id:
            fields["event_id"] = event_id
        return await self._service.publish(Event(**fields))
