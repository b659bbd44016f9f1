"""
Channel authorization rules.

- ``user:<id>``: only that user.
- ``conversation:<id>``: only current participants, asked on every call.
- ``presence:<id>``: any authenticated user.
"""
from __future__ import annotations

from typing import Optional, Set

from domain.realtime.channels import Channel, ChannelKind
from domain.realtime.exceptions import InvalidChannelException
from domain.realtime.participants import ConversationParticipants


class ChannelAuthorizationService:
    def __init__(self, participants: ConversationParticipants) -> None:
        self._participants = participants

    @staticmethod
    def is_self(user_id: int, channel_user_id: int) -> bool:
        return int(user_id) == int(channel_user_id)

    async def can_join(self, user_id: int, channel: str) -> bool:
        try:
            parsed = Channel.parse(channel)
        except InvalidChannelException:
            return False
        if parsed.kind is ChannelKind.USER:
            return self.is_self(user_id, parsed.target_id)
        if parsed.kind is ChannelKind.PRESENCE:
            return True
        return await self._participants.is_participant(int(user_id), parsed.target_id)

    async def audience_of(self, channel: str) -> Optional[Set[int]]:
        """Users an event on ``channel`` is meant for; None when open-ended."""
        parsed = Channel.parse(channel)
        if parsed.kind is ChannelKind.USER:
            return {parsed.target_id}
        if parsed.kind is ChannelKind.CONVERSATION:
            return await self._participants.participants_of(parsed.target_id)
        return None
