"""Channel membership for live connections.

Authorization is asked on every join and never cached: conversation
membership can change between two connects.
"""
from __future__ import annotations

from typing import FrozenSet, List

from application.ports.realtime import ChannelAuthorizer
from core.logging_config import get_logger
from domain.realtime.channels import Channel
from domain.realtime.connection import Connection
from domain.realtime.exceptions import ChannelForbiddenException, TransportClosedException
from infrastructure.realtime.registry import ConnectionRegistry


logger = get_logger(__name__)


class ChannelRouter:
    def __init__(self, registry: ConnectionRegistry, authorizer: ChannelAuthorizer) -> None:
        self._registry = registry
        self._authorizer = authorizer

    async def join(self, connection_id: str, channel_name: str) -> str:
        """Add the connection to a channel and return the normalized name.

        Raises ChannelForbiddenException without touching membership when
        the owning user may not join.
        """
        conn = self._registry.require_authenticated(connection_id)
        channel = Channel.parse(channel_name).name
        user_id = conn.user_id
        allowed = await self._authorizer.can_join(user_id, channel)  # type: ignore[arg-type]
        if not allowed:
            logger.warning("ws_join_forbidden", connection_id=connection_id, user_id=user_id, channel=channel)
            raise ChannelForbiddenException(channel)
        # the connection may have gone away while authorization was pending
        current = self._registry.get(connection_id)
        if current is not conn or not conn.is_open:
            raise TransportClosedException(connection_id, reason="closed_during_join")
        self._registry._add_member(channel, connection_id)
        logger.info("ws_join_channel", connection_id=connection_id, user_id=user_id, channel=channel)
        return channel

    def leave(self, connection_id: str, channel_name: str) -> bool:
        """Drop membership; a no-op for non-members."""
        channel = Channel.parse(channel_name).name
        removed = self._registry._remove_member(channel, connection_id)
        if removed:
            logger.info("ws_leave_channel", connection_id=connection_id, channel=channel)
        return removed

    def members_of(self, channel_name: str) -> FrozenSet[Connection]:
        return self._registry.members_of(channel_name)

    def channels_of(self, connection_id: str) -> List[str]:
        conn = self._registry.get(connection_id)
        if conn is None:
            return []
        return sorted(conn.channels)
