"""Realtime domain exports."""
from .channels import Channel, ChannelKind, conversation_channel, presence_channel, user_channel
from .connection import Connection, ConnectionState
from .events import Event
from .participants import ConversationParticipants

__all__ = [
    "Channel",
    "ChannelKind",
    "Connection",
    "ConnectionState",
    "ConversationParticipants",
    "Event",
    "conversation_channel",
    "presence_channel",
    "user_channel",
]
