"""
Channel names.

A channel is a fan-out group keyed by a string such as ``user:42``,
``conversation:7`` or ``presence:42``. Unknown kinds are rejected at
parse time so that authorization never sees them.

``presence:<id>`` carries ``user-status`` events for user ``<id>``;
subscribing to it is how a client watches someone come online.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .exceptions import InvalidChannelException


class ChannelKind(str, Enum):
    USER = "user"
    CONVERSATION = "conversation"
    PRESENCE = "presence"


@dataclass(frozen=True)
class Channel:
    kind: ChannelKind
    target_id: int

    @property
    def name(self) -> str:
        return f"{self.kind.value}:{self.target_id}"

    def __str__(self) -> str:
        return self.name

    @classmethod
    def parse(cls, name: Any) -> "Channel":
        if not isinstance(name, str):
            raise InvalidChannelException(str(name))
        raw = name.strip()
        kind, sep, ident = raw.partition(":")
        # str.isdigit() also accepts superscripts and other non-ASCII digits
        if not sep or not (ident.isascii() and ident.isdigit()):
            raise InvalidChannelException(raw)
        try:
            channel_kind = ChannelKind(kind)
        except ValueError:
            raise InvalidChannelException(raw)
        return cls(kind=channel_kind, target_id=int(ident))


def user_channel(user_id: int) -> str:
    return Channel(ChannelKind.USER, int(user_id)).name


def conversation_channel(conversation_id: int) -> str:
    return Channel(ChannelKind.CONVERSATION, int(conversation_id)).name


def presence_channel(user_id: int) -> str:
    return Channel(ChannelKind.PRESENCE, int(user_id)).name
