"""
Realtime ports and the wire envelope (contracts-first).

This module defines the boundary DTO every frame is serialized through
and the protocols the application layer depends on, so that concrete
transports, brokers and credential checks stay in infrastructure.
"""
from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional, Protocol, Set
from pydantic import BaseModel, Field
from datetime import datetime, timezone

from domain.realtime.events import Event


def _utc_now_z() -> str:
    ts = datetime.now(timezone.utc)
    s = ts.isoformat()
    return s.replace("+00:00", "Z")


class Envelope(BaseModel):
    """Unified WS frame passed between server and client.

    Fields:
      - type: event tag (new-message, ...) or control frame (pong, auth-error, ...)
      - channel: target channel for event frames
      - event_id / seq: identity and per-channel order of event frames
      - data: payload (JSON-serializable)
      - ts: server-generated UTC timestamp (ISO8601 with Z)
    """

    type: str
    channel: str | None = None
    event_id: str | None = None
    seq: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    ts: str = Field(default_factory=_utc_now_z)

    @classmethod
    def control(cls, type: str, **data: Any) -> "Envelope":
        return cls(type=type, data=data)

    @classmethod
    def from_event(cls, event: Event, *, replay: bool = False) -> "Envelope":
        data = event.body()
        data["event_id"] = event.event_id
        if replay:
            data["replay"] = True
        return cls(
            type=event.type,
            channel=event.channel,
            event_id=event.event_id,
            seq=event.sequence,
            data=data,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class Transport(Protocol):
    """Server side of one live connection (a WebSocket in production)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


class CredentialValidator(Protocol):
    """verify(credential) -> user id; raises RealtimeAuthException."""

    async def verify(self, credential: str) -> int: ...


class ChannelAuthorizer(Protocol):
    async def can_join(self, user_id: int, channel: str) -> bool: ...

    async def audience_of(self, channel: str) -> Optional[Set[int]]: ...


EventHandler = Callable[[Event], Awaitable[None]]


class RealtimeBrokerPort(Protocol):
    """Abstraction for cross-process fan-out.

    Implementations may be in-memory (single process) or Redis pub/sub.
    Every process subscribes one handler that hands the event to its
    local dispatcher.
    """

    async def publish(self, channel: str, event: Event) -> None: ...

    async def subscribe(self, handler: EventHandler) -> None: ...

    async def aclose(self) -> None: ...  # pragma: no cover - optional


Clock = Callable[[], float]


__all__ = [
    "Envelope",
    "Transport",
    "CredentialValidator",
    "ChannelAuthorizer",
    "EventHandler",
    "RealtimeBrokerPort",
    "Clock",
]
