"""
Connection entity - one live transport session.

Connections are ephemeral and owned by the connection registry; nothing
here is persisted.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Set


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    CLOSED = "closed"


@dataclass(eq=False)
class Connection:
    """Identity is the connection id; two objects never share one."""

    connection_id: str
    transport: Any = field(repr=False)
    created_at: float = 0.0
    user_id: Optional[int] = None
    state: ConnectionState = ConnectionState.CONNECTING
    channels: Set[str] = field(default_factory=set)
    last_activity_at: float = 0.0
    close_reason: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.last_activity_at:
            self.last_activity_at = self.created_at

    def __hash__(self) -> int:
        return hash(self.connection_id)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Connection):
            return NotImplemented
        return self.connection_id == other.connection_id

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == ConnectionState.CLOSED

    def touch(self, now: float) -> None:
        self.last_activity_at = now

    def idle_for(self, now: float) -> float:
        return max(0.0, now - self.last_activity_at)
