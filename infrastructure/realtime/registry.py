"""In-process connection registry.

Owns every index over live connections: connection id -> Connection,
user id -> connection ids, channel -> connection ids. Only the registry
and the channel router mutate these maps; the dispatcher reads them.
All mutations are plain synchronous code on the event loop, so no lock
is held across an await.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Optional, Set

from application.ports.realtime import Clock, CredentialValidator, Envelope
from core.logging_config import get_logger
from domain.realtime.connection import Connection, ConnectionState
from domain.realtime.exceptions import (
    ConnectionNotAuthenticatedException,
    ConnectionNotFoundException,
    RealtimeAuthException,
    TransportClosedException,
)
from infrastructure.realtime.outbox import ConnectionOutbox


logger = get_logger(__name__)

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013

# (user_id, online); called when a user gains a first or loses a last connection
PresenceListener = Callable[[int, bool], Awaitable[None]]


class ConnectionRegistry:
    def __init__(
        self,
        validator: CredentialValidator,
        *,
        clock: Clock = time.monotonic,
        send_queue_max: int = 100,
        overflow_policy: str = "drop_oldest",
        close_flush_timeout: float = 1.0,
    ) -> None:
        self._validator = validator
        self._clock = clock
        self._send_queue_max = send_queue_max
        self._overflow_policy = overflow_policy
        self._close_flush_timeout = close_flush_timeout
        self._connections: Dict[str, Connection] = {}
        self._by_user: Dict[int, Set[str]] = {}
        self._by_channel: Dict[str, Set[str]] = {}
        self._outboxes: Dict[str, ConnectionOutbox] = {}
        self._presence_listeners: List[PresenceListener] = []

    # ---------------- lifecycle ----------------

    def register(self, connection_id: str, transport: Any) -> Connection:
        if connection_id in self._connections:
            raise ValueError(f"connection already registered: {connection_id}")
        now = self._clock()
        conn = Connection(connection_id=connection_id, transport=transport, created_at=now)
        self._connections[connection_id] = conn
        outbox = ConnectionOutbox(
            connection_id,
            transport,
            max_size=self._send_queue_max,
            overflow_policy=self._overflow_policy,
            on_failure=self._on_transport_failure,
        )
        self._outboxes[connection_id] = outbox
        outbox.start()
        logger.info("ws_registered", connection_id=connection_id, state=conn.state.value)
        return conn

    async def authenticate(self, connection_id: str, credential: str) -> int:
        """Validate the credential and index the connection under its user.

        On failure the connection is closed with reason ``auth_failed`` and
        the RealtimeAuthException is re-raised for the caller to report.
        If the transport goes away while the check is pending, the result
        is discarded and TransportClosedException is raised.
        """
        conn = self.require(connection_id)
        if conn.is_open:
            return conn.user_id  # type: ignore[return-value]
        self._transition(conn, ConnectionState.AUTHENTICATING)
        try:
            user_id = await self._validator.verify(credential)
        except RealtimeAuthException as exc:
            logger.warning("ws_auth_failed", connection_id=connection_id, kind=exc.kind.value)
            if self._connections.get(connection_id) is conn:
                self.send(connection_id, Envelope.control("auth-error", kind=exc.kind.value))
                await self.close(connection_id, code=CLOSE_POLICY_VIOLATION, reason="auth_failed")
            raise

        if self._connections.get(connection_id) is not conn or conn.is_closed:
            logger.info("ws_auth_discarded", connection_id=connection_id, user_id=user_id)
            raise TransportClosedException(connection_id, reason="closed_during_auth")

        conn.user_id = int(user_id)
        ids = self._by_user.setdefault(conn.user_id, set())
        first = not ids
        ids.add(connection_id)
        self._transition(conn, ConnectionState.OPEN)
        conn.touch(self._clock())
        if first:
            await self._notify_presence(conn.user_id, True)
        return conn.user_id

    def deregister(self, connection_id: str) -> Optional[Connection]:
        """Remove from every index; idempotent."""
        conn = self._connections.pop(connection_id, None)
        if conn is None:
            return None
        if conn.user_id is not None:
            ids = self._by_user.get(conn.user_id)
            if ids is not None:
                ids.discard(connection_id)
                if not ids:
                    del self._by_user[conn.user_id]
        for channel in list(conn.channels):
            self._remove_member(channel, connection_id)
        conn.channels.clear()
        if not conn.is_closed:
            self._transition(conn, ConnectionState.CLOSED)
        outbox = self._outboxes.pop(connection_id, None)
        if outbox is not None:
            outbox.discard()
        logger.info("ws_deregistered", connection_id=connection_id, user_id=conn.user_id)
        return conn

    async def close(self, connection_id: str, *, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None:
        """Flush pending frames, deregister and close the transport."""
        conn = self._connections.get(connection_id)
        if conn is None:
            return
        conn.close_reason = conn.close_reason or reason
        outbox = self._outboxes.get(connection_id)
        if outbox is not None:
            try:
                await asyncio.wait_for(outbox.flush(), timeout=self._close_flush_timeout)
            except asyncio.TimeoutError:
                logger.warning("ws_close_flush_timeout", connection_id=connection_id)
        self.deregister(connection_id)
        if outbox is not None:
            await outbox.aclose()
        try:
            await conn.transport.close(code=code, reason=reason)
        except Exception as exc:
            # peer already gone
            logger.debug("ws_close_ignored", connection_id=connection_id, error=str(exc))
        if conn.user_id is not None and not self.is_online(conn.user_id):
            await self._notify_presence(conn.user_id, False)

    async def close_all(self, *, code: int = CLOSE_GOING_AWAY, reason: str = "server_shutdown") -> int:
        ids = list(self._connections)
        for connection_id in ids:
            await self.close(connection_id, code=code, reason=reason)
        return len(ids)

    async def _on_transport_failure(self, connection_id: str, reason: Optional[str]) -> None:
        await self.close(connection_id, code=CLOSE_GOING_AWAY, reason=reason)

    def on_presence(self, listener: PresenceListener) -> None:
        self._presence_listeners.append(listener)

    async def _notify_presence(self, user_id: int, online: bool) -> None:
        logger.info("ws_presence_changed", user_id=user_id, online=online)
        for listener in list(self._presence_listeners):
            try:
                await listener(user_id, online)
            except Exception as exc:
                logger.warning("ws_presence_listener_failed", user_id=user_id, error=str(exc), exc_info=True)

    # ---------------- lookups ----------------

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def require(self, connection_id: str) -> Connection:
        conn = self._connections.get(connection_id)
        if conn is None:
            raise ConnectionNotFoundException(connection_id)
        return conn

    def require_authenticated(self, connection_id: str) -> Connection:
        conn = self.require(connection_id)
        if not conn.is_open or conn.user_id is None:
            raise ConnectionNotAuthenticatedException(connection_id)
        return conn

    def connections_for(self, user_id: int) -> FrozenSet[Connection]:
        ids = self._by_user.get(user_id)
        if not ids:
            return frozenset()
        return frozenset(self._connections[cid] for cid in ids if cid in self._connections)

    def members_of(self, channel: str) -> FrozenSet[Connection]:
        ids = self._by_channel.get(channel)
        if not ids:
            return frozenset()
        return frozenset(self._connections[cid] for cid in ids if cid in self._connections)

    def is_online(self, user_id: int) -> bool:
        return bool(self._by_user.get(user_id))

    def online_user_ids(self) -> List[int]:
        return sorted(self._by_user)

    def all_connections(self) -> List[Connection]:
        return list(self._connections.values())

    def __len__(self) -> int:
        return len(self._connections)

    # ---------------- activity ----------------

    def touch(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.touch(self._clock())

    def stale_connections(self, idle_seconds: float) -> List[Connection]:
        now = self._clock()
        return [c for c in self._connections.values() if c.idle_for(now) > idle_seconds]

    # ---------------- sending ----------------

    def send(self, connection_id: str, envelope: Envelope | dict) -> bool:
        """Queue a frame for one connection; False if it is gone or full."""
        outbox = self._outboxes.get(connection_id)
        if outbox is None:
            return False
        frame = envelope.to_wire() if isinstance(envelope, Envelope) else envelope
        return outbox.put(frame)

    async def flush(self, connection_ids: Optional[Iterable[str]] = None) -> None:
        ids = list(connection_ids) if connection_ids is not None else list(self._outboxes)
        for cid in ids:
            outbox = self._outboxes.get(cid)
            if outbox is not None:
                await outbox.flush()

    # ---------------- membership (router only) ----------------

    def _add_member(self, channel: str, connection_id: str) -> None:
        conn = self._connections[connection_id]
        conn.channels.add(channel)
        self._by_channel.setdefault(channel, set()).add(connection_id)

    def _remove_member(self, channel: str, connection_id: str) -> bool:
        members = self._by_channel.get(channel)
        removed = False
        if members is not None and connection_id in members:
            members.discard(connection_id)
            removed = True
            if not members:
                del self._by_channel[channel]
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.channels.discard(channel)
        return removed

    def channel_count(self) -> int:
        return len(self._by_channel)

    # ---------------- helpers ----------------

    def _transition(self, conn: Connection, state: ConnectionState) -> None:
        previous = conn.state
        conn.state = state
        logger.info(
            "ws_state_changed",
            connection_id=conn.connection_id,
            user_id=conn.user_id,
            from_state=previous.value,
            to_state=state.value,
        )

    def stats(self) -> dict:
        return {
            "connections": len(self._connections),
            "users_online": len(self._by_user),
            "channels": len(self._by_channel),
        }
