"""Application service for realtime WebSocket workflows.

Keeps orchestration (handshake, frame handling, catch-up, maintenance)
separate from the connection indices and the broadcast transport. One
instance is built per application and owns its collaborators' lifecycle
through ``start`` / ``stop``.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from application.ports.realtime import (
    ChannelAuthorizer,
    Envelope,
    RealtimeBrokerPort,
    Transport,
)
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.realtime.channels import Channel, conversation_channel, presence_channel, user_channel
from domain.realtime.connection import Connection
from domain.realtime.events import Event, UserStatus, UserStoppedTyping, UserTyping
from domain.realtime.exceptions import (
    ChannelForbiddenException,
    RealtimeRateLimitException,
)
from infrastructure.realtime.delivery import DeliveryTracker
from infrastructure.realtime.dispatcher import EventDispatcher
from infrastructure.realtime.rate_limit import ConnectionRateLimiter
from infrastructure.realtime.registry import (
    CLOSE_GOING_AWAY,
    CLOSE_NORMAL,
    CLOSE_TRY_AGAIN_LATER,
    ConnectionRegistry,
)
from infrastructure.realtime.router import ChannelRouter


logger = get_logger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class RealtimeService:
    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        router: ChannelRouter,
        dispatcher: EventDispatcher,
        tracker: DeliveryTracker,
        broker: RealtimeBrokerPort,
        authorizer: ChannelAuthorizer,
        rate_limiter: Optional[ConnectionRateLimiter] = None,
        catch_up_limit: int = 500,
        stale_after_s: float = 900.0,
        sweep_interval_s: float = 60.0,
    ) -> None:
        self._registry = registry
        self._router = router
        self._dispatcher = dispatcher
        self._tracker = tracker
        self._broker = broker
        self._authorizer = authorizer
        self._rate_limiter = rate_limiter
        self._catch_up_limit = catch_up_limit
        self._stale_after_s = stale_after_s
        self._sweep_interval_s = sweep_interval_s
        self._maintenance: Optional[asyncio.Task] = None
        registry.on_presence(self._on_presence_change)

    # -------------------- lifecycle --------------------

    async def start(self) -> None:
        await self._broker.subscribe(self.on_broker_event)
        if self._sweep_interval_s > 0 and self._maintenance is None:
            self._maintenance = asyncio.create_task(self._maintenance_loop(), name="realtime-maintenance")
        logger.info("realtime_started")

    async def stop(self) -> None:
        task, self._maintenance = self._maintenance, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        closed = await self._registry.close_all()
        close = getattr(self._broker, "aclose", None)
        if callable(close):
            await close()
        logger.info("realtime_stopped", connections_closed=closed)

    # -------------------- connection lifecycle --------------------

    def open_connection(self, transport: Transport) -> Connection:
        return self._registry.register(uuid.uuid4().hex, transport)

    async def authenticate(self, connection_id: str, credential: str) -> int:
        """Handshake: verify, rate-limit, join own channel, acknowledge."""
        user_id = await self._registry.authenticate(connection_id, credential)
        if self._rate_limiter is not None:
            try:
                self._rate_limiter.hit(user_id)
            except RealtimeRateLimitException as exc:
                logger.warning("ws_rate_limited", connection_id=connection_id, user_id=user_id, retry_after=exc.retry_after)
                self._registry.send(connection_id, Envelope.control("rate-limited", retry_after=exc.retry_after))
                await self._registry.close(connection_id, code=CLOSE_TRY_AGAIN_LATER, reason="rate_limited")
                raise
        await self._router.join(connection_id, user_channel(user_id))
        self._registry.send(
            connection_id,
            Envelope.control(
                "connection-established",
                connection_id=connection_id,
                user_id=user_id,
                server_time=_now_iso(),
            ),
        )
        logger.info("user_connected", connection_id=connection_id, user_id=user_id)
        return user_id

    async def disconnect(self, connection_id: str, *, code: int = CLOSE_NORMAL, reason: Optional[str] = None) -> None:
        conn = self._registry.get(connection_id)
        if conn is None:
            return
        user_id = conn.user_id
        await self._registry.close(connection_id, code=code, reason=reason)
        logger.info(
            "user_disconnected",
            connection_id=connection_id,
            user_id=user_id,
            reason=reason,
            still_online=self._registry.is_online(user_id) if user_id is not None else False,
        )

    def is_active(self, connection_id: str) -> bool:
        conn = self._registry.get(connection_id)
        return conn is not None and not conn.is_closed

    def send(self, connection_id: str, envelope: Envelope) -> bool:
        return self._registry.send(connection_id, envelope)

    # -------------------- channel use-cases --------------------

    async def join(self, connection_id: str, channel: str) -> str:
        joined = await self._router.join(connection_id, channel)
        self._registry.send(connection_id, Envelope(type="channel-joined", channel=joined, data={"channel": joined}))
        return joined

    def leave(self, connection_id: str, channel: str) -> bool:
        self._registry.require_authenticated(connection_id)
        left = self._router.leave(connection_id, channel)
        name = Channel.parse(channel).name
        self._registry.send(connection_id, Envelope(type="channel-left", channel=name, data={"channel": name}))
        return left

    async def acknowledge(self, user_id: int, event_id: str) -> bool:
        """Ack one event; the user must still be allowed on the event's channel."""
        event = self._tracker.get(event_id)
        if event is None:
            return False
        if not await self._authorizer.can_join(user_id, event.channel):
            logger.warning("realtime_ack_forbidden", event_id=event_id, user_id=user_id, channel=event.channel)
            raise ChannelForbiddenException(event.channel)
        acked = self._tracker.record_acknowledged(event_id, user_id)
        if acked:
            logger.debug("realtime_event_acknowledged", event_id=event_id, user_id=user_id)
        return acked

    async def acknowledge_all(self, user_id: int, channels: Optional[Iterable[str]] = None) -> int:
        """Ack every retained event on ``channels`` (default: the user's own channel)."""
        names = await self._authorized_channels(user_id, channels)
        count = self._tracker.acknowledge_all(user_id, names)
        logger.info("realtime_events_acknowledged_all", user_id=user_id, channels=names, count=count)
        return count

    async def catch_up(
        self,
        connection_id: str,
        since_event_id: Optional[str] = None,
        channels: Optional[Iterable[str]] = None,
    ) -> int:
        """Replay unacknowledged events on this connection's channels."""
        conn = self._registry.require_authenticated(connection_id)
        joined = set(conn.channels)
        if channels is not None:
            wanted = {Channel.parse(c).name for c in channels}
            joined &= wanted
        events = self._tracker.unacknowledged_since(
            conn.user_id, since_event_id, joined, limit=self._catch_up_limit  # type: ignore[arg-type]
        )
        sent = self._dispatcher.replay(connection_id, events)
        self._registry.send(
            connection_id,
            Envelope.control("catch-up-complete", count=sent, since_event_id=since_event_id),
        )
        logger.info("ws_catch_up", connection_id=connection_id, user_id=conn.user_id, count=sent)
        return sent

    async def missed_events(
        self,
        user_id: int,
        since_event_id: Optional[str] = None,
        channels: Optional[Iterable[str]] = None,
    ) -> List[Event]:
        """Catch-up for callers without a socket (HTTP)."""
        names = await self._authorized_channels(user_id, channels)
        return self._tracker.unacknowledged_since(user_id, since_event_id, names, limit=self._catch_up_limit)

    async def _authorized_channels(self, user_id: int, channels: Optional[Iterable[str]]) -> List[str]:
        names = [Channel.parse(c).name for c in channels] if channels else [user_channel(user_id)]
        for name in names:
            if not await self._authorizer.can_join(user_id, name):
                raise ChannelForbiddenException(name)
        return names

    def unread_count(self, user_id: int) -> int:
        return self._tracker.unread_count(user_id, [user_channel(user_id)])

    async def typing(self, connection_id: str, conversation_id: int, *, stopped: bool = False) -> None:
        conn = self._registry.require_authenticated(connection_id)
        channel = conversation_channel(conversation_id)
        if channel not in conn.channels:
            raise ChannelForbiddenException(channel)
        payload_cls = UserStoppedTyping if stopped else UserTyping
        event = Event(
            channel=channel,
            payload=payload_cls(conversation_id=int(conversation_id), user_id=conn.user_id),
        )
        await self.publish(event)

    # -------------------- inbound frames --------------------

    async def handle_frame(self, connection_id: str, frame: Any) -> None:
        """Apply one client frame. Errors propagate to the caller."""
        if not isinstance(frame, dict):
            raise DomainValidationException("Frame must be a JSON object", field="frame")
        self._registry.touch(connection_id)
        ftype = str(frame.get("type") or "").lower()
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}

        if ftype == "ping":
            self._registry.send(connection_id, Envelope.control("pong", timestamp=int(time.time() * 1000)))
            return
        if ftype == "pong":
            return
        if ftype == "authenticate":
            await self.authenticate(connection_id, str(data.get("credential") or ""))
            return

        conn = self._registry.require_authenticated(connection_id)
        if ftype == "join-channel":
            await self.join(connection_id, _require(data, "channel"))
        elif ftype == "leave-channel":
            self.leave(connection_id, _require(data, "channel"))
        elif ftype == "ack":
            await self.acknowledge(conn.user_id, str(_require(data, "event_id")))  # type: ignore[arg-type]
        elif ftype == "ack-all":
            channels = _optional_list(data, "channels")
            count = await self.acknowledge_all(conn.user_id, channels)  # type: ignore[arg-type]
            self._registry.send(connection_id, Envelope.control("all-acknowledged", count=count))
        elif ftype == "catch-up":
            channels = _optional_list(data, "channels")
            await self.catch_up(connection_id, data.get("since_event_id") or None, channels)
        elif ftype in ("subscribe-status", "unsubscribe-status"):
            target_user = _int_field(data, "user_id")
            channel = presence_channel(target_user)
            if ftype == "unsubscribe-status":
                self.leave(connection_id, channel)
                return
            await self.join(connection_id, channel)
            # current state first; later changes arrive as user-status events
            self._registry.send(
                connection_id,
                Envelope(type="user-status", channel=channel, data=self.presence_status(target_user)),
            )
        elif ftype in ("typing", "stop-typing"):
            cid = _int_field(data, "conversation_id")
            await self.typing(connection_id, cid, stopped=ftype == "stop-typing")
        else:
            raise DomainValidationException("Unknown frame type", field="type", details={"type": ftype})

    # -------------------- producers / broker --------------------

    async def publish(self, event: Event) -> Event:
        """Hand an event to the broker; every process delivers locally."""
        await self._broker.publish(event.channel, event)
        return event

    async def on_broker_event(self, event: Event) -> None:
        audience = await self._authorizer.audience_of(event.channel)
        await self._dispatcher.publish(event.channel, event, audience=audience)

    async def _on_presence_change(self, user_id: int, online: bool) -> None:
        await self.publish(Event(channel=presence_channel(user_id), payload=UserStatus(user_id=user_id, online=online)))

    # -------------------- presence / stats --------------------

    def presence(self, user_id: int) -> dict:
        return {
            "user_id": user_id,
            "online": self._registry.is_online(user_id),
            "connections": len(self._registry.connections_for(user_id)),
        }

    def presence_status(self, user_id: int) -> dict:
        """Body of a ``user-status`` frame."""
        return {"user_id": user_id, "online": self._registry.is_online(user_id)}

    def stats(self) -> dict:
        return {**self._registry.stats(), "delivery": self._tracker.stats()}

    # -------------------- maintenance --------------------

    async def run_maintenance(self) -> dict:
        purged = self._tracker.purge_expired()
        if self._rate_limiter is not None:
            self._rate_limiter.sweep()
        stale = self._registry.stale_connections(self._stale_after_s)
        for conn in stale:
            logger.info("ws_stale_connection_closed", connection_id=conn.connection_id, user_id=conn.user_id)
            await self.disconnect(conn.connection_id, code=CLOSE_GOING_AWAY, reason="stale")
        return {"purged_events": purged, "stale_closed": len(stale)}

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval_s)
            try:
                await self.run_maintenance()
            except Exception as exc:
                logger.error("realtime_maintenance_failed", error=str(exc), exc_info=True)

    # Expose for API convenience
    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def tracker(self) -> DeliveryTracker:
        return self._tracker


def _require(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DomainValidationException(f"{key} is required", field=key)
    return value if not isinstance(value, str) else value.strip()


def _optional_list(data: dict, key: str) -> Optional[list]:
    value = data.get(key)
    if value is not None and not isinstance(value, list):
        raise DomainValidationException(f"{key} must be a list", field=key)
    return value


def _int_field(data: dict, key: str) -> int:
    value = _require(data, key)
    if isinstance(value, bool):
        raise DomainValidationException(f"{key} must be an integer", field=key)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise DomainValidationException(f"{key} must be an integer", field=key)
