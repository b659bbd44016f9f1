"""Async WebSocket client for the realtime gateway.

Runs the ReconnectController against a ``websockets`` connection:
reconnects with backoff, re-authenticates, rejoins the channels it was
asked to hold and requests catch-up after every successful connect.
Event frames are delivered once per event id even when the server
replays them.
"""
from __future__ import annotations

import asyncio
import json
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol, Set

import structlog
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.subscriptions import Subscription, SubscriptionTable

from .reconnection import (
    Action,
    ActionType,
    ReconnectController,
    ReconnectPolicy,
    ReconnectState,
    Signal,
)


logger = structlog.get_logger(__name__)

FrameHandler = Callable[[Dict[str, Any]], Awaitable[None]]
Connector = Callable[[str], Awaitable[Any]]

# control frames that are not application events
_CONTROL_TYPES = {
    "connection-established",
    "channel-joined",
    "channel-left",
    "catch-up-complete",
    "all-acknowledged",
    "pong",
    "ping",
    "auth-error",
    "rate-limited",
    "error",
}


class CredentialProvider(Protocol):
    async def get(self) -> str: ...

    async def refresh(self) -> Optional[str]:
        """New credential, or None when it cannot be refreshed."""
        ...


class StaticCredential:
    def __init__(self, token: str) -> None:
        self._token = token

    async def get(self) -> str:
        return self._token

    async def refresh(self) -> Optional[str]:
        return None

    def set(self, token: str) -> None:
        self._token = token


class RealtimeClient:
    def __init__(
        self,
        url: str,
        credentials: CredentialProvider,
        *,
        policy: Optional[ReconnectPolicy] = None,
        connector: Optional[Connector] = None,
        clock: Callable[[], float] = time.monotonic,
        auto_ack: bool = False,
        dedup_window: int = 1000,
    ) -> None:
        self._url = url
        self._credentials = credentials
        self._controller = ReconnectController(policy)
        self._connector = connector or websockets.connect
        self._clock = clock
        self._auto_ack = auto_ack
        self._handlers: SubscriptionTable[FrameHandler] = SubscriptionTable()
        self._ws: Any = None
        self._connecting: Optional[object] = None
        self._task: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._seen: Set[str] = set()
        self._seen_order: Deque[str] = deque()
        self._dedup_window = max(1, dedup_window)
        self.connection_id: Optional[str] = None
        self.user_id: Optional[int] = None

    # ---------------- public API ----------------

    @property
    def state(self) -> ReconnectState:
        return self._controller.state

    @property
    def controller(self) -> ReconnectController:
        return self._controller

    def on(self, event_type: str, handler: FrameHandler) -> Subscription:
        """Register a handler for a frame type (``*`` for every frame)."""
        return self._handlers.subscribe(event_type, handler)

    async def connect(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name="realtime-client")

    async def disconnect(self) -> None:
        """Explicit disconnect; cancels any pending reconnect."""
        self._connecting = None
        await self._apply(self._controller.handle(Signal.DISCONNECT, self._clock()))
        self._wakeup.set()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            try:
                await asyncio.wait_for(task, timeout=5)
            except asyncio.TimeoutError:
                task.cancel()

    async def join(self, channel: str) -> None:
        self._controller.remember_channel(channel)
        if self.state is ReconnectState.CONNECTED:
            await self._send("join-channel", channel=channel)

    async def leave(self, channel: str) -> None:
        self._controller.forget_channel(channel)
        if self.state is ReconnectState.CONNECTED:
            await self._send("leave-channel", channel=channel)

    async def ack(self, event_id: str) -> None:
        await self._send("ack", event_id=event_id)

    async def ack_all(self, channels: Optional[list[str]] = None) -> None:
        """Acknowledge everything retained on ``channels`` (server default: own channel)."""
        await self._send("ack-all", channels=channels)

    async def watch_status(self, user_id: int) -> None:
        """Receive ``user-status`` frames for ``user_id``; kept across reconnects."""
        await self.join(f"presence:{int(user_id)}")

    async def unwatch_status(self, user_id: int) -> None:
        await self.leave(f"presence:{int(user_id)}")

    async def credential_updated(self) -> None:
        """Resume after the caller replaced a rejected credential."""
        await self._apply(self._controller.handle(Signal.CREDENTIAL_REFRESHED, self._clock()))
        self._wakeup.set()

    # ---------------- driver ----------------

    async def _run(self) -> None:
        await self._apply(self._controller.handle(Signal.CONNECT, self._clock()))
        while self.state is not ReconnectState.IDLE:
            delay = self._controller.seconds_until_due(self._clock())
            if delay is not None:
                await self._sleep(delay)
                await self._apply(self._controller.tick(self._clock()))
            elif self._ws is not None:
                await self._read_loop(self._ws)
            else:
                # awaiting a credential from the caller
                await self._sleep(None)

    async def _sleep(self, delay: Optional[float]) -> None:
        try:
            if delay is None:
                await self._wakeup.wait()
            elif delay > 0:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    frame = json.loads(raw)
                except ValueError:
                    logger.warning("realtime_client_bad_frame")
                    continue
                if isinstance(frame, dict):
                    await self._on_frame(frame)
                if self._ws is not ws:
                    break
        except ConnectionClosed as exc:
            logger.info("realtime_client_transport_closed", code=getattr(exc.rcvd, "code", None))
        finally:
            if self._ws is ws:
                self._ws = None
                await self._apply(self._controller.handle(Signal.TRANSPORT_CLOSED, self._clock()))

    async def _on_frame(self, frame: Dict[str, Any]) -> None:
        ftype = str(frame.get("type") or "")
        data = frame.get("data") if isinstance(frame.get("data"), dict) else {}
        now = self._clock()

        if ftype == "ping":
            await self._send("pong")
        elif ftype == "connection-established":
            self.connection_id = data.get("connection_id")
            self.user_id = data.get("user_id")
            await self._apply(self._controller.handle(Signal.AUTHENTICATED, now))
        elif ftype == "auth-error":
            await self._apply(self._controller.handle(Signal.AUTH_ERROR, now, kind=data.get("kind", "invalid")))
        elif ftype == "rate-limited":
            await self._apply(
                self._controller.handle(Signal.RATE_LIMITED, now, retry_after=data.get("retry_after", 0.0))
            )
        elif ftype == "error" and data.get("kind") == "Forbidden":
            channel = (data.get("details") or {}).get("channel")
            if channel:
                # a refused join is not retried on reconnect
                self._controller.forget_channel(channel)

        event_id = frame.get("event_id")
        if ftype not in _CONTROL_TYPES and event_id:
            if event_id in self._seen:
                logger.debug("realtime_client_duplicate", event_id=event_id)
                return
            self._remember(event_id)
            self._controller.record_event(event_id)
        await self._emit(ftype, frame)
        if self._auto_ack and ftype not in _CONTROL_TYPES and event_id:
            await self.ack(event_id)

    def _remember(self, event_id: str) -> None:
        self._seen.add(event_id)
        self._seen_order.append(event_id)
        while len(self._seen_order) > self._dedup_window:
            self._seen.discard(self._seen_order.popleft())

    async def _emit(self, ftype: str, frame: Dict[str, Any]) -> None:
        for handler in self._handlers.handlers_for(ftype):
            try:
                await handler(frame)
            except Exception as exc:
                logger.warning("realtime_client_handler_failed", type=ftype, error=str(exc), exc_info=True)

    # ---------------- actions ----------------

    async def _apply(self, actions: list[Action]) -> None:
        for action in actions:
            await self._execute(action)

    async def _execute(self, action: Action) -> None:
        now = self._clock()
        if action.type is ActionType.OPEN_TRANSPORT:
            await self._close_transport()
            attempt = object()
            self._connecting = attempt
            try:
                ws = await self._connector(self._url)
            except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
                logger.warning("realtime_client_connect_failed", attempt=action.data.get("attempt"), error=str(exc))
                if self._connecting is attempt:
                    self._connecting = None
                    await self._apply(self._controller.handle(Signal.TRANSPORT_FAILED, now))
                return
            if self._connecting is not attempt or self._controller.state is not ReconnectState.CONNECTING:
                # disconnect() or a newer attempt superseded this one while it was opening
                logger.info("realtime_client_connect_abandoned", attempt=action.data.get("attempt"))
                await self._close_socket(ws)
                return
            self._connecting = None
            self._ws = ws
            await self._apply(self._controller.handle(Signal.TRANSPORT_OPENED, now))
        elif action.type is ActionType.SEND_AUTHENTICATE:
            credential = await self._credentials.get()
            await self._send("authenticate", credential=credential)
        elif action.type is ActionType.REJOIN_CHANNELS:
            for channel in action.data.get("channels", []):
                await self._send("join-channel", channel=channel)
        elif action.type is ActionType.REQUEST_CATCH_UP:
            await self._send("catch-up", since_event_id=action.data.get("since_event_id"))
        elif action.type is ActionType.REFRESH_CREDENTIAL:
            try:
                refreshed = await self._credentials.refresh()
            except Exception as exc:
                logger.warning("realtime_client_refresh_failed", error=str(exc))
                refreshed = None
            signal = Signal.CREDENTIAL_REFRESHED if refreshed else Signal.CREDENTIAL_REFRESH_FAILED
            await self._apply(self._controller.handle(signal, self._clock()))
        elif action.type is ActionType.SURFACE_AUTH_ERROR:
            await self._emit("auth-error", {"type": "auth-error", "data": dict(action.data)})
        elif action.type is ActionType.CLOSE_TRANSPORT:
            await self._close_transport()

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await self._close_socket(ws)

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            logger.debug("realtime_client_close_ignored", error=str(exc))

    async def _send(self, ftype: str, **data: Any) -> None:
        ws = self._ws
        if ws is None:
            return
        payload = {k: v for k, v in data.items() if v is not None}
        try:
            await ws.send(json.dumps({"type": ftype, "data": payload}))
        except ConnectionClosed:
            # the read loop reports the close
            logger.debug("realtime_client_send_on_closed", type=ftype)
