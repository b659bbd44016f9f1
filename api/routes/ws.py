"""WebSocket route for realtime event delivery.

- Credential from ``?token=``, ``Authorization: Bearer`` or a first
  ``authenticate`` frame sent within REALTIME_WS_AUTH_TIMEOUT_S.
- Server sends JSON ping on idle; closes after configurable missed pongs.
- Handler errors become ``error`` frames; the socket stays open unless
  the error closed it.
"""
from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from application.ports.realtime import Envelope
from application.services.realtime_service import RealtimeService
from core.config import settings
from core.logging_config import bind_connection_context, get_logger
from domain.common.exceptions import BusinessException
from domain.realtime.exceptions import (
    RealtimeAuthException,
    RealtimeRateLimitException,
    TransportClosedException,
)
from infrastructure.realtime.registry import CLOSE_GOING_AWAY, CLOSE_POLICY_VIOLATION
from shared.codes import BusinessCode


logger = get_logger(__name__)


router = APIRouter(prefix="/ws", tags=["WebSocket"])


def _extract_token(ws: WebSocket) -> str | None:
    # Prefer query param, fallback to header `Authorization: Bearer x`
    token = ws.query_params.get("token")
    if token:
        return token
    auth = ws.headers.get("authorization") or ""
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return None


def get_realtime_service_from_app(ws: WebSocket) -> RealtimeService:
    svc = getattr(ws.app.state, "realtime_service", None)
    if svc is None:
        raise RuntimeError("Realtime service not initialized. Ensure lifespan sets app.state.realtime_service.")
    return svc


def error_frame(exc: BusinessException) -> Envelope:
    return Envelope.control(
        "error",
        kind=exc.error_type,
        code=int(exc.code),
        message=exc.message,
        details=exc.details or {},
    )


class _HeartbeatTimeout(Exception):
    pass


async def _receive_frame(ws: WebSocket, timeout: Optional[float]) -> Any:
    """Read one text frame; malformed JSON is returned as None."""
    if timeout is not None and timeout > 0:
        raw = await asyncio.wait_for(ws.receive_text(), timeout=timeout)
    else:
        raw = await ws.receive_text()
    try:
        return json.loads(raw)
    except ValueError:
        return None


async def _apply(rt: RealtimeService, connection_id: str, msg: Any) -> None:
    if msg is None:
        rt.send(connection_id, Envelope.control("error", kind="MalformedFrame", message="Frame is not valid JSON"))
        return
    try:
        await rt.handle_frame(connection_id, msg)
    except (RealtimeAuthException, RealtimeRateLimitException, TransportClosedException):
        # the registry already reported and closed the connection
        raise
    except BusinessException as exc:
        logger.info("ws_frame_rejected", connection_id=connection_id, code=int(exc.code), error=exc.message)
        rt.send(connection_id, error_frame(exc))
    except Exception as exc:
        logger.error("ws_frame_failed", connection_id=connection_id, error=str(exc), exc_info=True)
        rt.send(
            connection_id,
            Envelope.control(
                "error",
                kind="InternalError",
                code=int(BusinessCode.SYSTEM_ERROR),
                message="Internal server error",
            ),
        )


async def _await_authentication(ws: WebSocket, rt: RealtimeService, connection_id: str) -> Optional[int]:
    """Serve frames until an ``authenticate`` frame succeeds or the timeout passes."""
    deadline = time.monotonic() + float(settings.REALTIME_WS_AUTH_TIMEOUT_S)
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        try:
            msg = await _receive_frame(ws, remaining)
        except asyncio.TimeoutError:
            return None
        await _apply(rt, connection_id, msg)
        conn = rt.registry.get(connection_id)
        if conn is None:
            return None
        if conn.is_open:
            return conn.user_id


async def _serve(ws: WebSocket, rt: RealtimeService, connection_id: str) -> None:
    # Heartbeat/idle detection parameters (configurable via .env)
    idle_ping_interval = float(settings.REALTIME_WS_IDLE_PING_INTERVAL_S)
    pong_grace = float(settings.REALTIME_WS_PONG_GRACE_S)
    missed_limit = int(settings.REALTIME_WS_MISSED_PING_LIMIT)

    missed = 0
    while rt.is_active(connection_id):
        if idle_ping_interval > 0:
            try:
                msg = await _receive_frame(ws, idle_ping_interval)
            except asyncio.TimeoutError:
                # Idle: send ping and wait a short grace for response
                missed += 1
                rt.send(connection_id, Envelope.control("ping", timestamp=int(time.time() * 1000)))
                try:
                    msg = await _receive_frame(ws, pong_grace)
                    missed = 0
                except asyncio.TimeoutError:
                    if missed > missed_limit:
                        raise _HeartbeatTimeout()
                    continue
        else:
            msg = await _receive_frame(ws, None)
        await _apply(rt, connection_id, msg)


@router.websocket("")
async def websocket_endpoint(ws: WebSocket) -> None:
    await ws.accept()
    rt = get_realtime_service_from_app(ws)
    conn = rt.open_connection(ws)
    connection_id = conn.connection_id
    bind_connection_context(connection_id)

    code: int = CLOSE_GOING_AWAY
    reason: Optional[str] = "client_closed"
    try:
        token = _extract_token(ws)
        if token:
            user_id: Optional[int] = await rt.authenticate(connection_id, token)
        else:
            user_id = await _await_authentication(ws, rt, connection_id)
        if user_id is None:
            logger.info("ws_auth_timeout", connection_id=connection_id)
            rt.send(connection_id, Envelope.control("error", kind="AuthTimeout", message="Authentication timed out"))
            code, reason = CLOSE_POLICY_VIOLATION, "auth_timeout"
            return
        bind_connection_context(connection_id, user_id)
        await _serve(ws, rt, connection_id)
    except (RealtimeAuthException, RealtimeRateLimitException, TransportClosedException) as exc:
        reason = exc.error_type
    except _HeartbeatTimeout:
        logger.info("ws_heartbeat_timeout", connection_id=connection_id)
        reason = "heartbeat_timeout"
    except WebSocketDisconnect:
        logger.info("ws_disconnected", connection_id=connection_id)
    except Exception as exc:
        logger.error("ws_error", connection_id=connection_id, error=str(exc), exc_info=True)
        reason = "server_error"
    finally:
        await rt.disconnect(connection_id, code=code, reason=reason)
