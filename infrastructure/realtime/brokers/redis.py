"""Redis Pub/Sub based RealtimeBrokerPort implementation.

Publishes each event to ``rt:channel:{channel}`` (namespaced) and
pattern-subscribes ``rt:channel:*`` so every process sees every channel
and hands events to its local dispatcher.
"""
from __future__ import annotations

import asyncio
from typing import Optional

from pydantic import ValidationError
from redis import asyncio as aioredis
from redis.exceptions import RedisError

from application.ports.realtime import EventHandler, RealtimeBrokerPort
from core.config import settings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.realtime.events import Event


logger = get_logger(__name__)


class RedisRealtimeBroker(RealtimeBrokerPort):
    def __init__(
        self,
        url: Optional[str] = None,
        *,
        namespace: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self._url = url or settings.redis.url
        ns = settings.redis.namespace if namespace is None else namespace
        self._prefix = f"{ns.strip(':')}:rt:channel:" if ns else "rt:channel:"
        self._client = client
        self._owns_client = client is None
        self._pubsub = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._handler: Optional[EventHandler] = None

    def _channel_key(self, channel: str) -> str:
        return f"{self._prefix}{channel}"

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            if not self._url:
                raise RuntimeError("REDIS__URL not configured for realtime broker")
            self._client = aioredis.from_url(self._url, decode_responses=True)
        return self._client

    async def publish(self, channel: str, event: Event) -> None:  # type: ignore[override]
        key = self._channel_key(channel)
        try:
            await self._get_client().publish(key, event.model_dump_json())
        except RedisError as exc:  # pragma: no cover
            logger.error("redis_publish_failed", channel=key, event_id=event.event_id, error=str(exc))

    async def _listen(self) -> None:
        assert self._pubsub is not None and self._handler is not None
        try:
            logger.info("redis_pubsub_subscribed", pattern=f"{self._prefix}*")
            async for message in self._pubsub.listen():
                if self._stopping.is_set():
                    break
                if message.get("type") != "pmessage":
                    continue
                try:
                    event = Event.model_validate_json(message.get("data") or "")
                except (ValidationError, BusinessException) as exc:
                    logger.warning("redis_pubsub_parse_failed", error=str(exc))
                    continue
                try:
                    await self._handler(event)
                except Exception as exc:
                    logger.error("redis_pubsub_handler_failed", event_id=event.event_id, error=str(exc), exc_info=True)
        except asyncio.CancelledError:
            raise
        except RedisError as exc:  # pragma: no cover
            logger.error("redis_pubsub_listen_failed", error=str(exc))

    async def subscribe(self, handler: EventHandler) -> None:  # type: ignore[override]
        self._handler = handler
        self._pubsub = self._get_client().pubsub()
        await self._pubsub.psubscribe(f"{self._prefix}*")
        self._task = asyncio.create_task(self._listen(), name="redis-realtime-listener")

    async def aclose(self) -> None:  # type: ignore[override]
        self._stopping.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except RedisError as exc:  # pragma: no cover
                logger.warning("redis_pubsub_close_failed", error=str(exc))
            self._pubsub = None
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
