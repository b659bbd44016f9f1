"""In-memory implementation of RealtimeBrokerPort.

Single-process only. Useful for local dev and tests.
"""
from __future__ import annotations

from typing import List

from application.ports.realtime import EventHandler, RealtimeBrokerPort
from domain.realtime.events import Event


class InMemoryRealtimeBroker(RealtimeBrokerPort):
    def __init__(self) -> None:
        self._handlers: List[EventHandler] = []

    async def publish(self, channel: str, event: Event) -> None:  # type: ignore[override]
        # Deliver sequentially so per-channel publish order is kept
        for h in list(self._handlers):
            await h(event)

    async def subscribe(self, handler: EventHandler) -> None:  # type: ignore[override]
        self._handlers.append(handler)

    async def aclose(self) -> None:  # type: ignore[override]
        self._handlers.clear()
