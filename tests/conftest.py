"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import asyncio
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789abcdef0123")
# Keep the app on the in-memory broker even if the shell exports REDIS__URL
os.environ["REALTIME_BROKER"] = "inmemory"

import pytest
import pytest_asyncio

from application.services.channel_authorization import ChannelAuthorizationService
from application.services.realtime_service import RealtimeService
from application.services.token_service import TokenService
from infrastructure.realtime.brokers import InMemoryRealtimeBroker
from infrastructure.realtime.delivery import DeliveryTracker
from infrastructure.realtime.dispatcher import EventDispatcher
from infrastructure.realtime.participants import InMemoryConversationParticipants
from infrastructure.realtime.rate_limit import ConnectionRateLimiter
from infrastructure.realtime.registry import ConnectionRegistry
from infrastructure.realtime.router import ChannelRouter


class FakeTransport:
    """Records frames instead of writing to a socket."""

    def __init__(self, *, fail_after: int | None = None) -> None:
        self.sent: list[dict] = []
        self.closed: tuple[int, str | None] | None = None
        self._fail_after = fail_after

    async def send_json(self, data) -> None:
        if self.closed is not None:
            raise RuntimeError("transport closed")
        if self._fail_after is not None and len(self.sent) >= self._fail_after:
            raise ConnectionResetError("peer gone")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = (code, reason)

    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]

    def of_type(self, ftype: str) -> list[dict]:
        return [f for f in self.sent if f["type"] == ftype]


class ManualClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubValidator:
    """Credentials of the form ``user-<id>``; anything else is rejected."""

    def __init__(self) -> None:
        self.gate: asyncio.Event | None = None

    async def verify(self, credential: str) -> int:
        from domain.realtime.exceptions import AuthErrorKind, RealtimeAuthException

        if self.gate is not None:
            await self.gate.wait()
        if credential == "expired":
            raise RealtimeAuthException(AuthErrorKind.EXPIRED)
        if not credential.startswith("user-"):
            raise RealtimeAuthException(AuthErrorKind.MALFORMED)
        return int(credential.split("-", 1)[1])


class Stack:
    def __init__(self, clock: ManualClock, *, rate_limit: int = 20) -> None:
        self.clock = clock
        self.validator = StubValidator()
        self.participants = InMemoryConversationParticipants({7: [1, 2]})
        self.authorizer = ChannelAuthorizationService(self.participants)
        self.registry = ConnectionRegistry(self.validator, clock=clock)
        self.router = ChannelRouter(self.registry, self.authorizer)
        self.tracker = DeliveryTracker(retention_seconds=3600, clock=clock)
        self.dispatcher = EventDispatcher(self.registry, self.tracker)
        self.broker = InMemoryRealtimeBroker()
        self.rate_limiter = ConnectionRateLimiter(limit=rate_limit, window_seconds=60, clock=clock)
        self.service = RealtimeService(
            registry=self.registry,
            router=self.router,
            dispatcher=self.dispatcher,
            tracker=self.tracker,
            broker=self.broker,
            authorizer=self.authorizer,
            rate_limiter=self.rate_limiter,
            stale_after_s=900,
            sweep_interval_s=0,
        )
        self._seq = 0

    def open(self) -> tuple[str, FakeTransport]:
        self._seq += 1
        transport = FakeTransport()
        conn = self.registry.register(f"c{self._seq}", transport)
        return conn.connection_id, transport

    async def connect(self, user_id: int) -> tuple[str, FakeTransport]:
        connection_id, transport = self.open()
        await self.service.authenticate(connection_id, f"user-{user_id}")
        return connection_id, transport

    async def settle(self) -> None:
        await self.registry.flush()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def stack(clock):
    s = Stack(clock)
    await s.service.start()
    yield s
    await s.service.stop()


@pytest.fixture
def token_service() -> TokenService:
    return TokenService(secret_key="unit-test-secret-key-0123456789abcdef", algorithm="HS256")
