import asyncio
import json

import pytest

from realtime_client import RealtimeClient, ReconnectPolicy, ReconnectState, StaticCredential


FAST = ReconnectPolicy(base_delay=0.01, max_delay=0.05, min_interval=0, max_attempts=10, extended_cooldown=0.05)


class FakeSocket:
    """Stands in for a websockets connection; the server pushes frames into it."""

    def __init__(self, server: "FakeServer") -> None:
        self.server = server
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: list[dict] = []
        self.closed = False

    async def send(self, raw: str) -> None:
        if self.closed:
            return
        frame = json.loads(raw)
        self.sent.append(frame)
        await self.server.respond(self, frame)

    def push(self, frame: dict) -> None:
        self.incoming.put_nowait(json.dumps(frame))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.incoming.put_nowait(None)

    def types(self) -> list[str]:
        return [f["type"] for f in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        raw = await self.incoming.get()
        if raw is None:
            raise StopAsyncIteration
        return raw


class FakeServer:
    def __init__(self) -> None:
        self.sockets: list[FakeSocket] = []
        self.connect_calls = 0
        self.refuse = 0

    async def connect(self, url: str) -> FakeSocket:
        self.connect_calls += 1
        if self.refuse:
            self.refuse -= 1
            raise OSError("connection refused")
        sock = FakeSocket(self)
        self.sockets.append(sock)
        return sock

    async def respond(self, sock: FakeSocket, frame: dict) -> None:
        if frame["type"] != "authenticate":
            return
        credential = frame["data"]["credential"]
        if credential == "expired":
            sock.push({"type": "auth-error", "data": {"kind": "expired"}})
        elif credential.startswith("user-"):
            user_id = int(credential.split("-", 1)[1])
            sock.push(
                {
                    "type": "connection-established",
                    "data": {"connection_id": f"c{len(self.sockets)}", "user_id": user_id},
                }
            )
        else:
            sock.push({"type": "auth-error", "data": {"kind": "malformed"}})

    @property
    def current(self) -> FakeSocket:
        return self.sockets[-1]


class RefreshingCredential:
    def __init__(self) -> None:
        self.token = "expired"
        self.refreshes = 0

    async def get(self) -> str:
        return self.token

    async def refresh(self):
        self.refreshes += 1
        self.token = "user-1"
        return self.token


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while not predicate():
        if loop.time() > end:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.mark.asyncio
async def test_connect_authenticates_rejoins_and_requests_catch_up(server):
    client = RealtimeClient("ws://test/api/v1/ws", StaticCredential("user-1"), policy=FAST, connector=server.connect)
    await client.join("conversation:7")
    await client.join("user:1")
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        await wait_until(lambda: "catch-up" in server.current.types())

        sent = server.current.sent
        assert sent[0] == {"type": "authenticate", "data": {"credential": "user-1"}}
        joins = [f["data"]["channel"] for f in sent if f["type"] == "join-channel"]
        assert joins == ["conversation:7", "user:1"]
        # nothing seen yet, so no anchor
        assert server.current.sent[-1] == {"type": "catch-up", "data": {}}
        assert client.connection_id == "c1"
        assert client.user_id == 1
    finally:
        await client.disconnect()
    assert client.state is ReconnectState.IDLE


@pytest.mark.asyncio
async def test_duplicate_events_are_delivered_once_across_reconnects(server):
    client = RealtimeClient(
        "ws://test", StaticCredential("user-1"), policy=FAST, connector=server.connect, auto_ack=True
    )
    received = []

    async def on_notification(frame):
        received.append(frame["event_id"])

    client.on("new-notification", on_notification)
    event = {"type": "new-notification", "event_id": "e1", "channel": "user:1", "seq": 1, "data": {"content": "hi"}}
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        first = server.current
        first.push(event)
        first.push(event)
        await wait_until(lambda: "ack" in first.types())
        await asyncio.sleep(0.02)
        assert received == ["e1"]
        assert [f["data"] for f in first.sent if f["type"] == "ack"] == [{"event_id": "e1"}]

        # server drops the socket; the client comes back and anchors catch-up on e1
        await first.close()
        await wait_until(lambda: len(server.sockets) == 2 and "catch-up" in server.current.types())
        second = server.current
        assert second.sent[-1] == {"type": "catch-up", "data": {"since_event_id": "e1"}}

        second.push(event)
        second.push({**event, "event_id": "e2", "seq": 2})
        await wait_until(lambda: received == ["e1", "e2"])
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_expired_credential_is_refreshed_before_reconnecting(server):
    credentials = RefreshingCredential()
    client = RealtimeClient("ws://test", credentials, policy=FAST, connector=server.connect)
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        assert credentials.refreshes == 1
        assert len(server.sockets) == 2
        assert server.sockets[0].closed
        assert server.sockets[0].sent[0]["data"]["credential"] == "expired"
        assert server.sockets[1].sent[0]["data"]["credential"] == "user-1"
        assert client.controller.attempts == 0
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_rejected_credential_waits_for_caller(server):
    credentials = StaticCredential("garbage")
    client = RealtimeClient("ws://test", credentials, policy=FAST, connector=server.connect)
    surfaced = []

    async def on_auth_error(frame):
        surfaced.append(frame["data"]["kind"])

    client.on("auth-error", on_auth_error)
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.AWAITING_CREDENTIAL and surfaced)
        await asyncio.sleep(0.05)
        assert server.connect_calls == 1
        assert set(surfaced) == {"malformed"}

        credentials.set("user-3")
        await client.credential_updated()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        assert client.user_id == 3
        assert server.connect_calls == 2
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_during_backoff_cancels_reconnect(server):
    server.refuse = 1000
    slow = ReconnectPolicy(base_delay=0.2, max_delay=0.2, min_interval=0, max_attempts=10)
    client = RealtimeClient("ws://test", StaticCredential("user-1"), policy=slow, connector=server.connect)

    await client.connect()
    await wait_until(lambda: client.state is ReconnectState.BACKOFF)
    calls = server.connect_calls

    await client.disconnect()
    assert client.state is ReconnectState.IDLE
    await asyncio.sleep(0.3)
    assert server.connect_calls == calls


@pytest.mark.asyncio
async def test_refused_join_is_not_retried(server):
    client = RealtimeClient("ws://test", StaticCredential("user-1"), policy=FAST, connector=server.connect)
    await client.join("conversation:99")
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        server.current.push(
            {
                "type": "error",
                "data": {"kind": "Forbidden", "code": 30002, "details": {"channel": "conversation:99"}},
            }
        )
        await wait_until(lambda: client.controller.channels == [])
    finally:
        await client.disconnect()


@pytest.mark.asyncio
async def test_disconnect_while_transport_is_opening_discards_the_socket(server):
    gate = asyncio.Event()
    entered = asyncio.Event()

    async def gated_connect(url: str) -> FakeSocket:
        entered.set()
        await gate.wait()
        return await server.connect(url)

    client = RealtimeClient("ws://test", StaticCredential("user-1"), policy=FAST, connector=gated_connect)
    await client.connect()
    await asyncio.wait_for(entered.wait(), timeout=2)
    assert client.state is ReconnectState.CONNECTING

    stopping = asyncio.create_task(client.disconnect())
    await wait_until(lambda: client.state is ReconnectState.IDLE)
    gate.set()
    await asyncio.wait_for(stopping, timeout=2)

    assert server.current.closed
    assert server.current.sent == []
    assert client.state is ReconnectState.IDLE
    await asyncio.sleep(0.1)
    assert server.connect_calls == 1


@pytest.mark.asyncio
async def test_status_watch_is_rejoined_and_ack_all_is_sent(server):
    client = RealtimeClient("ws://test", StaticCredential("user-2"), policy=FAST, connector=server.connect)
    await client.watch_status(1)
    try:
        await client.connect()
        await wait_until(lambda: client.state is ReconnectState.CONNECTED)
        await wait_until(lambda: "catch-up" in server.current.types())
        joins = [f["data"]["channel"] for f in server.current.sent if f["type"] == "join-channel"]
        assert joins == ["presence:1"]

        await client.ack_all()
        assert server.current.sent[-1] == {"type": "ack-all", "data": {}}

        await client.unwatch_status(1)
        assert server.current.sent[-1] == {"type": "leave-channel", "data": {"channel": "presence:1"}}
        assert client.controller.channels == []
    finally:
        await client.disconnect()
