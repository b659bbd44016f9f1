import pytest

from conftest import Stack
from domain.common.exceptions import DomainValidationException
from domain.realtime.events import Event, NewNotification
from domain.realtime.exceptions import (
    ChannelForbiddenException,
    ConnectionNotAuthenticatedException,
    RealtimeRateLimitException,
)
from infrastructure.realtime.registry import CLOSE_GOING_AWAY, CLOSE_TRY_AGAIN_LATER


def _note(user_id: int, text: str = "") -> Event:
    return Event(channel=f"user:{user_id}", payload=NewNotification(notification_type="comment", content=text))


@pytest.mark.asyncio
async def test_handshake_acknowledges_and_joins_own_channel(stack):
    cid, transport = await stack.connect(1)
    await stack.settle()
    first = transport.sent[0]
    assert first["type"] == "connection-established"
    assert first["data"]["connection_id"] == cid
    assert first["data"]["user_id"] == 1
    assert stack.registry.get(cid).channels == {"user:1"}


@pytest.mark.asyncio
async def test_offline_user_catches_up_in_publish_order(stack):
    first = await stack.service.publish(_note(3, "one"))
    second = await stack.service.publish(_note(3, "two"))

    cid, transport = await stack.connect(3)
    count = await stack.service.catch_up(cid)
    await stack.settle()

    assert count == 2
    replayed = transport.of_type("new-notification")
    assert [f["event_id"] for f in replayed] == [first.event_id, second.event_id]
    assert all(f["data"]["replay"] is True for f in replayed)
    assert transport.of_type("catch-up-complete")[0]["data"]["count"] == 2
    assert transport.types()[-1] == "catch-up-complete"


@pytest.mark.asyncio
async def test_reconnect_catch_up_returns_exactly_the_gap(stack):
    cid, _ = await stack.connect(1)
    seen = await stack.service.publish(_note(1, "seen"))
    await stack.service.acknowledge(1, seen.event_id)
    await stack.service.disconnect(cid, reason="network")

    gap = [await stack.service.publish(_note(1, str(i))) for i in range(3)]

    cid2, transport = await stack.connect(1)
    await stack.service.catch_up(cid2, since_event_id=seen.event_id)
    await stack.settle()
    ids = [f["event_id"] for f in transport.of_type("new-notification")]
    assert ids == [e.event_id for e in gap]
    assert len(set(ids)) == len(ids)

    # acknowledging removes events from later catch-ups
    for e in gap:
        await stack.service.acknowledge(1, e.event_id)
    assert await stack.service.catch_up(cid2, since_event_id=seen.event_id) == 0


@pytest.mark.asyncio
async def test_catch_up_is_limited_to_joined_channels(stack):
    await stack.service.publish(
        Event.model_validate(
            {"channel": "conversation:7", "payload": {"type": "new-message", "conversation_id": 7, "message": {}}}
        )
    )
    cid, _ = await stack.connect(2)
    assert await stack.service.catch_up(cid) == 0
    await stack.service.join(cid, "conversation:7")
    assert await stack.service.catch_up(cid) == 1
    assert await stack.service.catch_up(cid, channels=["user:2"]) == 0


@pytest.mark.asyncio
async def test_connect_rate_limit_closes_with_retry_after(clock):
    stack = Stack(clock, rate_limit=1)
    await stack.service.start()
    try:
        await stack.connect(1)
        cid, transport = stack.open()
        with pytest.raises(RealtimeRateLimitException) as exc_info:
            await stack.service.authenticate(cid, "user-1")
        assert exc_info.value.retry_after == pytest.approx(60.0)
        assert transport.of_type("rate-limited")[0]["data"]["retry_after"] == pytest.approx(60.0)
        assert transport.closed == (CLOSE_TRY_AGAIN_LATER, "rate_limited")

        clock.advance(61)
        await stack.connect(1)
    finally:
        await stack.service.stop()


@pytest.mark.asyncio
async def test_frames_are_routed_and_errors_raised(stack):
    a, ta = await stack.connect(1)
    b, tb = await stack.connect(2)

    await stack.service.handle_frame(a, {"type": "join-channel", "data": {"channel": "conversation:7"}})
    await stack.service.handle_frame(b, {"type": "join-channel", "data": {"channel": "conversation:7"}})
    await stack.service.handle_frame(a, {"type": "ping", "data": {}})
    await stack.service.handle_frame(a, {"type": "typing", "data": {"conversation_id": 7}})
    await stack.settle()

    assert ta.of_type("channel-joined")[0]["data"]["channel"] == "conversation:7"
    assert "timestamp" in ta.of_type("pong")[0]["data"]
    typing = tb.of_type("user-typing")[0]["data"]
    assert (typing["conversation_id"], typing["user_id"]) == (7, 1)

    with pytest.raises(ChannelForbiddenException):
        await stack.service.handle_frame(a, {"type": "join-channel", "data": {"channel": "user:2"}})
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(a, {"type": "join-channel", "data": {}})
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(a, {"type": "message:new", "data": {}})
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(a, ["not", "an", "object"])

    await stack.service.handle_frame(a, {"type": "leave-channel", "data": {"channel": "conversation:7"}})
    with pytest.raises(ChannelForbiddenException):
        await stack.service.handle_frame(a, {"type": "typing", "data": {"conversation_id": 7}})


@pytest.mark.asyncio
async def test_frames_before_authentication_are_refused(stack):
    cid, transport = stack.open()
    await stack.service.handle_frame(cid, {"type": "ping"})
    with pytest.raises(ConnectionNotAuthenticatedException):
        await stack.service.handle_frame(cid, {"type": "join-channel", "data": {"channel": "user:1"}})
    await stack.service.handle_frame(cid, {"type": "authenticate", "data": {"credential": "user-4"}})
    await stack.settle()
    assert transport.types() == ["pong", "connection-established"]


@pytest.mark.asyncio
async def test_ack_frame_records_acknowledgement(stack):
    cid, _ = await stack.connect(1)
    event = await stack.service.publish(_note(1))
    await stack.service.handle_frame(cid, {"type": "ack", "data": {"event_id": event.event_id}})
    assert stack.tracker.is_acknowledged(event.event_id, 1)
    assert stack.service.unread_count(1) == 0


@pytest.mark.asyncio
async def test_maintenance_closes_stale_connections_and_purges(stack, clock):
    cid, transport = await stack.connect(1)
    await stack.service.publish(_note(9))
    clock.advance(901)
    result = await stack.service.run_maintenance()
    assert result["stale_closed"] == 1
    assert transport.closed == (CLOSE_GOING_AWAY, "stale")
    assert stack.registry.get(cid) is None

    clock.advance(3600)
    result = await stack.service.run_maintenance()
    assert result["purged_events"] == 1


@pytest.mark.asyncio
async def test_missed_events_checks_channel_authorization(stack):
    await stack.service.publish(_note(2))
    assert len(await stack.service.missed_events(2)) == 1
    with pytest.raises(ChannelForbiddenException):
        await stack.service.missed_events(2, channels=["user:3"])


@pytest.mark.asyncio
async def test_presence_and_stats(stack):
    await stack.connect(1)
    assert stack.service.presence(1) == {"user_id": 1, "online": True, "connections": 1}
    assert stack.service.presence(2)["online"] is False
    stats = stack.service.stats()
    assert stats["connections"] == 1
    assert "delivery" in stats


@pytest.mark.asyncio
async def test_stop_closes_every_connection(clock):
    stack = Stack(clock)
    await stack.service.start()
    _, transport = await stack.connect(1)
    await stack.service.stop()
    assert transport.closed is not None
    assert len(stack.registry) == 0


def _chat(conversation_id: int = 7) -> Event:
    return Event.model_validate(
        {
            "channel": f"conversation:{conversation_id}",
            "payload": {"type": "new-message", "conversation_id": conversation_id, "message": {"text": "hi"}},
        }
    )


@pytest.mark.asyncio
async def test_ack_requires_access_to_the_event_channel(stack):
    event = await stack.service.publish(_chat())
    with pytest.raises(ChannelForbiddenException):
        await stack.service.acknowledge(3, event.event_id)
    assert not stack.tracker.is_acknowledged(event.event_id, 3)

    cid, _ = await stack.connect(3)
    with pytest.raises(ChannelForbiddenException):
        await stack.service.handle_frame(cid, {"type": "ack", "data": {"event_id": event.event_id}})

    # a participant removed after delivery can no longer ack
    stack.participants.remove(7, 2)
    with pytest.raises(ChannelForbiddenException):
        await stack.service.acknowledge(2, event.event_id)
    assert await stack.service.acknowledge(1, event.event_id) is True
    assert await stack.service.acknowledge(1, "unknown-event") is False


@pytest.mark.asyncio
async def test_conversation_delivery_reports_offline_participants(stack):
    reports = []

    async def capture(event, report):
        reports.append(report)

    stack.dispatcher.subscribe("new-message", capture)
    cid, _ = await stack.connect(1)
    await stack.service.join(cid, "conversation:7")

    await stack.service.publish(_chat())

    report = reports[0]
    assert report.delivered_users == {1}
    assert report.offline_users == {2}
    assert report.offline_count == 1


@pytest.mark.asyncio
async def test_status_subscribers_see_first_connect_and_last_disconnect(stack):
    watcher, tw = await stack.connect(2)
    await stack.service.handle_frame(watcher, {"type": "subscribe-status", "data": {"user_id": 1}})
    await stack.settle()
    snapshot = tw.of_type("user-status")[0]
    assert snapshot["channel"] == "presence:1"
    assert snapshot["data"] == {"user_id": 1, "online": False}

    first, _ = await stack.connect(1)
    second, _ = await stack.connect(1)
    await stack.service.disconnect(first)
    await stack.settle()
    statuses = [f["data"]["online"] for f in tw.of_type("user-status")]
    # only the first connect is reported; one of two connections closing is not
    assert statuses == [False, True]

    await stack.service.disconnect(second)
    await stack.settle()
    last = tw.of_type("user-status")[-1]
    assert (last["data"]["user_id"], last["data"]["online"]) == (1, False)
    assert last["event_id"]
    assert not stack.tracker.is_tracked(last["event_id"])

    await stack.service.handle_frame(watcher, {"type": "unsubscribe-status", "data": {"user_id": 1}})
    await stack.connect(1)
    await stack.settle()
    assert len(tw.of_type("user-status")) == 3


@pytest.mark.asyncio
async def test_status_subscription_validates_user_id(stack):
    cid, _ = await stack.connect(2)
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(cid, {"type": "subscribe-status", "data": {}})
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(cid, {"type": "subscribe-status", "data": {"user_id": "abc"}})


@pytest.mark.asyncio
async def test_ack_all_frame_clears_the_personal_channel(stack):
    cid, transport = await stack.connect(1)
    for i in range(3):
        await stack.service.publish(_note(1, str(i)))
    await stack.service.publish(_chat())
    assert stack.service.unread_count(1) == 3

    await stack.service.handle_frame(cid, {"type": "ack-all", "data": {}})
    await stack.settle()
    assert transport.of_type("all-acknowledged")[0]["data"] == {"count": 3}
    assert stack.service.unread_count(1) == 0
    # conversation events were not part of the default scope
    assert len(await stack.service.missed_events(1, channels=["conversation:7"])) == 1

    assert await stack.service.acknowledge_all(1, ["conversation:7"]) == 1
    assert await stack.service.acknowledge_all(1) == 0
    with pytest.raises(ChannelForbiddenException):
        await stack.service.acknowledge_all(3, ["conversation:7"])


@pytest.mark.asyncio
async def test_typing_frames_reach_members_and_are_not_tracked(stack):
    a, ta = await stack.connect(1)
    b, tb = await stack.connect(2)
    c, tc = await stack.connect(3)
    for cid in (a, b):
        await stack.service.join(cid, "conversation:7")

    await stack.service.handle_frame(a, {"type": "typing", "data": {"conversation_id": "7"}})
    await stack.service.handle_frame(a, {"type": "stop-typing", "data": {"conversation_id": 7}})
    await stack.settle()

    assert [f["type"] for f in tb.sent if f["type"].startswith("user-")] == ["user-typing", "user-stopped-typing"]
    # the sender is a member too
    assert ta.of_type("user-stopped-typing")[0]["data"]["user_id"] == 1
    assert tc.of_type("user-typing") == []
    assert stack.tracker.stats()["events"] == 0
    assert stack.service.unread_count(2) == 0

    with pytest.raises(ChannelForbiddenException):
        await stack.service.handle_frame(c, {"type": "typing", "data": {"conversation_id": 7}})
    with pytest.raises(DomainValidationException):
        await stack.service.handle_frame(a, {"type": "typing", "data": {"conversation_id": "seven"}})
