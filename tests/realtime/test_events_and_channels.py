import pytest
from pydantic import ValidationError

from application.ports.realtime import Envelope
from domain.realtime.channels import Channel, ChannelKind, conversation_channel, presence_channel, user_channel
from domain.realtime.events import Event, NewMessage, NewNotification, UserTyping
from domain.realtime.exceptions import InvalidChannelException


def test_channel_parse_normalizes_names():
    ch = Channel.parse(" conversation:7 ")
    assert ch.kind is ChannelKind.CONVERSATION
    assert ch.target_id == 7
    assert ch.name == "conversation:7"
    assert user_channel(42) == "user:42"
    assert conversation_channel(7) == "conversation:7"


@pytest.mark.parametrize(
    "name",
    ["", "user", "user:", "user:abc", "room:1", "message:new", "user:-1", "user:²", "conversation:٣", None, 5, ["user:1"]],
)
def test_channel_parse_rejects_unknown_or_malformed(name):
    with pytest.raises(InvalidChannelException):
        Channel.parse(name)


def test_presence_channel_carries_untracked_status_events():
    assert presence_channel(4) == "presence:4"
    assert Channel.parse("presence:4").kind is ChannelKind.PRESENCE
    event = Event.model_validate(
        {"channel": "presence:4", "payload": {"type": "user-status", "user_id": 4, "online": True}}
    )
    assert event.tracked is False


def test_event_payload_is_a_tagged_union():
    event = Event.model_validate(
        {
            "channel": "conversation:7",
            "payload": {"type": "new-message", "conversation_id": 7, "message": {"text": "hi"}},
        }
    )
    assert isinstance(event.payload, NewMessage)
    assert event.type == "new-message"
    assert event.tracked is True


def test_event_rejects_unknown_type_and_missing_fields():
    with pytest.raises(ValidationError):
        Event.model_validate({"channel": "user:1", "payload": {"type": "message:new", "conversation_id": 1}})
    with pytest.raises(ValidationError):
        Event.model_validate({"channel": "user:1", "payload": {"type": "new-message"}})
    with pytest.raises(ValidationError):
        NewNotification(notification_type="like_post", unexpected=True)


def test_event_channel_is_validated():
    with pytest.raises(InvalidChannelException):
        Event(channel="lobby", payload=NewNotification(notification_type="follow"))


def test_typing_events_are_untracked():
    event = Event(channel="conversation:7", payload=UserTyping(conversation_id=7, user_id=1))
    assert event.tracked is False


def test_envelope_from_event_carries_identity_and_replay_flag():
    event = Event(
        channel="user:1",
        payload=NewNotification(notification_type="comment", sender_id=2, content="nice"),
    ).with_sequence(3)
    frame = Envelope.from_event(event).to_wire()
    assert frame["type"] == "new-notification"
    assert frame["channel"] == "user:1"
    assert frame["event_id"] == event.event_id
    assert frame["seq"] == 3
    assert frame["data"]["event_id"] == event.event_id
    assert frame["data"]["sender_id"] == 2
    assert "type" not in frame["data"]
    assert "replay" not in frame["data"]

    replayed = Envelope.from_event(event, replay=True).to_wire()
    assert replayed["data"]["replay"] is True


def test_event_ids_are_unique():
    payload = NewNotification(notification_type="follow")
    ids = {Event(channel="user:1", payload=payload).event_id for _ in range(50)}
    assert len(ids) == 50
