"""Event fan-out to the live members of a channel.

``publish`` stamps the per-channel sequence, records the event, and
enqueues one frame per member connection without awaiting in between,
so two events published to the same channel reach every member in
publish order. A failed socket write is not retried on that socket:
the event stays unacknowledged and the client fetches it on catch-up.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from application.ports.realtime import Envelope
from core.logging_config import get_logger
from domain.common.exceptions import DomainValidationException
from domain.realtime.channels import Channel, ChannelKind
from domain.realtime.events import Event
from domain.realtime.exceptions import DuplicateEventException
from infrastructure.realtime.delivery import DeliveryTracker
from infrastructure.realtime.registry import ConnectionRegistry
from shared.subscriptions import Subscription, SubscriptionTable


logger = get_logger(__name__)

Listener = Callable[[Event, "DeliveryReport"], Awaitable[None]]


@dataclass
class DeliveryReport:
    event_id: str
    channel: str
    sequence: Optional[int] = None
    delivered_connections: int = 0
    dropped_connections: int = 0
    delivered_users: Set[int] = field(default_factory=set)
    offline_users: Set[int] = field(default_factory=set)
    duplicate: bool = False

    @property
    def delivered_count(self) -> int:
        return len(self.delivered_users)

    @property
    def offline_count(self) -> int:
        return len(self.offline_users)

    def as_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "channel": self.channel,
            "sequence": self.sequence,
            "delivered": self.delivered_count,
            "offline": self.offline_count,
            "delivered_connections": self.delivered_connections,
            "dropped_connections": self.dropped_connections,
            "duplicate": self.duplicate,
        }


class EventDispatcher:
    def __init__(self, registry: ConnectionRegistry, tracker: DeliveryTracker) -> None:
        self._registry = registry
        self._tracker = tracker
        self._sequences: Dict[str, int] = {}
        self._listeners: SubscriptionTable[Listener] = SubscriptionTable()

    def subscribe(self, event_type: str, listener: Listener) -> Subscription:
        """Observe dispatched events in-process (``*`` for all types)."""
        return self._listeners.subscribe(event_type, listener)

    def last_sequence(self, channel: str) -> int:
        return self._sequences.get(channel, 0)

    async def publish(
        self,
        channel: str,
        event: Event,
        *,
        audience: Optional[Iterable[int]] = None,
    ) -> DeliveryReport:
        """Deliver ``event`` to every live member of ``channel``.

        ``audience`` is the set of users the producer expects to reach; it
        defaults to the owner for ``user:<id>`` channels and is only used to
        report who had no live connection.
        """
        target = Channel.parse(channel)
        if event.channel != target.name:
            raise DomainValidationException(
                "Event channel does not match publish channel",
                field="channel",
                details={"event_channel": event.channel, "channel": target.name},
            )

        if event.tracked and self._tracker.is_tracked(event.event_id):
            logger.debug("realtime_event_duplicate", event_id=event.event_id, channel=target.name)
            return DeliveryReport(event_id=event.event_id, channel=target.name, duplicate=True)

        sequence = self._sequences.get(target.name, 0) + 1
        self._sequences[target.name] = sequence
        stamped = event.with_sequence(sequence)
        if stamped.tracked:
            try:
                self._tracker.track(stamped)
            except DuplicateEventException:  # pragma: no cover - guarded above
                return DeliveryReport(event_id=event.event_id, channel=target.name, duplicate=True)

        report = DeliveryReport(event_id=stamped.event_id, channel=target.name, sequence=sequence)
        frame = Envelope.from_event(stamped).to_wire()
        for conn in self._registry.members_of(target.name):
            if not conn.is_open or conn.user_id is None:
                continue
            if self._registry.send(conn.connection_id, frame):
                report.delivered_connections += 1
                report.delivered_users.add(conn.user_id)
            else:
                report.dropped_connections += 1

        if stamped.tracked:
            for user_id in report.delivered_users:
                self._tracker.record_delivered(stamped.event_id, user_id)

        expected: Set[int] = set(audience) if audience is not None else set()
        if audience is None and target.kind is ChannelKind.USER:
            expected = {target.target_id}
        report.offline_users = expected - report.delivered_users

        logger.info(
            "realtime_event_dispatched",
            event_id=stamped.event_id,
            type=stamped.type,
            channel=target.name,
            seq=sequence,
            delivered=report.delivered_connections,
            offline=report.offline_count,
        )
        await self._notify(stamped, report)
        return report

    def replay(self, connection_id: str, events: List[Event]) -> int:
        """Re-send events to one connection as catch-up; returns frames queued."""
        conn = self._registry.get(connection_id)
        if conn is None or conn.user_id is None:
            return 0
        sent = 0
        for event in events:
            if not self._registry.send(connection_id, Envelope.from_event(event, replay=True)):
                break
            if event.tracked:
                self._tracker.record_delivered(event.event_id, conn.user_id)
            sent += 1
        return sent

    async def _notify(self, event: Event, report: DeliveryReport) -> None:
        for listener in self._listeners.handlers_for(event.type):
            try:
                await listener(event, report)
            except Exception as exc:
                logger.warning("realtime_listener_failed", event_id=event.event_id, error=str(exc), exc_info=True)
