"""Delivery and acknowledgement bookkeeping.

Keeps every tracked event (in publish order) and one record per
(event id, user id) pair. Records are only ever created or flipped from
delivered to acknowledged. Catch-up reads are pure and can be repeated.
Retention is a time-based sweep over the oldest events.
"""
from __future__ import annotations

import itertools
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

from application.ports.realtime import Clock
from core.logging_config import get_logger
from domain.realtime.events import Event
from domain.realtime.exceptions import DuplicateEventException


logger = get_logger(__name__)


class DeliveryStatus(str, Enum):
    DELIVERED = "delivered"
    ACKNOWLEDGED = "acknowledged"


@dataclass
class DeliveryRecord:
    event_id: str
    user_id: int
    status: DeliveryStatus
    recorded_at: float
    acknowledged_at: Optional[float] = None


@dataclass(frozen=True)
class _Tracked:
    event: Event
    position: int
    tracked_at: float


class DeliveryTracker:
    def __init__(self, *, retention_seconds: float = 86400.0, clock: Clock = time.monotonic) -> None:
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self._retention = float(retention_seconds)
        self._clock = clock
        self._positions = itertools.count()
        self._events: "OrderedDict[str, _Tracked]" = OrderedDict()
        self._records: Dict[Tuple[str, int], DeliveryRecord] = {}
        self._by_event: Dict[str, Set[int]] = {}

    @property
    def retention_seconds(self) -> float:
        return self._retention

    # ---------------- events ----------------

    def track(self, event: Event) -> None:
        """Remember an event for catch-up; raises DuplicateEventException."""
        if event.event_id in self._events:
            raise DuplicateEventException(event.event_id)
        self._events[event.event_id] = _Tracked(
            event=event, position=next(self._positions), tracked_at=self._clock()
        )

    def is_tracked(self, event_id: str) -> bool:
        return event_id in self._events

    def get(self, event_id: str) -> Optional[Event]:
        entry = self._events.get(event_id)
        return entry.event if entry is not None else None

    # ---------------- records ----------------

    def record_delivered(self, event_id: str, user_id: int) -> bool:
        """Create a delivered record; False if the pair already has one."""
        if event_id not in self._events:
            return False
        key = (event_id, int(user_id))
        if key in self._records:
            return False
        self._records[key] = DeliveryRecord(
            event_id=event_id,
            user_id=int(user_id),
            status=DeliveryStatus.DELIVERED,
            recorded_at=self._clock(),
        )
        self._by_event.setdefault(event_id, set()).add(int(user_id))
        return True

    def record_acknowledged(self, event_id: str, user_id: int) -> bool:
        """Flip (or create) the record as acknowledged; False if unknown or already acked."""
        if event_id not in self._events:
            return False
        key = (event_id, int(user_id))
        now = self._clock()
        record = self._records.get(key)
        if record is None:
            record = DeliveryRecord(
                event_id=event_id,
                user_id=int(user_id),
                status=DeliveryStatus.DELIVERED,
                recorded_at=now,
            )
            self._records[key] = record
            self._by_event.setdefault(event_id, set()).add(int(user_id))
        if record.status is DeliveryStatus.ACKNOWLEDGED:
            return False
        record.status = DeliveryStatus.ACKNOWLEDGED
        record.acknowledged_at = now
        return True

    def acknowledge_all(self, user_id: int, channels: Iterable[str]) -> int:
        """Acknowledge every retained event on ``channels``; returns how many flipped."""
        count = 0
        for event in self.unacknowledged_since(user_id, None, channels):
            if self.record_acknowledged(event.event_id, user_id):
                count += 1
        return count

    def is_delivered(self, event_id: str, user_id: int) -> bool:
        return (event_id, int(user_id)) in self._records

    def is_acknowledged(self, event_id: str, user_id: int) -> bool:
        record = self._records.get((event_id, int(user_id)))
        return record is not None and record.status is DeliveryStatus.ACKNOWLEDGED

    def record_for(self, event_id: str, user_id: int) -> Optional[DeliveryRecord]:
        return self._records.get((event_id, int(user_id)))

    # ---------------- catch-up ----------------

    def unacknowledged_since(
        self,
        user_id: int,
        since_event_id: Optional[str],
        channels: Iterable[str],
        *,
        limit: Optional[int] = None,
    ) -> List[Event]:
        """Events on ``channels`` after ``since_event_id`` the user has not acked.

        Ordered by publish order. An unknown or already purged
        ``since_event_id`` returns everything still retained, so a client
        that fell behind the retention window is over-served rather than
        under-served.
        """
        wanted = set(channels)
        if not wanted:
            return []
        start = -1
        if since_event_id:
            anchor = self._events.get(since_event_id)
            if anchor is not None:
                start = anchor.position
        uid = int(user_id)
        result: List[Event] = []
        for entry in self._events.values():
            if entry.position <= start:
                continue
            event = entry.event
            if event.channel not in wanted:
                continue
            if self.is_acknowledged(event.event_id, uid):
                continue
            result.append(event)
            if limit is not None and len(result) >= limit:
                break
        return result

    def unread_count(self, user_id: int, channels: Iterable[str]) -> int:
        return len(self.unacknowledged_since(user_id, None, channels))

    # ---------------- retention ----------------

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Drop events (and their records) older than the retention window."""
        current = self._clock() if now is None else now
        cutoff = current - self._retention
        purged = 0
        while self._events:
            event_id, entry = next(iter(self._events.items()))
            if entry.tracked_at > cutoff:
                break
            self._events.popitem(last=False)
            for uid in self._by_event.pop(event_id, ()):
                self._records.pop((event_id, uid), None)
            purged += 1
        if purged:
            logger.info("realtime_delivery_purged", count=purged, remaining=len(self._events))
        return purged

    def stats(self) -> dict:
        acked = sum(1 for r in self._records.values() if r.status is DeliveryStatus.ACKNOWLEDGED)
        return {
            "events": len(self._events),
            "records": len(self._records),
            "acknowledged": acked,
            "retention_seconds": self._retention,
        }
