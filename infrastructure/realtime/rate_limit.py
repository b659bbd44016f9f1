"""Sliding-window limit on authenticated connects per user."""
from __future__ import annotations

import time
from collections import deque
from typing import Deque, Dict

from application.ports.realtime import Clock
from domain.realtime.exceptions import RealtimeRateLimitException


class ConnectionRateLimiter:
    def __init__(self, *, limit: int = 20, window_seconds: float = 60.0, clock: Clock = time.monotonic) -> None:
        self._limit = max(1, int(limit))
        self._window = float(window_seconds)
        self._clock = clock
        self._attempts: Dict[int, Deque[float]] = {}

    def hit(self, user_id: int) -> None:
        """Count one connect; raises RealtimeRateLimitException past the limit."""
        now = self._clock()
        attempts = self._attempts.setdefault(user_id, deque())
        self._evict(attempts, now)
        if len(attempts) >= self._limit:
            retry_after = attempts[0] + self._window - now
            raise RealtimeRateLimitException(retry_after)
        attempts.append(now)

    def remaining(self, user_id: int) -> int:
        attempts = self._attempts.get(user_id)
        if not attempts:
            return self._limit
        self._evict(attempts, self._clock())
        return max(0, self._limit - len(attempts))

    def sweep(self) -> None:
        now = self._clock()
        for user_id in list(self._attempts):
            attempts = self._attempts[user_id]
            self._evict(attempts, now)
            if not attempts:
                del self._attempts[user_id]

    def _evict(self, attempts: Deque[float], now: float) -> None:
        while attempts and attempts[0] <= now - self._window:
            attempts.popleft()
