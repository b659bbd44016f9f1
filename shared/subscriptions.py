"""
Explicit subscription table.

Handlers are stored per key in subscription order, and every subscribe
call returns a handle that removes exactly that registration. Removal
never relies on comparing handler objects, so registering the same
callable twice yields two independent subscriptions.
"""
from __future__ import annotations

import itertools
from typing import Callable, Dict, Generic, List, Tuple, TypeVar


H = TypeVar("H", bound=Callable)

WILDCARD = "*"


class Subscription:
    """Handle returned by SubscriptionTable.subscribe."""

    __slots__ = ("_table", "key", "_token")

    def __init__(self, table: "SubscriptionTable", key: str, token: int) -> None:
        self._table = table
        self.key = key
        self._token = token

    @property
    def active(self) -> bool:
        return self._table._has(self.key, self._token)

    def unsubscribe(self) -> bool:
        """Remove this registration; False if it was already removed."""
        return self._table._remove(self.key, self._token)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.unsubscribe()


class SubscriptionTable(Generic[H]):
    def __init__(self) -> None:
        self._handlers: Dict[str, List[Tuple[int, H]]] = {}
        self._ids = itertools.count(1)

    def subscribe(self, key: str, handler: H) -> Subscription:
        if not callable(handler):
            raise TypeError("handler must be callable")
        token = next(self._ids)
        self._handlers.setdefault(key, []).append((token, handler))
        return Subscription(self, key, token)

    def handlers_for(self, key: str) -> List[H]:
        """Snapshot of handlers for key, then wildcard handlers."""
        found = [h for _, h in self._handlers.get(key, ())]
        if key != WILDCARD:
            found.extend(h for _, h in self._handlers.get(WILDCARD, ()))
        return found

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return sum(len(v) for v in self._handlers.values())

    def _has(self, key: str, token: int) -> bool:
        return any(t == token for t, _ in self._handlers.get(key, ()))

    def _remove(self, key: str, token: int) -> bool:
        entries = self._handlers.get(key)
        if not entries:
            return False
        for i, (t, _) in enumerate(entries):
            if t == token:
                del entries[i]
                if not entries:
                    del self._handlers[key]
                return True
        return False
