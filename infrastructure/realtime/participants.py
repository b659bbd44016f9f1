"""In-memory conversation participants.

Single-process only. Useful for local dev and tests; production plugs
in an implementation backed by the conversation store.
"""
from __future__ import annotations

from typing import Dict, Iterable, Set

from domain.realtime.participants import ConversationParticipants


class InMemoryConversationParticipants(ConversationParticipants):
    def __init__(self, conversations: Dict[int, Iterable[int]] | None = None) -> None:
        self._members: Dict[int, Set[int]] = {
            int(cid): {int(u) for u in users} for cid, users in (conversations or {}).items()
        }

    def add(self, conversation_id: int, *user_ids: int) -> None:
        self._members.setdefault(int(conversation_id), set()).update(int(u) for u in user_ids)

    def remove(self, conversation_id: int, *user_ids: int) -> None:
        members = self._members.get(int(conversation_id))
        if members is None:
            return
        members.difference_update(int(u) for u in user_ids)

    async def is_participant(self, user_id: int, conversation_id: int) -> bool:  # type: ignore[override]
        return int(user_id) in self._members.get(int(conversation_id), set())

    async def participants_of(self, conversation_id: int) -> Set[int]:  # type: ignore[override]
        return set(self._members.get(int(conversation_id), set()))
