"""
Conversation participant lookup - owned by the data layer.

The realtime layer only asks questions; it never caches the answers,
because membership can change between two joins.
"""
from abc import ABC, abstractmethod
from typing import Set


class ConversationParticipants(ABC):
    """参与者查询接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def is_participant(self, user_id: int, conversation_id: int) -> bool:
        pass

    @abstractmethod
    async def participants_of(self, conversation_id: int) -> Set[int]:
        pass
