"""
Conversation window storage.

Each session keeps an append-only list of question/answer turns. The full
list is replayed into every prompt; the window is bounded only at write
time, by `evict`, which runs right after each successful append.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Sequence

from .logging_config import logger
from .models import PromptMessage, Turn


def select_evictions(turns_newest_first: Sequence[Turn], budget: int) -> List[Turn]:
    """
    Walk turns newest first with a running size total and return every turn
    whose running total exceeds the budget when visited.

    The turn that first pushes the total over the budget is evicted along
    with everything older; the retained turns are the longest run of recent
    turns that fits the budget.
    """
    total = 0
    evicted: List[Turn] = []
    for turn in turns_newest_first:
        total += turn.size_bytes
        if total > budget:
            evicted.append(turn)
    return evicted


class ConversationStore(ABC):
    """
    Base class for conversation backends.

    Subclasses provide raw storage for one session's turns, kept oldest
    first; ordering, size accounting, eviction and prompt building live here.
    """

    backend_name = "base"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    @abstractmethod
    async def list_turns(self, session_id: str) -> List[Turn]:
        """Return the session's turns, oldest first."""

    @abstractmethod
    async def _insert(self, turn: Turn) -> None:
        ...

    @abstractmethod
    async def _delete_oldest(self, session_id: str, count: int) -> None:
        ...

    @abstractmethod
    async def clear(self, session_id: str) -> None:
        """Delete every turn of the session."""

    async def append(self, session_id: str, question: str, answer: str) -> Optional[Turn]:
        if not question or not answer:
            logger.info(
                "context: skip empty turn for session %s (question=%d chars, answer=%d chars)",
                session_id,
                len(question or ""),
                len(answer or ""),
            )
            return None
        turn = Turn.create(session_id, question, answer, created_at=self._clock())
        await self._insert(turn)
        return turn

    async def evict(self, session_id: str, budget: int) -> int:
        """
        Drop the oldest turns once the cumulative size exceeds the budget.
        Returns the number of turns removed.
        """
        turns = await self.list_turns(session_id)
        evicted = select_evictions(list(reversed(turns)), budget)
        if not evicted:
            return 0
        # Sizes are non-negative, so the evicted turns are always the oldest ones.
        await self._delete_oldest(session_id, len(evicted))
        logger.info(
            "context: evicted %d of %d turns for session %s (budget=%d)",
            len(evicted),
            len(turns),
            session_id,
            budget,
        )
        return len(evicted)

    async def build_prompt(
        self,
        session_id: str,
        new_question: str,
        *,
        system_prompt: Optional[str] = None,
    ) -> List[PromptMessage]:
        messages: List[PromptMessage] = []
        if system_prompt:
            messages.append(PromptMessage(role="system", content=system_prompt))
        for turn in await self.list_turns(session_id):
            messages.append(PromptMessage(role="user", content=turn.question))
            messages.append(PromptMessage(role="assistant", content=turn.answer))
        messages.append(PromptMessage(role="user", content=new_question))
        return messages

    async def total_size(self, session_id: str) -> int:
        return sum(turn.size_bytes for turn in await self.list_turns(session_id))

    async def close(self) -> None:
        return None


class InMemoryConversationStore(ConversationStore):
    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock=clock)
        self._sessions: Dict[str, List[Turn]] = {}

    async def list_turns(self, session_id: str) -> List[Turn]:
        return list(self._sessions.get(session_id, []))

    async def _insert(self, turn: Turn) -> None:
        self._sessions.setdefault(turn.session_id, []).append(turn)

    async def _delete_oldest(self, session_id: str, count: int) -> None:
        turns = self._sessions.get(session_id)
        if turns is None:
            return
        del turns[:count]
        if not turns:
            self._sessions.pop(session_id, None)

    async def clear(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def session_ids(self) -> List[str]:
        return list(self._sessions)


__all__ = [
    "select_evictions",
    "ConversationStore",
    "InMemoryConversationStore",
]
