"""
Processed-event tracking.

The chat platform retries deliveries it believes failed, so every inbound
event id is claimed exactly once before any work is done. `claim` is the
only call the webhook path uses; it must be atomic for a given backend
(single synchronous step in memory, SET NX in redis, unique insert in SQL).
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Optional, Protocol, runtime_checkable

from .logging_config import logger


@runtime_checkable
class EventDeduplicator(Protocol):
    async def has(self, event_id: str) -> bool:
        ...

    async def mark(self, event_id: str) -> None:
        ...

    async def claim(self, event_id: str) -> bool:
        """Mark the id as processed; return False if it already was."""
        ...

    async def record_content(self, event_id: str, content: str) -> None:
        """Attach the handled message text to an already claimed event."""
        ...


class InMemoryEventDeduplicator:
    """
    Process-local processed-event set.

    With max_events=0 the set grows without bound. A positive bound forgets
    the oldest ids first, which re-opens a window for very late retries of
    those ids.
    """

    def __init__(self, max_events: int = 0) -> None:
        self._max_events = max_events
        self._events: "OrderedDict[str, Optional[str]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._events)

    async def has(self, event_id: str) -> bool:
        return event_id in self._events

    async def mark(self, event_id: str) -> None:
        self._insert(event_id)

    async def claim(self, event_id: str) -> bool:
        # No await between check and insert: atomic on the event loop.
        if event_id in self._events:
            return False
        self._insert(event_id)
        return True

    async def record_content(self, event_id: str, content: str) -> None:
        if event_id in self._events:
            self._events[event_id] = content

    def content_of(self, event_id: str) -> Optional[str]:
        return self._events.get(event_id)

    def _insert(self, event_id: str) -> None:
        self._events.setdefault(event_id, None)
        if self._max_events and len(self._events) > self._max_events:
            dropped, _ = self._events.popitem(last=False)
            logger.debug("dedup: forgetting oldest event id %s", dropped)


__all__ = ["EventDeduplicator", "InMemoryEventDeduplicator"]
