"""
Redis-backed conversation store, event deduplicator and session aliases.

Key patterns:
- relay:session:{session_id}:turns   list of JSON turns, oldest at the head
- relay:event:{event_id}             processed marker / handled text (SET NX)
- relay:alias:{session_key}          upstream session id bound to a key
"""

from __future__ import annotations

import time
from typing import Callable, List, Optional

from pydantic import ValidationError
from redis.asyncio import Redis

from relay.context_store import ConversationStore
from relay.logging_config import logger
from relay.models import Turn
from relay.redis_client import redis_errors

TURNS_KEY_TEMPLATE = "relay:session:{session_id}:turns"
EVENT_KEY_TEMPLATE = "relay:event:{event_id}"
ALIAS_KEY_TEMPLATE = "relay:alias:{session_key}"


class RedisConversationStore(ConversationStore):
    backend_name = "redis"

    def __init__(self, redis: Redis, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(clock=clock)
        self._redis = redis

    async def list_turns(self, session_id: str) -> List[Turn]:
        key = TURNS_KEY_TEMPLATE.format(session_id=session_id)
        with redis_errors("lrange"):
            raw_items = await self._redis.lrange(key, 0, -1)
        turns: List[Turn] = []
        for raw in raw_items:
            try:
                turns.append(Turn.model_validate_json(raw))
            except ValidationError:
                logger.warning("redis: skipping malformed turn in %s", key)
        return turns

    async def _insert(self, turn: Turn) -> None:
        key = TURNS_KEY_TEMPLATE.format(session_id=turn.session_id)
        with redis_errors("rpush"):
            await self._redis.rpush(key, turn.model_dump_json())

    async def _delete_oldest(self, session_id: str, count: int) -> None:
        # Appends land at the tail, so trimming the head is safe under races.
        key = TURNS_KEY_TEMPLATE.format(session_id=session_id)
        with redis_errors("ltrim"):
            await self._redis.ltrim(key, count, -1)

    async def clear(self, session_id: str) -> None:
        key = TURNS_KEY_TEMPLATE.format(session_id=session_id)
        with redis_errors("delete"):
            await self._redis.delete(key)


class RedisEventDeduplicator:
    def __init__(self, redis: Redis, *, ttl_seconds: Optional[int] = None) -> None:
        self._redis = redis
        self._ttl = ttl_seconds

    async def has(self, event_id: str) -> bool:
        key = EVENT_KEY_TEMPLATE.format(event_id=event_id)
        with redis_errors("exists"):
            return bool(await self._redis.exists(key))

    async def mark(self, event_id: str) -> None:
        await self.claim(event_id)

    async def claim(self, event_id: str) -> bool:
        key = EVENT_KEY_TEMPLATE.format(event_id=event_id)
        with redis_errors("set nx"):
            created = await self._redis.set(key, "", nx=True, ex=self._ttl)
        return bool(created)

    async def record_content(self, event_id: str, content: str) -> None:
        key = EVENT_KEY_TEMPLATE.format(event_id=event_id)
        with redis_errors("set xx"):
            await self._redis.set(key, content, xx=True, keepttl=True)


class RedisSessionAliasStore:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def get_alias(self, session_key: str) -> Optional[str]:
        with redis_errors("get"):
            value = await self._redis.get(ALIAS_KEY_TEMPLATE.format(session_key=session_key))
        return value or None

    async def set_alias(self, session_key: str, session_id: str) -> None:
        with redis_errors("set"):
            await self._redis.set(ALIAS_KEY_TEMPLATE.format(session_key=session_key), session_id)

    async def delete_alias(self, session_key: str) -> None:
        with redis_errors("delete"):
            await self._redis.delete(ALIAS_KEY_TEMPLATE.format(session_key=session_key))


__all__ = [
    "TURNS_KEY_TEMPLATE",
    "EVENT_KEY_TEMPLATE",
    "ALIAS_KEY_TEMPLATE",
    "RedisConversationStore",
    "RedisEventDeduplicator",
    "RedisSessionAliasStore",
]
