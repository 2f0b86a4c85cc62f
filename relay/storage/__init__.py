"""
Storage backends for conversation turns, processed events and session
aliases. `build_backends` picks one family according to STORE_BACKEND.
"""

from __future__ import annotations

from dataclasses import dataclass

from relay.context_store import ConversationStore, InMemoryConversationStore
from relay.dedup import EventDeduplicator, InMemoryEventDeduplicator
from relay.logging_config import logger
from relay.session_resolver import InMemorySessionAliasStore, SessionAliasStore
from relay.settings import Settings


@dataclass
class StorageBackends:
    store: ConversationStore
    deduplicator: EventDeduplicator
    aliases: SessionAliasStore


def build_backends(settings: Settings) -> StorageBackends:
    backend = settings.store_backend
    logger.info("storage: using %s backend", backend)

    if backend == "memory":
        return StorageBackends(
            store=InMemoryConversationStore(),
            deduplicator=InMemoryEventDeduplicator(max_events=settings.dedup_max_events),
            aliases=InMemorySessionAliasStore(),
        )

    if backend == "redis":
        from relay.redis_client import get_redis_client
        from relay.storage.redis_service import (
            RedisConversationStore,
            RedisEventDeduplicator,
            RedisSessionAliasStore,
        )

        redis = get_redis_client()
        return StorageBackends(
            store=RedisConversationStore(redis),
            deduplicator=RedisEventDeduplicator(redis, ttl_seconds=settings.event_ttl_seconds),
            aliases=RedisSessionAliasStore(redis),
        )

    if backend == "sql":
        from relay.db import build_engine, build_session_factory
        from relay.storage.sql_store import (
            SqlConversationStore,
            SqlEventDeduplicator,
            SqlSessionAliasStore,
        )

        factory = build_session_factory(build_engine(settings.database_url))
        return StorageBackends(
            store=SqlConversationStore(factory),
            deduplicator=SqlEventDeduplicator(factory),
            aliases=SqlSessionAliasStore(factory),
        )

    raise ValueError(f"Unknown STORE_BACKEND '{backend}'")


__all__ = ["StorageBackends", "build_backends"]
