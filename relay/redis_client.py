"""
Redis helper utilities.

Central place to construct the shared async Redis client and to map
driver errors to StoreUnavailable so request handlers fail visibly.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import StoreUnavailable
from .settings import settings

_redis_client: Optional[Redis] = None


def get_redis_client() -> Redis:
    """
    Return a lazily-created global Redis client.

    Sync so it can be used both from the app factory and from FastAPI
    dependencies; the client itself is async.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


@contextmanager
def redis_errors(operation: str) -> Iterator[None]:
    """
    Re-raise redis driver errors as StoreUnavailable.
    """
    try:
        yield
    except RedisError as exc:
        raise StoreUnavailable("redis", f"{operation} failed: {exc}") from exc


__all__ = ["get_redis_client", "close_redis_client", "redis_errors"]
