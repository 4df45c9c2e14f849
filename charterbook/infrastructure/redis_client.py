"""
Shared Redis connection pool.

Backs the deferred expiry queue, the per-driver assignment lock and the
worker lock.  The pool is opened lazily by the first client and closed
on application shutdown.
"""

import logging

import redis.asyncio as aioredis

from charterbook.config import settings

logger = logging.getLogger(__name__)

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url,
    decode_responses=True,
    max_connections=settings.redis_max_connections,
)


async def get_redis() -> aioredis.Redis:
    """Return a Redis client backed by the shared connection pool."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    await _pool.disconnect()
    logger.info("Redis pool closed")
