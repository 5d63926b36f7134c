"""
Shared Redis connection pool.

One pool per process backs the auto-assign lock, the notification
publisher and the token look-ups of the identity adapter.
"""

import redis.asyncio as aioredis

from ridedispatch.config import settings

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url, decode_responses=True
)


async def get_redis() -> aioredis.Redis:
    """Client on the shared pool; cheap, create one per use."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    """Drop pooled connections (application shutdown)."""
    await _pool.disconnect()
