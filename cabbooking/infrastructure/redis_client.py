"""
Redis async connection pool.

Redis holds only coordination state (the sweep lock) and short-lived
search snapshots; losing it never loses a booking or a payment.
"""

import redis.asyncio as aioredis

from cabbooking.config import settings

_pool = aioredis.ConnectionPool.from_url(
    settings.redis_url, decode_responses=True
)


async def get_redis() -> aioredis.Redis:
    """Return a client on the shared pool (one per request or worker cycle)."""
    return aioredis.Redis(connection_pool=_pool)


async def close_redis() -> None:
    await _pool.disconnect()
