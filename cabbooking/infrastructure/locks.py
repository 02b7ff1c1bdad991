"""
Redis-based distributed lock.

Held by the payment sweep worker so that only one API process expires
stale bookings per cycle.  Correctness does not depend on the lock (the
conditional updates already pick exactly one winner per row); it only keeps
several processes from scanning the same rows at once.

Acquire is ``SET key token NX EX ttl``; release runs a Lua script so a
process never deletes a lock that expired and was taken by someone else.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


class DistributedLock:
    def __init__(self, client: aioredis.Redis, name: str, ttl_seconds: int = 30):
        self.redis = client
        self.key = f"lock:{name}"
        self.ttl = ttl_seconds
        self.token = uuid.uuid4().hex

    async def acquire(self) -> bool:
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> bool:
        """True when this holder still owned the lock and removed it."""
        return bool(await self.redis.eval(_RELEASE_SCRIPT, 1, self.key, self.token))

    async def __aenter__(self):
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *exc_info):
        await self.release()
