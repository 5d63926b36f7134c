"""
Redis-based distributed lock.

Guards the auto-assign job so only one process runs a cycle at a time.
The lock is a convenience, not a correctness mechanism: two concurrent
cycles would still be safe because every assignment is committed through
the transactional protocol, they would just waste work racing each other.

Acquire is ``SET key token NX EX ttl``; release and extend are Lua scripts
that only act while the key still holds our token.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

_EXTEND_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("expire", KEYS[1], ARGV[2])
end
return 0
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
        """Try once; True if we now hold the lock."""
        return bool(await self.redis.set(self.key, self.token, nx=True, ex=self.ttl))

    async def extend(self) -> bool:
        """Reset the TTL if we still hold the lock."""
        return bool(
            await self.redis.eval(_EXTEND_LUA, 1, self.key, self.token, self.ttl)
        )

    async def release(self) -> bool:
        return bool(await self.redis.eval(_RELEASE_LUA, 1, self.key, self.token))

    async def __aenter__(self) -> "DistributedLock":
        if not await self.acquire():
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.release()
