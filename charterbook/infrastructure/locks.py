"""
Redis-based distributed lock.

Used in two places:

* the expiry worker, so only one instance drains the deferred-task queue
  per cycle;
* driver assignment, serialising concurrent attempts to commit the same
  driver (``assign:driver:<id>``).

Implementation uses SET NX EX for acquire and a Lua script for
atomic check-and-delete on release.
"""

from __future__ import annotations

import uuid

import redis.asyncio as aioredis

from charterbook.domain.errors import AllocationConflict

_RELEASE_LUA = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockNotAcquired(RuntimeError):
    pass


class DistributedLock:
    def __init__(
        self, client: aioredis.Redis, key: str, ttl_seconds: int = 30
    ):
        self.redis = client
        self.key = f"lock:{key}"
        self.ttl = ttl_seconds
        self.token = str(uuid.uuid4())

    async def acquire(self) -> bool:
        """Try to acquire. Returns True on success."""
        return bool(
            await self.redis.set(self.key, self.token, nx=True, ex=self.ttl)
        )

    async def release(self) -> None:
        """Release only if we still own the lock (atomic via Lua)."""
        await self.redis.eval(_RELEASE_LUA, 1, self.key, self.token)

    # context-manager support
    async def __aenter__(self):
        acquired = await self.acquire()
        if not acquired:
            raise LockNotAcquired(f"Could not acquire lock: {self.key}")
        return self

    async def __aexit__(self, *args):
        await self.release()


class DriverLock(DistributedLock):
    """Per-driver assignment lock; contention surfaces as a driver conflict."""

    def __init__(self, client: aioredis.Redis, driver_id: str, ttl_seconds: int = 15):
        super().__init__(client, f"assign:driver:{driver_id}", ttl_seconds)
        self.driver_id = driver_id

    async def __aenter__(self):
        if not await self.acquire():
            raise AllocationConflict(
                "driver",
                [self.driver_id],
                "Driver is being assigned to another quote, try again",
            )
        return self
