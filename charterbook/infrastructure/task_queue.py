"""
Redis-backed deferred task queue.

Layout
------
* ``deferred:due``          -- sorted set, member = task key, score = run-at
                               (epoch seconds)
* ``deferred:task:<key>``   -- hash with the JSON payload and the number
                               of attempts already made

Scheduling an existing key replaces its run-at and payload, so a key is
unique in the queue.  ``claim_due`` removes a member with ``ZREM`` before
handing it out; only the worker whose ``ZREM`` returned 1 owns the task.
A task that was claimed but never completed is lost from the due set, so
consumers must also reconcile from the database (at-least-once delivery,
idempotent handlers).
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeferredTask:
    key: str
    payload: dict = field(default_factory=dict)
    attempts: int = 0


def backoff_delay(attempt: int, base_seconds: float) -> timedelta:
    """Exponential backoff: ``base * 2 ** (attempt - 1)`` for attempt >= 1."""
    return timedelta(seconds=base_seconds * 2 ** max(attempt - 1, 0))


class DeferredTaskQueue:
    def __init__(self, client: aioredis.Redis, namespace: str = "deferred"):
        self.redis = client
        self.due_key = f"{namespace}:due"
        self.namespace = namespace

    def _task_key(self, key: str) -> str:
        return f"{self.namespace}:task:{key}"

    async def schedule(
        self, key: str, payload: dict, run_at: datetime, attempts: int = 0
    ) -> None:
        await self.redis.hset(
            self._task_key(key),
            mapping={"payload": json.dumps(payload), "attempts": attempts},
        )
        await self.redis.zadd(self.due_key, {key: run_at.timestamp()})
        logger.debug("Scheduled %s at %s (attempts=%d)", key, run_at, attempts)

    async def claim_due(self, now: datetime, limit: int = 50) -> list[DeferredTask]:
        members = await self.redis.zrangebyscore(
            self.due_key, "-inf", now.timestamp(), start=0, num=limit
        )
        claimed: list[DeferredTask] = []
        for key in members:
            if not await self.redis.zrem(self.due_key, key):
                continue  # another worker won it
            data = await self.redis.hgetall(self._task_key(key))
            if not data:
                logger.warning("Deferred task %s has no payload, dropping", key)
                continue
            claimed.append(
                DeferredTask(
                    key=key,
                    payload=json.loads(data.get("payload") or "{}"),
                    attempts=int(data.get("attempts") or 0),
                )
            )
        return claimed

    async def complete(self, task: DeferredTask) -> None:
        # keep the payload if the key was re-scheduled while running
        if await self.redis.zscore(self.due_key, task.key) is None:
            await self.redis.delete(self._task_key(task.key))

    async def retry(
        self,
        task: DeferredTask,
        now: datetime,
        max_attempts: int = 3,
        backoff_base_seconds: float = 2.0,
    ) -> bool:
        """
        Re-enqueue a failed task with exponential backoff.

        Returns False (and drops the task) once ``max_attempts`` executions
        have failed.
        """
        attempts = task.attempts + 1
        if attempts >= max_attempts:
            logger.error(
                "Deferred task %s failed %d times, giving up", task.key, attempts
            )
            await self.redis.delete(self._task_key(task.key))
            return False

        delay = backoff_delay(attempts, backoff_base_seconds)
        logger.warning(
            "Deferred task %s failed (attempt %d/%d), retrying in %.1fs",
            task.key,
            attempts,
            max_attempts,
            delay.total_seconds(),
        )
        await self.schedule(task.key, task.payload, now + delay, attempts=attempts)
        return True
