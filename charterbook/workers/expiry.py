"""
Background Expiry Worker
========================

Runs every ``EXPIRY_POLL_INTERVAL_SECONDS`` (default 5 s).

Concurrency safety
------------------
* **Redis distributed lock** ensures only one instance drains the
  deferred-task queue per cycle across multiple API processes.
* **Conditional UPDATE** on ``(status = quoted, quoted_at = scheduled)``
  makes each expiry idempotent, so a duplicate delivery is a no-op.

Algorithm per cycle
-------------------
1. Claim due tasks from ``deferred:due``.
2. Run each under ``asyncio.wait_for`` with the per-task timeout, in its
   own DB session.
3. On failure re-enqueue with exponential backoff, give up after
   ``EXPIRY_MAX_ATTEMPTS``.
4. Sweep QUOTED quotes whose payment window has lapsed (jobs that were
   lost or never scheduled).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from charterbook.config import settings
from charterbook.infrastructure.database import async_session_factory
from charterbook.infrastructure.locks import DistributedLock
from charterbook.infrastructure.redis_client import get_redis
from charterbook.infrastructure.repositories import QuoteRepository
from charterbook.infrastructure.task_queue import DeferredTask, DeferredTaskQueue
from charterbook.services.expiry import EXPIRY_TASK, expire_quote

logger = logging.getLogger(__name__)

_task: asyncio.Task | None = None
_stop_event: asyncio.Event | None = None


def _payment_window() -> timedelta:
    return timedelta(hours=settings.payment_window_hours)


# ── Public API ────────────────────────────────────────────────────────


async def start_expiry_loop() -> None:
    global _task, _stop_event
    _stop_event = asyncio.Event()
    _task = asyncio.create_task(_loop())
    logger.info(
        "Expiry worker started (interval=%ds)", settings.expiry_poll_interval_seconds
    )


async def stop_expiry_loop() -> None:
    if _stop_event:
        _stop_event.set()
    if _task:
        _task.cancel()
        try:
            await _task
        except asyncio.CancelledError:
            pass
    logger.info("Expiry worker stopped")


# ── Internals ─────────────────────────────────────────────────────────


async def _loop() -> None:
    """Periodic loop: run an expiry cycle then sleep."""
    assert _stop_event is not None
    while not _stop_event.is_set():
        try:
            await run_expiry_cycle()
        except Exception:
            logger.exception("Unhandled error in expiry cycle")
        # Wait for the interval or until stop is signalled
        try:
            await asyncio.wait_for(
                _stop_event.wait(), timeout=settings.expiry_poll_interval_seconds
            )
            break
        except asyncio.TimeoutError:
            pass  # next cycle


async def execute_task(task: DeferredTask, now: datetime) -> bool:
    """Run one deferred task body in a fresh session."""
    payload = task.payload
    if payload.get("type") != EXPIRY_TASK:
        logger.warning("Unknown deferred task %s (%s), dropping", task.key, payload)
        return False

    quoted_at = payload.get("quoted_at")
    async with async_session_factory() as session:
        return await expire_quote(
            session,
            payload["quote_id"],
            datetime.fromisoformat(quoted_at) if quoted_at else None,
            now,
            _payment_window(),
        )


async def drain_queue(queue: DeferredTaskQueue, now: datetime) -> int:
    """Execute due tasks; returns how many quotes were expired."""
    expired = 0
    for task in await queue.claim_due(now, settings.expiry_batch_size):
        try:
            if await asyncio.wait_for(
                execute_task(task, now), timeout=settings.expiry_task_timeout_seconds
            ):
                expired += 1
        except Exception:
            logger.exception("Deferred task %s failed", task.key)
            await queue.retry(
                task,
                now,
                max_attempts=settings.expiry_max_attempts,
                backoff_base_seconds=settings.expiry_backoff_base_seconds,
            )
            continue
        await queue.complete(task)
    return expired


async def sweep_lapsed_quotes(now: datetime) -> int:
    async with async_session_factory() as session:
        lapsed = await QuoteRepository(session).find_lapsed_quoted_ids(
            now, _payment_window(), settings.expiry_batch_size
        )
        expired = 0
        for quote_id in lapsed:
            if await expire_quote(session, quote_id, None, now, _payment_window()):
                expired += 1
    if expired:
        logger.info("Expiry sweep: %d lapsed quotes expired", expired)
    return expired


async def run_expiry_cycle() -> int:
    """Execute one expiry cycle.  Returns the number of quotes expired."""
    redis = await get_redis()
    lock = DistributedLock(redis, "expiry_worker", ttl_seconds=60)

    if not await lock.acquire():
        logger.debug("Lock held by another worker – skipping cycle")
        return 0

    expired = 0
    try:
        now = datetime.now(timezone.utc)
        expired += await drain_queue(DeferredTaskQueue(redis), now)
        expired += await sweep_lapsed_quotes(now)
        if expired:
            logger.info("Expiry cycle: %d quotes expired", expired)
    except Exception:
        logger.exception("Error in expiry cycle")
    finally:
        await lock.release()

    return expired
