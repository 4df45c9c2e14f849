"""
Payment-window expiry.

``ExpiryScheduler.schedule_expiry`` arms a one-shot deferred task keyed
``expiry:<quote_id>`` that fires when ``quoted_at + window`` passes.
Re-quoting re-schedules the same key with the new ``quoted_at``.

``expire_quote`` is the task body.  It is check-then-transition: anything
but a still-QUOTED quote carrying the scheduled ``quoted_at`` is a no-op,
so duplicate, stale or late deliveries are harmless.  Only the invocation
that made the transition emits ``quote.expired``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.domain.entities import PAYMENT_WINDOW, is_payment_window_expired
from charterbook.domain.enums import QuoteStatus
from charterbook.infrastructure.repositories import QuoteRepository
from charterbook.infrastructure.task_queue import DeferredTaskQueue
from charterbook.services.side_effects import (
    EventEmitter,
    LoggingEventEmitter,
    PostCommitAction,
    run_post_commit,
)

logger = logging.getLogger(__name__)

EXPIRY_TASK = "quote_expiry"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def expiry_key(quote_id: str) -> str:
    return f"expiry:{quote_id}"


class ExpiryScheduler:
    def __init__(
        self,
        queue: DeferredTaskQueue,
        window: timedelta = PAYMENT_WINDOW,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.queue = queue
        self.window = window
        self.clock = clock

    async def schedule_expiry(self, quote_id: str, quoted_at: datetime) -> bool:
        """
        Returns False when the window is already over; the caller then
        reconciles synchronously (see ``expire_quote``).
        """
        run_at = quoted_at + self.window
        delay = run_at - self.clock()
        if delay <= timedelta(0):
            logger.info("Quote %s payment window already over, not scheduling", quote_id)
            return False

        await self.queue.schedule(
            expiry_key(quote_id),
            {
                "type": EXPIRY_TASK,
                "quote_id": quote_id,
                "quoted_at": quoted_at.isoformat(),
            },
            run_at,
        )
        logger.info(
            "Expiry for quote %s armed in %.0fs", quote_id, delay.total_seconds()
        )
        return True


async def expire_quote(
    session: AsyncSession,
    quote_id: str,
    scheduled_quoted_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    window: timedelta = PAYMENT_WINDOW,
    events: Optional[EventEmitter] = None,
) -> bool:
    """
    Move a lapsed QUOTED quote to EXPIRED.  Returns True only for the
    invocation that actually made the transition.
    """
    now = now or _utcnow()
    events = events or LoggingEventEmitter()
    repo = QuoteRepository(session)
    quote = await repo.get_by_id(quote_id)

    if quote is None:
        logger.info("Expiry for quote %s: quote no longer exists", quote_id)
        return False
    if quote.status != QuoteStatus.QUOTED:
        logger.info(
            "Expiry for quote %s: status is %s, nothing to do",
            quote_id,
            quote.status.value,
        )
        return False
    if scheduled_quoted_at is not None and quote.quoted_at != scheduled_quoted_at:
        logger.info("Expiry for quote %s: re-quoted since scheduling, stale task", quote_id)
        return False
    if not is_payment_window_expired(quote, now, window):
        logger.info("Expiry for quote %s: window still open", quote_id)
        return False

    expired = await repo.expire_if_quoted(quote_id, quote.quoted_at)
    await session.commit()
    if not expired:
        return False

    logger.info("Quote %s: quoted -> expired", quote_id)
    payload = {
        "quote_id": quote_id,
        "status": QuoteStatus.EXPIRED.value,
        "released_driver_id": quote.assigned_driver_id,
    }
    await run_post_commit(
        [PostCommitAction("quote.expired", lambda: events.emit("quote.expired", payload))]
    )
    return True
