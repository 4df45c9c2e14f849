"""FastAPI dependency injection helpers."""

from datetime import timedelta
from functools import partial

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.config import settings
from charterbook.infrastructure.database import async_session_factory
from charterbook.infrastructure.locks import DriverLock
from charterbook.infrastructure.redis_client import get_redis
from charterbook.infrastructure.task_queue import DeferredTaskQueue
from charterbook.services.expiry import ExpiryScheduler
from charterbook.services.quotes import QuoteStateMachine
from charterbook.services.trips import TripStatusService


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_quote_service(
    db: AsyncSession = Depends(get_db),
) -> QuoteStateMachine:
    """State machine wired with the Redis expiry queue and driver locks."""
    redis = await get_redis()
    return QuoteStateMachine(
        db,
        expiry_scheduler=ExpiryScheduler(
            DeferredTaskQueue(redis),
            window=timedelta(hours=settings.payment_window_hours),
        ),
        lock_factory=partial(DriverLock, redis),
    )


async def get_trip_service(
    db: AsyncSession = Depends(get_db),
) -> TripStatusService:
    return TripStatusService(db)
