"""Trip status read path: derived window, phase, chat gate, privacy level."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.config import settings
from charterbook.domain.enums import TripState
from charterbook.domain.errors import ChatWindowClosed, ReservationNotFound
from charterbook.domain.trip_window import (
    TripWindow,
    chat_enabled,
    derive_privacy,
    derive_trip_state,
    derive_trip_window,
    is_within_24_hours_of_start,
)
from charterbook.infrastructure.repositories import ReservationRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TripStatus:
    reservation_id: str
    window: TripWindow
    state: TripState
    within_24_hours_of_start: bool
    chat_enabled: bool
    privacy: str


class TripStatusService:
    def __init__(
        self,
        session: AsyncSession,
        clock: Callable[[], datetime] = _utcnow,
        chat_window: Optional[timedelta] = None,
    ):
        self.reservations = ReservationRepository(session)
        self.clock = clock
        self.chat_window = chat_window or timedelta(hours=settings.chat_window_hours)

    async def trip_status(self, reservation_id: str) -> TripStatus:
        reservation = await self.reservations.get_by_id(reservation_id)
        if reservation is None:
            raise ReservationNotFound(reservation_id)

        now = self.clock()
        window = derive_trip_window(reservation.itinerary)
        state = derive_trip_state(
            window, now, reservation.started_at, reservation.completed_at
        )
        return TripStatus(
            reservation_id=reservation.id,
            window=window,
            state=state,
            within_24_hours_of_start=is_within_24_hours_of_start(
                window.trip_start_at, now, self.chat_window
            ),
            chat_enabled=chat_enabled(window, state, now, self.chat_window),
            privacy=derive_privacy(window.trip_start_at, now, self.chat_window),
        )

    async def ensure_messaging_allowed(self, reservation_id: str) -> TripStatus:
        status = await self.trip_status(reservation_id)
        if not status.chat_enabled:
            logger.info(
                "Chat blocked for reservation %s (state=%s)",
                reservation_id,
                status.state.value,
            )
            raise ChatWindowClosed(
                "Trip chat is only available in the 24 hours before departure"
            )
        return status
