"""
Allocation conflict detection.

Answers "which drivers / vehicles are already committed between
``start`` and ``end``?" by unioning the quote-side and reservation-side
booked sets.  Hard conflicts reject an assignment; soft conflicts (fresh
draft holds) only hide resources from other shoppers.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.config import settings
from charterbook.domain.allocation import AllocationConflicts, DateRange
from charterbook.domain.errors import AllocationConflict
from charterbook.infrastructure.repositories import (
    QuoteRepository,
    ReservationRepository,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllocationConflictDetector:
    def __init__(
        self,
        session: AsyncSession,
        payment_window: Optional[timedelta] = None,
        draft_hold: Optional[timedelta] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.quotes = QuoteRepository(session)
        self.reservations = ReservationRepository(session)
        self.payment_window = payment_window or timedelta(
            hours=settings.payment_window_hours
        )
        self.draft_hold = draft_hold or timedelta(minutes=settings.draft_hold_minutes)
        self.clock = clock

    async def booked_driver_ids(
        self, date_range: DateRange, exclude_id: Optional[str] = None
    ) -> set[str]:
        now = self.clock()
        from_quotes = await self.quotes.find_booked_driver_ids_in_date_range(
            date_range.start, date_range.end, exclude_id, now, self.payment_window
        )
        from_reservations = await self.reservations.find_booked_driver_ids_in_date_range(
            date_range.start, date_range.end, exclude_id
        )
        return from_quotes | from_reservations

    async def booked_vehicle_ids(
        self, date_range: DateRange, exclude_id: Optional[str] = None
    ) -> set[str]:
        now = self.clock()
        from_quotes = await self.quotes.find_booked_vehicle_ids_in_date_range(
            date_range.start, date_range.end, exclude_id, now, self.payment_window
        )
        from_reservations = await self.reservations.find_booked_vehicle_ids_in_date_range(
            date_range.start, date_range.end, exclude_id
        )
        return from_quotes | from_reservations

    async def soft_holds(
        self, date_range: DateRange, exclude_id: Optional[str] = None
    ) -> AllocationConflicts:
        now = self.clock()
        drivers = await self.quotes.find_reserved_driver_ids_in_date_range(
            date_range.start, date_range.end, exclude_id, now, self.draft_hold
        )
        vehicles = await self.quotes.find_reserved_vehicle_ids_in_date_range(
            date_range.start, date_range.end, exclude_id, now, self.draft_hold
        )
        return AllocationConflicts(frozenset(drivers), frozenset(vehicles))

    async def find_conflicts(
        self,
        date_range: DateRange,
        exclude_id: Optional[str] = None,
        include_soft: bool = False,
    ) -> AllocationConflicts:
        hard = AllocationConflicts(
            frozenset(await self.booked_driver_ids(date_range, exclude_id)),
            frozenset(await self.booked_vehicle_ids(date_range, exclude_id)),
        )
        if not include_soft:
            return hard
        return hard | await self.soft_holds(date_range, exclude_id)

    async def ensure_driver_free(
        self, driver_id: str, date_range: DateRange, exclude_id: Optional[str] = None
    ) -> None:
        if driver_id in await self.booked_driver_ids(date_range, exclude_id):
            logger.info(
                "Driver %s already booked between %s and %s",
                driver_id,
                date_range.start,
                date_range.end,
            )
            raise AllocationConflict(
                "driver",
                [driver_id],
                "Driver is already assigned to another trip in the selected dates",
            )

    async def ensure_vehicles_free(
        self,
        vehicle_ids: Iterable[str],
        date_range: DateRange,
        exclude_id: Optional[str] = None,
    ) -> None:
        taken = set(vehicle_ids) & await self.booked_vehicle_ids(date_range, exclude_id)
        if taken:
            raise AllocationConflict("vehicle", taken)

    async def available_vehicle_ids(
        self,
        candidate_ids: Iterable[str],
        date_range: DateRange,
        exclude_id: Optional[str] = None,
    ) -> list[str]:
        """Shopping view: hides hard bookings *and* fresh draft holds."""
        conflicts = await self.find_conflicts(date_range, exclude_id, include_soft=True)
        return [v for v in candidate_ids if v not in conflicts.vehicle_ids]
