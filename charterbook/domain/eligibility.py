"""
Driver assignment eligibility.

Rules (in order)
----------------
1. Hard blockers: status in {SUSPENDED, BLOCKED, OFFLINE}.
2. Not onboarded.
3. Time-scoped: a trip starting within ``soon_start_threshold`` needs a
   driver who is exactly AVAILABLE (ON_TRIP is only tolerated for trips
   further out).
4. Otherwise eligible.

Date-range conflicts are *not* checked here; that is the allocation
detector's job.  The guard never raises: ineligibility is a normal
outcome.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from .entities import Driver
from .enums import HARD_BLOCKER_DRIVER_STATUSES, DriverStatus

SOON_START_THRESHOLD = timedelta(hours=24)


@dataclass(frozen=True)
class EligibilityResult:
    can_assign: bool
    reason: Optional[str] = None


def can_assign_driver(
    driver: Driver,
    trip_start_at: Optional[datetime],
    now: datetime,
    soon_start_threshold: timedelta = SOON_START_THRESHOLD,
) -> EligibilityResult:
    if driver.status in HARD_BLOCKER_DRIVER_STATUSES:
        return EligibilityResult(
            False, f"Driver is {driver.status.value} and cannot be assigned"
        )

    if not driver.is_onboarded:
        return EligibilityResult(False, "Driver has not completed onboarding")

    if trip_start_at is not None:
        if trip_start_at - now <= soon_start_threshold and driver.status != DriverStatus.AVAILABLE:
            return EligibilityResult(
                False,
                f"Driver is {driver.status.value} and cannot be assigned "
                "to a trip starting soon",
            )

    return EligibilityResult(True)


def fair_assignment_order(drivers: Iterable[Driver]) -> list[Driver]:
    """Least recently assigned first; never-assigned drivers lead."""
    return sorted(
        drivers,
        key=lambda d: (
            d.last_assigned_at is not None,
            d.last_assigned_at or datetime.min,
            d.id,
        ),
    )
