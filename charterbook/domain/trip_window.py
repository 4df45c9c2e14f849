"""
Trip window & temporal state derivation
=======================================

A trip's lifecycle phase is *derived* from its itinerary timestamps and
the current time, never stored.

Window
------
  trip_start_at = min(arrival_time)                    over all legs
  trip_end_at   = max(departure_time if staying else arrival_time)

State rules (first match wins)
------------------------------
  1. completed_at set                      -> PAST
  2. started_at set, completed_at unset    -> CURRENT
  3. trip_start_at > now                   -> UPCOMING
  4. trip_end_at < now (nobody closed it)  -> PAST  ("legacy expired")
  5. otherwise                             -> CURRENT

Complexity: O(n) in the number of stops.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from .entities import ItineraryStop
from .enums import StopType, TripLeg, TripState
from .errors import NoItinerary

CHAT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class TripWindow:
    trip_start_at: datetime
    trip_end_at: datetime


@dataclass(frozen=True)
class TripClock:
    """Inputs of the state rules, bundled so each rule is a one-liner."""

    window: TripWindow
    now: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


TripStateRule = tuple[Callable[[TripClock], bool], TripState]

TRIP_STATE_RULES: list[TripStateRule] = [
    (lambda c: c.completed_at is not None, TripState.PAST),
    (lambda c: c.started_at is not None, TripState.CURRENT),
    (lambda c: c.window.trip_start_at > c.now, TripState.UPCOMING),
    (lambda c: c.window.trip_end_at < c.now, TripState.PAST),
    (lambda c: True, TripState.CURRENT),
]


def derive_trip_window(stops: Sequence[ItineraryStop]) -> TripWindow:
    """Raise ``NoItinerary`` for an empty stop list (window unknown)."""
    if not stops:
        raise NoItinerary()
    return TripWindow(
        trip_start_at=min(s.arrival_time for s in stops),
        trip_end_at=max(s.end_time for s in stops),
    )


def earliest_trip_start(stops: Sequence[ItineraryStop]) -> Optional[datetime]:
    if not stops:
        return None
    return min(s.arrival_time for s in stops)


def derive_trip_state(
    window: TripWindow,
    now: datetime,
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
) -> TripState:
    clock = TripClock(window, now, started_at, completed_at)
    for predicate, outcome in TRIP_STATE_RULES:
        if predicate(clock):
            return outcome
    return TripState.CURRENT  # unreachable: last rule always matches


def is_within_24_hours_of_start(
    trip_start_at: datetime, now: datetime, window: timedelta = CHAT_WINDOW
) -> bool:
    """True iff ``0 <= trip_start_at - now <= window``."""
    lead = trip_start_at - now
    return timedelta(0) <= lead <= window


def chat_enabled(
    window: TripWindow,
    state: TripState,
    now: datetime,
    chat_window: timedelta = CHAT_WINDOW,
) -> bool:
    # a PAST trip blocks messaging whatever the start-time check says
    if state == TripState.PAST:
        return False
    return is_within_24_hours_of_start(window.trip_start_at, now, chat_window)


def derive_privacy(
    trip_start_at: datetime, now: datetime, window: timedelta = CHAT_WINDOW
) -> str:
    """Riders' full details are shared from 24 h before departure onwards."""
    return "FULL" if now >= trip_start_at - window else "NAME_ONLY"


def group_by_leg(
    stops: Sequence[ItineraryStop],
) -> dict[TripLeg, list[ItineraryStop]]:
    """Group stops by trip leg, each list sorted by ``stop_order``."""
    grouped: dict[TripLeg, list[ItineraryStop]] = {}
    for stop in stops:
        grouped.setdefault(stop.trip_leg, []).append(stop)
    for leg_stops in grouped.values():
        leg_stops.sort(key=lambda s: s.stop_order)
    return grouped


def leg_window(leg_stops: Sequence[ItineraryStop]) -> TripWindow:
    """
    Window of a single leg: first pickup to last drop-off, falling back
    to the first / last stop when the roles are missing.
    """
    if not leg_stops:
        raise NoItinerary("Trip leg has no stops")
    ordered = sorted(leg_stops, key=lambda s: s.stop_order)
    pickups = [s for s in ordered if s.stop_type == StopType.PICKUP]
    dropoffs = [s for s in ordered if s.stop_type == StopType.DROPOFF]
    first = pickups[0] if pickups else ordered[0]
    last = dropoffs[-1] if dropoffs else ordered[-1]
    return TripWindow(trip_start_at=first.arrival_time, trip_end_at=last.end_time)
