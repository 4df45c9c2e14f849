"""
Allocation date ranges.

A range spans the earliest to the latest arrival time of an itinerary.
Unlike the displayed trip window, a staying driver's departure does not
extend it.

Two ranges overlap iff ``start_a <= end_b and start_b <= end_a``.  The
boundary touch counts as a conflict: a trip ending exactly when another
starts leaves no turnaround time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .entities import ItineraryStop
from .errors import NoItinerary


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is after end {self.end}")

    def overlaps(self, other: "DateRange") -> bool:
        return ranges_overlap(self, other)


def ranges_overlap(a: DateRange, b: DateRange) -> bool:
    return a.start <= b.end and b.start <= a.end


def date_range_from_stops(stops: Sequence[ItineraryStop]) -> DateRange:
    """Raises ``NoItinerary`` when there is nothing to derive from."""
    if not stops:
        raise NoItinerary()
    arrivals = [s.arrival_time for s in stops]
    return DateRange(min(arrivals), max(arrivals))


@dataclass(frozen=True)
class AllocationConflicts:
    driver_ids: frozenset[str] = field(default_factory=frozenset)
    vehicle_ids: frozenset[str] = field(default_factory=frozenset)

    def __or__(self, other: "AllocationConflicts") -> "AllocationConflicts":
        return AllocationConflicts(
            self.driver_ids | other.driver_ids,
            self.vehicle_ids | other.vehicle_ids,
        )
