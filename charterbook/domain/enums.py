"""Domain enumerations and state-transition rules."""

import enum


class QuoteStatus(str, enum.Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    NEGOTIATING = "negotiating"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    QUOTED = "quoted"
    PAID = "paid"
    EXPIRED = "expired"


# State machine: maps current status -> set of valid next statuses.
# QUOTED -> QUOTED is a driver re-assignment / re-price.
QUOTE_TRANSITIONS: dict[QuoteStatus, set[QuoteStatus]] = {
    QuoteStatus.DRAFT: {QuoteStatus.SUBMITTED},
    QuoteStatus.SUBMITTED: {
        QuoteStatus.SUBMITTED,
        QuoteStatus.NEGOTIATING,
        QuoteStatus.QUOTED,
        QuoteStatus.REJECTED,
    },
    QuoteStatus.NEGOTIATING: {QuoteStatus.ACCEPTED, QuoteStatus.REJECTED},
    QuoteStatus.ACCEPTED: {QuoteStatus.QUOTED},
    QuoteStatus.QUOTED: {QuoteStatus.QUOTED, QuoteStatus.PAID, QuoteStatus.EXPIRED},
    QuoteStatus.PAID: set(),
    QuoteStatus.REJECTED: set(),
    QuoteStatus.EXPIRED: set(),
}

EDITABLE_QUOTE_STATUSES = frozenset({QuoteStatus.DRAFT, QuoteStatus.SUBMITTED})
TERMINAL_QUOTE_STATUSES = frozenset(
    {QuoteStatus.PAID, QuoteStatus.REJECTED, QuoteStatus.EXPIRED}
)

# Quote statuses that hold a vehicle / driver against other bookings.
BLOCKING_QUOTE_STATUSES = frozenset(
    {
        QuoteStatus.PAID,
        QuoteStatus.ACCEPTED,
        QuoteStatus.QUOTED,
        QuoteStatus.NEGOTIATING,
    }
)


class ReservationStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    MODIFIED = "modified"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


BLOCKING_RESERVATION_STATUSES = frozenset(
    {ReservationStatus.CONFIRMED, ReservationStatus.MODIFIED}
)


class DriverStatus(str, enum.Enum):
    AVAILABLE = "available"
    ON_TRIP = "ontrip"
    OFFLINE = "offline"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


# Drivers in these statuses can never be assigned.
HARD_BLOCKER_DRIVER_STATUSES = frozenset(
    {DriverStatus.SUSPENDED, DriverStatus.BLOCKED, DriverStatus.OFFLINE}
)


class TripType(str, enum.Enum):
    ONE_WAY = "one_way"
    TWO_WAY = "two_way"


class TripLeg(str, enum.Enum):
    OUTBOUND = "outbound"
    RETURN = "return"


class StopType(str, enum.Enum):
    PICKUP = "pickup"
    STOP = "stop"
    DROPOFF = "dropoff"


class TripState(str, enum.Enum):
    UPCOMING = "UPCOMING"
    CURRENT = "CURRENT"
    PAST = "PAST"
