"""
Domain entities.

Patterns used
-------------
- **Immutable records**: every entity is a frozen dataclass; updates go
  through ``dataclasses.replace`` and persistence, never mutation.
- **Free predicates**: status checks are plain functions over the enums
  (``is_editable``, ``can_transition``, ``is_payment_window_expired``...)
  so the state machine can be tested without a database.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from .enums import (
    EDITABLE_QUOTE_STATUSES,
    QUOTE_TRANSITIONS,
    TERMINAL_QUOTE_STATUSES,
    DriverStatus,
    QuoteStatus,
    ReservationStatus,
    StopType,
    TripLeg,
    TripType,
)

PAYMENT_WINDOW = timedelta(hours=24)


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class ItineraryStop:
    trip_leg: TripLeg
    stop_order: int
    arrival_time: datetime
    stop_type: StopType = StopType.STOP
    location_name: str = ""
    latitude: float = 0.0
    longitude: float = 0.0
    departure_time: Optional[datetime] = None
    is_driver_staying: bool = False
    staying_duration_hours: Optional[float] = None

    @property
    def end_time(self) -> datetime:
        """Departure counts only while the driver stays at the stop."""
        if self.is_driver_staying and self.departure_time is not None:
            return self.departure_time
        return self.arrival_time


@dataclass(frozen=True)
class SelectedVehicle:
    vehicle_id: str
    quantity: int = 1


@dataclass(frozen=True)
class RouteLeg:
    distance_km: Optional[float] = None
    duration_hours: Optional[float] = None

    @property
    def is_complete(self) -> bool:
        return self.distance_km is not None and self.duration_hours is not None


@dataclass(frozen=True)
class RouteData:
    outbound: Optional[RouteLeg] = None
    return_leg: Optional[RouteLeg] = None


@dataclass(frozen=True)
class PricingBreakdown:
    base_fare: float
    distance_fare: float
    driver_charge: float
    fuel_maintenance: float
    night_charge: float
    staying_charge: float
    amenities_total: float
    subtotal: float
    tax: float
    total: float
    # frozen config values the quote was priced against
    fuel_price_at_time: float
    average_driver_rate_at_time: float
    tax_percentage_at_time: float
    night_charge_at_time: float
    pricing_config_version: Optional[int] = None
    driver_rate_applied: Optional[float] = None


# ── Catalog ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Vehicle:
    id: str
    name: str = ""
    capacity: int = 0
    base_fare: float = 0.0
    maintenance_cost: float = 0.0
    fuel_consumption: float = 0.0  # litres per km


@dataclass(frozen=True)
class Amenity:
    id: str
    name: str = ""
    price: float = 0.0
    is_paid: bool = True

    @property
    def unit_price(self) -> float:
        return self.price if self.is_paid else 0.0


@dataclass(frozen=True)
class PricingConfig:
    version: int
    fuel_price: float
    average_driver_rate_per_hour: float
    tax_percentage: float
    night_charge_per_leg: float
    staying_charge_per_day: float = 0.0
    is_active: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None


# ── Entities ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Driver:
    id: str
    full_name: str = ""
    status: DriverStatus = DriverStatus.AVAILABLE
    is_onboarded: bool = False
    salary: float = 0.0  # hourly rate
    last_assigned_at: Optional[datetime] = None


@dataclass(frozen=True)
class Quote:
    id: str
    user_id: str
    trip_type: TripType = TripType.ONE_WAY
    status: QuoteStatus = QuoteStatus.DRAFT
    trip_name: Optional[str] = None
    passenger_count: Optional[int] = None
    selected_vehicles: tuple[SelectedVehicle, ...] = ()
    selected_amenities: tuple[str, ...] = ()
    route_data: Optional[RouteData] = None
    pricing: Optional[PricingBreakdown] = None
    assigned_driver_id: Optional[str] = None
    actual_driver_rate: Optional[float] = None
    quoted_at: Optional[datetime] = None
    itinerary: tuple[ItineraryStop, ...] = ()
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Reservation:
    id: str
    quote_id: str
    user_id: str
    trip_type: TripType
    status: ReservationStatus = ReservationStatus.CONFIRMED
    selected_vehicles: tuple[SelectedVehicle, ...] = ()
    selected_amenities: tuple[str, ...] = ()
    route_data: Optional[RouteData] = None
    assigned_driver_id: Optional[str] = None
    original_driver_id: Optional[str] = None
    original_pricing: Optional[PricingBreakdown] = None
    payment_reference: Optional[str] = None
    itinerary: tuple[ItineraryStop, ...] = field(default_factory=tuple)
    confirmed_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ── Status predicates ─────────────────────────────────────────────────


def can_transition(current: QuoteStatus, target: QuoteStatus) -> bool:
    return target in QUOTE_TRANSITIONS.get(current, set())


def is_editable(status: QuoteStatus) -> bool:
    return status in EDITABLE_QUOTE_STATUSES


def is_terminal(status: QuoteStatus) -> bool:
    return status in TERMINAL_QUOTE_STATUSES


def payment_window_ends_at(
    quote: Quote, window: timedelta = PAYMENT_WINDOW
) -> Optional[datetime]:
    if quote.quoted_at is None:
        return None
    return quote.quoted_at + window


def is_payment_window_expired(
    quote: Quote, now: datetime, window: timedelta = PAYMENT_WINDOW
) -> bool:
    """A quote never priced has no window, so it cannot have expired."""
    ends_at = payment_window_ends_at(quote, window)
    return ends_at is not None and now > ends_at


def is_payable(
    quote: Quote, now: datetime, window: timedelta = PAYMENT_WINDOW
) -> bool:
    return (
        quote.status == QuoteStatus.QUOTED
        and quote.pricing is not None
        and quote.quoted_at is not None
        and not is_payment_window_expired(quote, now, window)
    )
