"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from charterbook.domain.entities import (
    ItineraryStop,
    Quote,
    Reservation,
    payment_window_ends_at,
)
from charterbook.domain.trip_window import derive_trip_window


# ── Requests ──────────────────────────────────────────────────────────


class AssignDriverRequest(BaseModel):
    driver_id: str = Field(..., min_length=1, max_length=36)


class PayRequest(BaseModel):
    payment_reference: Optional[str] = Field(
        None,
        max_length=120,
        description="Gateway reference of the captured payment.",
    )


# ── Responses ─────────────────────────────────────────────────────────


class PricingBreakdownResponse(BaseModel):
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
    fuel_price_at_time: float
    average_driver_rate_at_time: float
    tax_percentage_at_time: float
    night_charge_at_time: float
    pricing_config_version: Optional[int] = None
    driver_rate_applied: Optional[float] = None

    model_config = {"from_attributes": True}


class ItineraryStopResponse(BaseModel):
    trip_leg: str
    stop_order: int
    stop_type: str
    location_name: str
    arrival_time: datetime
    departure_time: Optional[datetime] = None
    is_driver_staying: bool = False

    @classmethod
    def from_domain(cls, stop: ItineraryStop) -> "ItineraryStopResponse":
        return cls(
            trip_leg=stop.trip_leg.value,
            stop_order=stop.stop_order,
            stop_type=stop.stop_type.value,
            location_name=stop.location_name,
            arrival_time=stop.arrival_time,
            departure_time=stop.departure_time,
            is_driver_staying=stop.is_driver_staying,
        )


class QuoteResponse(BaseModel):
    id: str
    user_id: str
    trip_type: str
    status: str
    assigned_driver_id: Optional[str] = None
    actual_driver_rate: Optional[float] = None
    quoted_at: Optional[datetime] = None
    payment_window_ends_at: Optional[datetime] = None
    pricing: Optional[PricingBreakdownResponse] = None
    trip_start_at: Optional[datetime] = None
    trip_end_at: Optional[datetime] = None
    itinerary: list[ItineraryStopResponse] = []

    @classmethod
    def from_domain(cls, quote: Quote) -> "QuoteResponse":
        # an empty itinerary means "window unknown", not "upcoming"
        window = derive_trip_window(quote.itinerary) if quote.itinerary else None
        return cls(
            id=quote.id,
            user_id=quote.user_id,
            trip_type=quote.trip_type.value,
            status=quote.status.value,
            assigned_driver_id=quote.assigned_driver_id,
            actual_driver_rate=quote.actual_driver_rate,
            quoted_at=quote.quoted_at,
            payment_window_ends_at=payment_window_ends_at(quote),
            pricing=(
                PricingBreakdownResponse.model_validate(quote.pricing)
                if quote.pricing
                else None
            ),
            trip_start_at=window.trip_start_at if window else None,
            trip_end_at=window.trip_end_at if window else None,
            itinerary=[ItineraryStopResponse.from_domain(s) for s in quote.itinerary],
        )


class EligibilityResponse(BaseModel):
    can_assign: bool
    reason: Optional[str] = None

    model_config = {"from_attributes": True}


class ReservationResponse(BaseModel):
    id: str
    quote_id: str
    user_id: str
    status: str
    assigned_driver_id: Optional[str] = None
    original_driver_id: Optional[str] = None
    original_pricing: Optional[PricingBreakdownResponse] = None
    payment_reference: Optional[str] = None
    confirmed_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, reservation: Reservation) -> "ReservationResponse":
        return cls(
            id=reservation.id,
            quote_id=reservation.quote_id,
            user_id=reservation.user_id,
            status=reservation.status.value,
            assigned_driver_id=reservation.assigned_driver_id,
            original_driver_id=reservation.original_driver_id,
            original_pricing=(
                PricingBreakdownResponse.model_validate(reservation.original_pricing)
                if reservation.original_pricing
                else None
            ),
            payment_reference=reservation.payment_reference,
            confirmed_at=reservation.confirmed_at,
        )


class TripStatusResponse(BaseModel):
    reservation_id: str
    trip_start_at: datetime
    trip_end_at: datetime
    state: str
    within_24_hours_of_start: bool
    chat_enabled: bool
    privacy: str


class HealthResponse(BaseModel):
    status: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
    code: str
