"""
Domain error taxonomy.

Every error carries a machine-readable ``code`` and an HTTP-ish
``status_code`` so the API shell can render it without knowing the
concrete class.  Ineligibility of a driver is *not* an error at the
guard level (see ``eligibility.py``); it only becomes one when an
assignment is attempted.
"""

from __future__ import annotations

from typing import Iterable, Optional


class DomainError(Exception):
    status_code = 400
    default_code = "DOMAIN_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


# ── NotFound ──────────────────────────────────────────────────────────


class NotFound(DomainError):
    status_code = 404
    default_code = "NOT_FOUND"


class QuoteNotFound(NotFound):
    default_code = "QUOTE_NOT_FOUND"

    def __init__(self, quote_id: str):
        super().__init__(f"Quote not found: {quote_id}")


class ReservationNotFound(NotFound):
    default_code = "RESERVATION_NOT_FOUND"

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation not found: {reservation_id}")


class DriverNotFound(NotFound):
    default_code = "DRIVER_NOT_FOUND"

    def __init__(self, driver_id: str):
        super().__init__(f"Driver not found: {driver_id}")


class VehicleNotFound(NotFound):
    default_code = "VEHICLE_NOT_FOUND"

    def __init__(self, vehicle_id: str):
        super().__init__(f"Vehicle not found: {vehicle_id}")


# ── InvalidState ──────────────────────────────────────────────────────


class InvalidState(DomainError):
    status_code = 409
    default_code = "INVALID_QUOTE_STATUS"


class InvalidStateTransition(InvalidState):
    """Raised when a quote status change violates the state machine."""


class QuoteNotEditable(InvalidState):
    default_code = "QUOTE_NOT_EDITABLE"


# ── Conflict ──────────────────────────────────────────────────────────


class AllocationConflict(DomainError):
    """A driver or vehicle is already committed to an overlapping trip."""

    status_code = 409
    default_code = "ALLOCATION_CONFLICT"

    def __init__(self, resource: str, ids: Iterable[str], message: Optional[str] = None):
        self.resource = resource
        self.ids = sorted(ids)
        super().__init__(
            message
            or f"{resource.capitalize()} is not available for the selected dates: "
            + ", ".join(self.ids),
            code=f"{resource.upper()}_NOT_AVAILABLE",
        )


class DriverNotEligible(DomainError):
    status_code = 409
    default_code = "DRIVER_NOT_ELIGIBLE"


# ── WindowExpired ─────────────────────────────────────────────────────


class WindowExpired(DomainError):
    """The 24 h payment window lapsed; the client must request a new quote."""

    status_code = 410
    default_code = "QUOTE_EXPIRED"


class ChatWindowClosed(DomainError):
    status_code = 403
    default_code = "CHAT_WINDOW_EXPIRED"


# ── DependencyUnavailable ─────────────────────────────────────────────


class DependencyUnavailable(DomainError):
    status_code = 503
    default_code = "DEPENDENCY_UNAVAILABLE"


class PricingConfigMissing(DependencyUnavailable):
    default_code = "PRICING_CONFIG_NOT_FOUND"

    def __init__(self):
        super().__init__("No active pricing configuration")


class MissingRouteData(DependencyUnavailable):
    default_code = "ROUTE_DATA_MISSING"

    def __init__(self, leg: str):
        self.leg = leg
        super().__init__(f"Route distance/duration missing for {leg} leg")


class IncompleteQuote(DomainError):
    status_code = 422
    default_code = "QUOTE_INCOMPLETE"


class NoItinerary(DomainError):
    """Trip window is unknown -- never to be read as "upcoming"."""

    status_code = 422
    default_code = "ITINERARY_NOT_FOUND"

    def __init__(self, message: str = "Itinerary has no stops"):
        super().__init__(message)
