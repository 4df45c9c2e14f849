"""
Quote State Machine
===================

Owns every status change of a quote and the conversion of a paid quote
into a reservation.

Assign-driver pipeline
----------------------
  1. state        -- quote may move to QUOTED, payment window not lapsed
  2. eligibility  -- ``can_assign_driver`` (status / onboarding / soon start)
  3. conflicts    -- booked driver + vehicle sets for the trip window,
                     re-read right before the write
  4. pricing      -- ``PricingEngine`` with the driver's actual rate
  5. write        -- one conditional UPDATE (status, driver, rate,
                     pricing, quoted_at), then commit
  6. expiry       -- arm ``expiry:<quote_id>``
  7. post-commit  -- last_assigned_at, quote document + e-mail, event

Steps 1-4 raise before anything is written.  Steps 6-7 are best-effort.

Concurrency
-----------
* The write matches only the status read in step 1, so a concurrent
  transition makes it miss instead of overwriting.
* When a ``lock_factory`` is wired, steps 3-5 run under a per-driver
  Redis lock so two assignments of one driver cannot both pass step 3.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncContextManager, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.config import settings
from charterbook.domain.allocation import date_range_from_stops
from charterbook.domain.eligibility import (
    EligibilityResult,
    can_assign_driver,
    fair_assignment_order,
)
from charterbook.domain.entities import (
    Driver,
    Quote,
    Reservation,
    can_transition,
    is_editable,
    is_payment_window_expired,
)
from charterbook.domain.enums import QuoteStatus, ReservationStatus
from charterbook.domain.errors import (
    AllocationConflict,
    DriverNotEligible,
    DriverNotFound,
    IncompleteQuote,
    InvalidState,
    InvalidStateTransition,
    NoItinerary,
    PricingConfigMissing,
    QuoteNotEditable,
    QuoteNotFound,
    VehicleNotFound,
    WindowExpired,
)
from charterbook.domain.pricing import (
    ActualDriverRate,
    PricedVehicle,
    PricingEngine,
    PricingInput,
    required_route_legs,
)
from charterbook.domain.trip_window import earliest_trip_start
from charterbook.infrastructure.repositories import (
    AmenityRepository,
    DriverRepository,
    PricingConfigRepository,
    QuoteRepository,
    ReservationRepository,
    VehicleRepository,
)
from charterbook.services.allocation import AllocationConflictDetector
from charterbook.services.expiry import ExpiryScheduler, expire_quote
from charterbook.services.side_effects import (
    EventEmitter,
    LoggingDocumentRenderer,
    LoggingEventEmitter,
    LoggingMailer,
    PostCommitAction,
    QuoteDocumentRenderer,
    QuoteMailer,
    run_post_commit,
)

logger = logging.getLogger(__name__)

LockFactory = Callable[[str], AsyncContextManager]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuoteStateMachine:
    def __init__(
        self,
        session: AsyncSession,
        *,
        expiry_scheduler: Optional[ExpiryScheduler] = None,
        lock_factory: Optional[LockFactory] = None,
        renderer: Optional[QuoteDocumentRenderer] = None,
        mailer: Optional[QuoteMailer] = None,
        events: Optional[EventEmitter] = None,
        pricing_engine: Optional[PricingEngine] = None,
        clock: Callable[[], datetime] = _utcnow,
        payment_window: Optional[timedelta] = None,
        soon_start_threshold: Optional[timedelta] = None,
    ):
        self.session = session
        self.quotes = QuoteRepository(session)
        self.reservations = ReservationRepository(session)
        self.drivers = DriverRepository(session)
        self.vehicles = VehicleRepository(session)
        self.amenities = AmenityRepository(session)
        self.pricing_configs = PricingConfigRepository(session)

        self.payment_window = payment_window or timedelta(
            hours=settings.payment_window_hours
        )
        self.soon_start_threshold = soon_start_threshold or timedelta(
            hours=settings.soon_start_threshold_hours
        )
        self.allocation = AllocationConflictDetector(
            session, payment_window=self.payment_window, clock=clock
        )
        self.expiry_scheduler = expiry_scheduler
        self.lock_factory = lock_factory
        self.renderer = renderer or LoggingDocumentRenderer()
        self.mailer = mailer or LoggingMailer()
        self.events = events or LoggingEventEmitter()
        self.pricing_engine = pricing_engine or PricingEngine(
            settings.night_start_hour, settings.night_end_hour
        )
        self.clock = clock

    # ── Reads ─────────────────────────────────────────────────────────

    async def get_quote(self, quote_id: str) -> Quote:
        quote = await self.quotes.get_by_id(quote_id)
        if quote is None:
            raise QuoteNotFound(quote_id)
        return quote

    async def _get_driver(self, driver_id: str) -> Driver:
        driver = await self.drivers.get_by_id(driver_id)
        if driver is None:
            raise DriverNotFound(driver_id)
        return driver

    async def check_eligibility(self, driver_id: str, quote_id: str) -> EligibilityResult:
        """Guard result plus the booked-set check, as the assign path sees it."""
        quote = await self.get_quote(quote_id)
        driver = await self._get_driver(driver_id)
        result = can_assign_driver(
            driver,
            earliest_trip_start(quote.itinerary),
            self.clock(),
            self.soon_start_threshold,
        )
        if not result.can_assign or not quote.itinerary:
            return result

        booked = await self.allocation.booked_driver_ids(
            date_range_from_stops(quote.itinerary), quote.id
        )
        if driver.id in booked:
            return EligibilityResult(
                False, "Driver is already assigned to another trip in the selected dates"
            )
        return result

    # ── Simple transitions ────────────────────────────────────────────

    async def _transition(
        self, quote: Quote, target: QuoteStatus, event: str
    ) -> Quote:
        if not can_transition(quote.status, target):
            raise InvalidStateTransition(
                f"Cannot move quote from {quote.status.value} to {target.value}"
            )
        if not await self.quotes.update_status(quote.id, target, [quote.status]):
            await self.session.rollback()
            raise InvalidStateTransition(
                f"Quote {quote.id} changed while moving to {target.value}"
            )
        await self.session.commit()
        logger.info(
            "Quote %s: %s -> %s", quote.id, quote.status.value, target.value
        )
        await run_post_commit([self._emit(event, quote.id, target)])
        return await self.get_quote(quote.id)

    async def submit(self, quote_id: str, auto_assign: bool = False) -> Quote:
        quote = await self.get_quote(quote_id)
        if not is_editable(quote.status):
            raise QuoteNotEditable(
                f"Quote is {quote.status.value} and can no longer be submitted"
            )
        if not quote.selected_vehicles:
            raise IncompleteQuote("Select at least one vehicle before submitting")
        if not quote.itinerary:
            raise NoItinerary("Add at least one itinerary stop before submitting")

        quote = await self._transition(quote, QuoteStatus.SUBMITTED, "quote.submitted")
        if not auto_assign:
            return quote
        try:
            return await self.auto_assign(quote_id)
        except AllocationConflict:
            logger.info("Quote %s submitted without a driver: none free", quote_id)
            return quote

    async def start_negotiation(self, quote_id: str) -> Quote:
        quote = await self.get_quote(quote_id)
        return await self._transition(quote, QuoteStatus.NEGOTIATING, "quote.negotiating")

    async def accept(self, quote_id: str) -> Quote:
        quote = await self.get_quote(quote_id)
        return await self._transition(quote, QuoteStatus.ACCEPTED, "quote.accepted")

    async def reject(self, quote_id: str) -> Quote:
        quote = await self.get_quote(quote_id)
        return await self._transition(quote, QuoteStatus.REJECTED, "quote.rejected")

    # ── Driver assignment ─────────────────────────────────────────────

    def _ensure_quotable(self, quote: Quote, now: datetime) -> None:
        if not can_transition(quote.status, QuoteStatus.QUOTED):
            raise InvalidStateTransition(
                f"Cannot assign a driver to a {quote.status.value} quote"
            )
        if is_payment_window_expired(quote, now, self.payment_window):
            raise WindowExpired("Quote has expired, please request a new quote")
        if not quote.selected_vehicles:
            raise IncompleteQuote("Quote has no selected vehicles")
        required_route_legs(quote.trip_type, quote.route_data)

    async def _price(self, quote: Quote, driver: Driver):
        config = await self.pricing_configs.find_active()
        if config is None:
            raise PricingConfigMissing()

        catalogue = await self.vehicles.get_by_ids(
            v.vehicle_id for v in quote.selected_vehicles
        )
        priced = []
        for selected in quote.selected_vehicles:
            vehicle = catalogue.get(selected.vehicle_id)
            if vehicle is None:
                raise VehicleNotFound(selected.vehicle_id)
            priced.append(PricedVehicle(vehicle, selected.quantity))

        amenities = await self.amenities.get_by_ids(quote.selected_amenities)
        return self.pricing_engine.calculate(
            PricingInput(
                vehicles=priced,
                amenities=amenities,
                itinerary=quote.itinerary,
                config=config,
                trip_type=quote.trip_type,
                route_data=quote.route_data,
            ),
            driver_rate=ActualDriverRate(driver.salary),
        )

    def _lock(self, driver_id: str) -> AsyncContextManager:
        if self.lock_factory is None:
            return contextlib.nullcontext()
        return self.lock_factory(driver_id)

    async def assign_driver(self, quote_id: str, driver_id: str) -> Quote:
        now = self.clock()
        quote = await self.get_quote(quote_id)

        # 1. state
        self._ensure_quotable(quote, now)
        date_range = date_range_from_stops(quote.itinerary)

        # 2. eligibility
        driver = await self._get_driver(driver_id)
        eligibility = can_assign_driver(
            driver, date_range.start, now, self.soon_start_threshold
        )
        if not eligibility.can_assign:
            raise DriverNotEligible(eligibility.reason)

        async with self._lock(driver.id):
            # 3. conflicts
            await self.allocation.ensure_driver_free(driver.id, date_range, quote.id)
            await self.allocation.ensure_vehicles_free(
                (v.vehicle_id for v in quote.selected_vehicles), date_range, quote.id
            )

            # 4. pricing
            pricing = await self._price(quote, driver)

            # 5. write
            written = await self.quotes.mark_quoted(
                quote.id,
                driver_id=driver.id,
                driver_rate=driver.salary,
                pricing=pricing,
                quoted_at=now,
                expected=[quote.status],
            )
            if not written:
                await self.session.rollback()
                raise InvalidStateTransition(
                    f"Quote {quote.id} changed while assigning a driver"
                )
            await self.session.commit()

        logger.info(
            "Quote %s: %s -> quoted (driver=%s, total=%.2f)",
            quote.id,
            quote.status.value,
            driver.id,
            pricing.total,
        )

        # 6. expiry
        await self._arm_expiry(quote.id, now)

        # 7. post-commit
        quoted = await self.get_quote(quote.id)
        await run_post_commit(
            [
                PostCommitAction(
                    "driver.last_assigned_at",
                    lambda: self._touch_driver(driver.id, now),
                ),
                PostCommitAction("quote.document", lambda: self._send_document(quoted)),
                self._emit("quote.quoted", quote.id, QuoteStatus.QUOTED, driver_id=driver.id),
            ]
        )
        return quoted

    async def auto_assign(self, quote_id: str) -> Quote:
        """Assign the least recently assigned driver who is free and eligible."""
        now = self.clock()
        quote = await self.get_quote(quote_id)
        self._ensure_quotable(quote, now)
        date_range = date_range_from_stops(quote.itinerary)

        booked = await self.allocation.booked_driver_ids(date_range, quote.id)
        candidates = [
            d
            for d in fair_assignment_order(await self.drivers.find_available_drivers())
            if d.id not in booked
            and can_assign_driver(d, date_range.start, now, self.soon_start_threshold).can_assign
        ]
        for driver in candidates:
            try:
                return await self.assign_driver(quote_id, driver.id)
            except AllocationConflict:
                # lost a race for this driver, try the next one
                logger.info("Quote %s: driver %s taken meanwhile", quote_id, driver.id)

        raise AllocationConflict(
            "driver", [], "No driver is available for the selected dates"
        )

    async def reprice(self, quote_id: str, driver_id: Optional[str] = None) -> Quote:
        """ACCEPTED -> QUOTED, keeping the bound driver unless one is given."""
        quote = await self.get_quote(quote_id)
        if quote.status != QuoteStatus.ACCEPTED:
            raise InvalidStateTransition(
                f"Only accepted quotes can be re-priced, quote is {quote.status.value}"
            )
        driver_id = driver_id or quote.assigned_driver_id
        if driver_id is None:
            return await self.auto_assign(quote_id)
        return await self.assign_driver(quote_id, driver_id)

    # ── Payment ───────────────────────────────────────────────────────

    async def pay(
        self, quote_id: str, payment_reference: Optional[str] = None
    ) -> Reservation:
        existing = await self.reservations.get_by_quote_id(quote_id)
        if existing is not None:
            return existing

        now = self.clock()
        quote = await self.get_quote(quote_id)
        if quote.status == QuoteStatus.EXPIRED:
            raise WindowExpired("Payment window has expired, please request a new quote")
        if quote.status != QuoteStatus.QUOTED:
            raise InvalidStateTransition(
                f"Cannot pay a {quote.status.value} quote"
            )
        if is_payment_window_expired(quote, now, self.payment_window):
            await expire_quote(
                self.session,
                quote.id,
                quote.quoted_at,
                now,
                self.payment_window,
                events=self.events,
            )
            raise WindowExpired("Payment window has expired, please request a new quote")
        if quote.pricing is None:
            raise InvalidState("Quote has no pricing")

        try:
            if not await self.quotes.update_status(
                quote.id, QuoteStatus.PAID, [QuoteStatus.QUOTED]
            ):
                raise InvalidStateTransition(f"Quote {quote.id} changed during payment")
            reservation = await self.reservations.create(
                _reservation_from_quote(quote, now, payment_reference)
            )
            await self.session.commit()
        except (InvalidStateTransition, IntegrityError):
            await self.session.rollback()
            # a concurrent payment for the same quote got there first
            existing = await self.reservations.get_by_quote_id(quote_id)
            if existing is not None:
                return existing
            raise

        logger.info("Quote %s: quoted -> paid (reservation=%s)", quote.id, reservation.id)
        await run_post_commit(
            [self._emit("quote.paid", quote.id, QuoteStatus.PAID, reservation_id=reservation.id)]
        )
        return reservation

    # ── Best-effort helpers ───────────────────────────────────────────

    async def _arm_expiry(self, quote_id: str, quoted_at: datetime) -> None:
        if self.expiry_scheduler is None:
            logger.debug("No expiry scheduler wired, quote %s relies on sweep", quote_id)
            return
        try:
            if not await self.expiry_scheduler.schedule_expiry(quote_id, quoted_at):
                # window already over, nothing will fire for it
                await expire_quote(
                    self.session,
                    quote_id,
                    quoted_at,
                    self.clock(),
                    self.payment_window,
                    events=self.events,
                )
        except Exception:
            # the worker's sweep still picks the quote up once it lapses
            logger.exception("Could not arm expiry for quote %s", quote_id)

    async def _touch_driver(self, driver_id: str, at: datetime) -> None:
        try:
            await self.drivers.update_last_assigned_at(driver_id, at)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _send_document(self, quote: Quote) -> None:
        document = await self.renderer.render_quote(quote)
        await self.mailer.send_quote(quote, document)

    def _emit(self, event: str, quote_id: str, status: QuoteStatus, **extra) -> PostCommitAction:
        payload = {"quote_id": quote_id, "status": status.value, **extra}
        return PostCommitAction(event, lambda: self.events.emit(event, payload))


def _reservation_from_quote(
    quote: Quote, confirmed_at: datetime, payment_reference: Optional[str]
) -> Reservation:
    """Structural copy of the quote; pricing is frozen as ``original_pricing``."""
    return Reservation(
        id=str(uuid.uuid4()),
        quote_id=quote.id,
        user_id=quote.user_id,
        trip_type=quote.trip_type,
        status=ReservationStatus.CONFIRMED,
        selected_vehicles=quote.selected_vehicles,
        selected_amenities=quote.selected_amenities,
        route_data=quote.route_data,
        assigned_driver_id=quote.assigned_driver_id,
        original_driver_id=quote.assigned_driver_id,
        original_pricing=quote.pricing,
        payment_reference=payment_reference,
        itinerary=quote.itinerary,
        confirmed_at=confirmed_at,
    )
