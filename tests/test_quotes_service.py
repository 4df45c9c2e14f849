"""
Quote state machine tests against SQLite.

Redis-backed collaborators (expiry scheduler, mailer, events) are
AsyncMocks so the post-commit behaviour can be asserted directly.
"""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from charterbook.domain.entities import RouteData
from charterbook.domain.enums import DriverStatus, QuoteStatus, ReservationStatus
from charterbook.domain.errors import (
    AllocationConflict,
    DriverNotEligible,
    DriverNotFound,
    IncompleteQuote,
    InvalidStateTransition,
    MissingRouteData,
    PricingConfigMissing,
    QuoteNotEditable,
    QuoteNotFound,
    WindowExpired,
)
from charterbook.infrastructure.repositories import DriverRepository, QuoteRepository
from charterbook.services.expiry import expire_quote
from charterbook.services.quotes import QuoteStateMachine
from tests.factories import (
    NOW,
    TRIP_START,
    add_driver,
    add_quote,
    fixed_clock,
    make_quote,
    seed_catalogue,
)

H = timedelta(hours=1)


@pytest.fixture
def collaborators():
    return SimpleNamespace(
        scheduler=AsyncMock(),
        renderer=AsyncMock(),
        mailer=AsyncMock(),
        events=AsyncMock(),
    )


@pytest.fixture
def make_machine(db_session, collaborators):
    def _make(at=NOW):
        return QuoteStateMachine(
            db_session,
            expiry_scheduler=collaborators.scheduler,
            renderer=collaborators.renderer,
            mailer=collaborators.mailer,
            events=collaborators.events,
            clock=fixed_clock(at),
            payment_window=timedelta(hours=24),
            soon_start_threshold=timedelta(hours=24),
        )

    return _make


@pytest_asyncio.fixture
async def catalogue(db_session):
    await seed_catalogue(db_session)


def _emitted(events) -> list[str]:
    return [c.args[0] for c in events.emit.await_args_list]


# ── Assign driver ─────────────────────────────────────────────────────


class TestAssignDriver:
    @pytest.mark.asyncio
    async def test_assign_prices_with_actual_driver_rate(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1", salary=650)
        await add_quote(db_session, make_quote("q-1"))

        quote = await make_machine().assign_driver("q-1", "drv-1")

        assert quote.status == QuoteStatus.QUOTED
        assert quote.assigned_driver_id == "drv-1"
        assert quote.actual_driver_rate == 650
        assert quote.quoted_at == NOW
        assert quote.pricing.driver_charge == 2600
        assert quote.pricing.total == 16060
        assert quote.pricing.driver_rate_applied == 650
        assert quote.pricing.pricing_config_version == 1

    @pytest.mark.asyncio
    async def test_assign_arms_expiry_and_runs_post_commit(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))

        await make_machine().assign_driver("q-1", "drv-1")

        collaborators.scheduler.schedule_expiry.assert_awaited_once_with("q-1", NOW)
        collaborators.mailer.send_quote.assert_awaited_once()
        assert _emitted(collaborators.events) == ["quote.quoted"]
        driver = await DriverRepository(db_session).get_by_id("drv-1")
        assert driver.last_assigned_at == NOW

    @pytest.mark.asyncio
    async def test_unscheduled_expiry_is_reconciled_at_once(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        collaborators.scheduler.schedule_expiry.return_value = False

        with patch(
            "charterbook.services.quotes.expire_quote", new_callable=AsyncMock
        ) as reconcile:
            await make_machine().assign_driver("q-1", "drv-1")

        reconcile.assert_awaited_once()
        assert reconcile.await_args.args[1:4] == ("q-1", NOW, NOW)

    @pytest.mark.asyncio
    async def test_armed_expiry_skips_reconcile(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        collaborators.scheduler.schedule_expiry.return_value = True

        with patch(
            "charterbook.services.quotes.expire_quote", new_callable=AsyncMock
        ) as reconcile:
            await make_machine().assign_driver("q-1", "drv-1")

        reconcile.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_post_commit_failure_keeps_transition(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        collaborators.mailer.send_quote.side_effect = RuntimeError("smtp down")
        collaborators.scheduler.schedule_expiry.side_effect = ConnectionError("redis down")

        quote = await make_machine().assign_driver("q-1", "drv-1")

        assert quote.status == QuoteStatus.QUOTED
        assert _emitted(collaborators.events) == ["quote.quoted"]
        stored = await QuoteRepository(db_session).get_by_id("q-1")
        assert stored.status == QuoteStatus.QUOTED

    @pytest.mark.asyncio
    async def test_driver_booked_on_overlapping_quote(
        self, db_session, catalogue, make_machine
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(
            db_session,
            make_quote(
                "q-other",
                status=QuoteStatus.QUOTED,
                driver_id="drv-1",
                vehicles=("veh-2",),
                quoted_at=NOW - H,
                start=TRIP_START + 2 * H,
            ),
        )
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(AllocationConflict) as exc:
            await make_machine().assign_driver("q-1", "drv-1")
        assert exc.value.resource == "driver"

        stored = await QuoteRepository(db_session).get_by_id("q-1")
        assert stored.status == QuoteStatus.SUBMITTED
        assert stored.assigned_driver_id is None

    @pytest.mark.asyncio
    async def test_vehicle_booked_on_paid_quote(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(
            db_session,
            make_quote("q-other", status=QuoteStatus.PAID, driver_id="drv-9", vehicles=("veh-1",)),
        )
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(AllocationConflict) as exc:
            await make_machine().assign_driver("q-1", "drv-1")
        assert exc.value.resource == "vehicle"
        assert exc.value.ids == ["veh-1"]

    @pytest.mark.asyncio
    async def test_lapsed_quote_does_not_block_driver(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(
            db_session,
            make_quote(
                "q-old",
                status=QuoteStatus.QUOTED,
                driver_id="drv-1",
                vehicles=("veh-2",),
                quoted_at=NOW - 25 * H,
            ),
        )
        await add_quote(db_session, make_quote("q-1"))

        quote = await make_machine().assign_driver("q-1", "drv-1")
        assert quote.assigned_driver_id == "drv-1"

    @pytest.mark.asyncio
    async def test_suspended_driver_not_eligible(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1", status=DriverStatus.SUSPENDED)
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(DriverNotEligible) as exc:
            await make_machine().assign_driver("q-1", "drv-1")
        assert "suspended" in exc.value.message

    @pytest.mark.asyncio
    async def test_on_trip_driver_only_for_later_trips(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1", status=DriverStatus.ON_TRIP)
        await add_quote(db_session, make_quote("q-soon", start=NOW + 2 * H))
        await add_quote(
            db_session, make_quote("q-later", start=NOW + 240 * H, vehicles=("veh-2",))
        )

        with pytest.raises(DriverNotEligible):
            await make_machine().assign_driver("q-soon", "drv-1")
        quote = await make_machine().assign_driver("q-later", "drv-1")
        assert quote.status == QuoteStatus.QUOTED

    @pytest.mark.asyncio
    async def test_missing_pricing_config(self, db_session, make_machine):
        await seed_catalogue(db_session, with_config=False)
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(PricingConfigMissing):
            await make_machine().assign_driver("q-1", "drv-1")

        stored = await QuoteRepository(db_session).get_by_id("q-1")
        assert stored.status == QuoteStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_missing_route_data(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1", route=RouteData()))

        with pytest.raises(MissingRouteData):
            await make_machine().assign_driver("q-1", "drv-1")

    @pytest.mark.asyncio
    async def test_paid_quote_cannot_be_reassigned(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.PAID))

        with pytest.raises(InvalidStateTransition):
            await make_machine().assign_driver("q-1", "drv-1")

    @pytest.mark.asyncio
    async def test_lapsed_window_rejects_reassignment(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(
            db_session,
            make_quote("q-1", status=QuoteStatus.QUOTED, driver_id="drv-1", quoted_at=NOW - 25 * H),
        )

        with pytest.raises(WindowExpired):
            await make_machine().assign_driver("q-1", "drv-1")

    @pytest.mark.asyncio
    async def test_requote_moves_quoted_at_forward(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_driver(db_session, "drv-2", salary=500)
        await add_quote(
            db_session,
            make_quote("q-1", status=QuoteStatus.QUOTED, driver_id="drv-1", quoted_at=NOW - 2 * H),
        )

        quote = await make_machine().assign_driver("q-1", "drv-2")

        assert quote.assigned_driver_id == "drv-2"
        assert quote.quoted_at == NOW
        assert quote.pricing.driver_charge == 2000

    @pytest.mark.asyncio
    async def test_unknown_quote_and_driver(self, db_session, catalogue, make_machine):
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(QuoteNotFound):
            await make_machine().assign_driver("q-missing", "drv-1")
        with pytest.raises(DriverNotFound):
            await make_machine().assign_driver("q-1", "drv-missing")

    @pytest.mark.asyncio
    async def test_conditional_write_misses_on_status_change(self, db_session):
        await add_quote(db_session, make_quote("q-1"))
        repo = QuoteRepository(db_session)

        written = await repo.mark_quoted(
            "q-1",
            driver_id="drv-1",
            driver_rate=650,
            pricing=None,
            quoted_at=NOW,
            expected=[QuoteStatus.ACCEPTED],
        )
        assert written is False


# ── Eligibility check ─────────────────────────────────────────────────


class TestCheckEligibility:
    @pytest.mark.asyncio
    async def test_free_driver_is_eligible(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))

        result = await make_machine().check_eligibility("drv-1", "q-1")
        assert result.can_assign
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_booked_driver_reported_with_reason(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(
            db_session,
            make_quote("q-other", status=QuoteStatus.NEGOTIATING, driver_id="drv-1"),
        )
        await add_quote(db_session, make_quote("q-1"))

        result = await make_machine().check_eligibility("drv-1", "q-1")
        assert not result.can_assign
        assert "already assigned" in result.reason


# ── Auto assignment ───────────────────────────────────────────────────


class TestAutoAssign:
    @pytest.mark.asyncio
    async def test_least_recently_assigned_driver_wins(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-a", last_assigned_at=NOW - 24 * H)
        await add_driver(db_session, "drv-b")
        await add_driver(db_session, "drv-c", last_assigned_at=NOW - 48 * H)
        await add_quote(db_session, make_quote("q-1"))

        quote = await make_machine().auto_assign("q-1")
        assert quote.assigned_driver_id == "drv-b"

    @pytest.mark.asyncio
    async def test_booked_and_ineligible_drivers_are_skipped(
        self, db_session, catalogue, make_machine
    ):
        await add_driver(db_session, "drv-a", last_assigned_at=NOW - 24 * H)
        await add_driver(db_session, "drv-b")
        await add_driver(db_session, "drv-c", last_assigned_at=NOW - 48 * H, onboarded=False)
        await add_quote(
            db_session,
            make_quote("q-other", status=QuoteStatus.PAID, driver_id="drv-b", vehicles=("veh-2",)),
        )
        await add_quote(db_session, make_quote("q-1"))

        quote = await make_machine().auto_assign("q-1")
        assert quote.assigned_driver_id == "drv-a"

    @pytest.mark.asyncio
    async def test_no_candidate_raises_conflict(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-a", status=DriverStatus.OFFLINE)
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(AllocationConflict) as exc:
            await make_machine().auto_assign("q-1")
        assert exc.value.message == "No driver is available for the selected dates"


# ── Simple transitions ────────────────────────────────────────────────


class TestTransitions:
    @pytest.mark.asyncio
    async def test_submit_draft(self, db_session, catalogue, make_machine, collaborators):
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.DRAFT))

        quote = await make_machine().submit("q-1")
        assert quote.status == QuoteStatus.SUBMITTED
        assert _emitted(collaborators.events) == ["quote.submitted"]

    @pytest.mark.asyncio
    async def test_submit_without_vehicles(self, db_session, make_machine):
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.DRAFT, vehicles=()))

        with pytest.raises(IncompleteQuote):
            await make_machine().submit("q-1")

    @pytest.mark.asyncio
    async def test_submit_paid_quote(self, db_session, make_machine):
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.PAID))

        with pytest.raises(QuoteNotEditable):
            await make_machine().submit("q-1")

    @pytest.mark.asyncio
    async def test_submit_with_auto_assign(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.DRAFT))

        quote = await make_machine().submit("q-1", auto_assign=True)
        assert quote.status == QuoteStatus.QUOTED
        assert quote.assigned_driver_id == "drv-1"

    @pytest.mark.asyncio
    async def test_submit_with_auto_assign_and_no_driver(self, db_session, catalogue, make_machine):
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.DRAFT))

        quote = await make_machine().submit("q-1", auto_assign=True)
        assert quote.status == QuoteStatus.SUBMITTED

    @pytest.mark.asyncio
    async def test_negotiation_then_reprice(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1", driver_id="drv-1"))
        machine = make_machine()

        assert (await machine.start_negotiation("q-1")).status == QuoteStatus.NEGOTIATING
        assert (await machine.accept("q-1")).status == QuoteStatus.ACCEPTED
        quote = await machine.reprice("q-1")

        assert quote.status == QuoteStatus.QUOTED
        assert quote.assigned_driver_id == "drv-1"
        assert quote.pricing.total == 16060

    @pytest.mark.asyncio
    async def test_reprice_requires_accepted(self, db_session, make_machine):
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(InvalidStateTransition):
            await make_machine().reprice("q-1")

    @pytest.mark.asyncio
    async def test_reject_quoted_is_invalid(self, db_session, make_machine):
        await add_quote(
            db_session, make_quote("q-1", status=QuoteStatus.QUOTED, quoted_at=NOW)
        )

        with pytest.raises(InvalidStateTransition):
            await make_machine().reject("q-1")

    @pytest.mark.asyncio
    async def test_reject_negotiating(self, db_session, make_machine):
        await add_quote(db_session, make_quote("q-1", status=QuoteStatus.NEGOTIATING))

        quote = await make_machine().reject("q-1")
        assert quote.status == QuoteStatus.REJECTED


# ── Payment ───────────────────────────────────────────────────────────


class TestPay:
    @pytest.mark.asyncio
    async def test_pay_creates_reservation_snapshot(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1", amenities=("amn-1",)))
        quoted = await make_machine().assign_driver("q-1", "drv-1")

        reservation = await make_machine(NOW + 2 * H).pay("q-1", "pay-123")

        assert reservation.quote_id == "q-1"
        assert reservation.status == ReservationStatus.CONFIRMED
        assert reservation.assigned_driver_id == "drv-1"
        assert reservation.original_driver_id == "drv-1"
        assert reservation.original_pricing == quoted.pricing
        assert reservation.payment_reference == "pay-123"
        assert reservation.selected_amenities == ("amn-1",)
        assert reservation.itinerary == quoted.itinerary
        assert reservation.confirmed_at == NOW + 2 * H

        stored = await QuoteRepository(db_session).get_by_id("q-1")
        assert stored.status == QuoteStatus.PAID
        assert "quote.paid" in _emitted(collaborators.events)

    @pytest.mark.asyncio
    async def test_pay_is_idempotent(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        await make_machine().assign_driver("q-1", "drv-1")

        first = await make_machine(NOW + H).pay("q-1")
        second = await make_machine(NOW + 2 * H).pay("q-1")
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_pay_just_inside_window(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        await make_machine().assign_driver("q-1", "drv-1")

        reservation = await make_machine(NOW + timedelta(hours=23, minutes=59)).pay("q-1")
        assert reservation.quote_id == "q-1"

    @pytest.mark.asyncio
    async def test_pay_after_window_expires_quote(self, db_session, catalogue, make_machine):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        await make_machine().assign_driver("q-1", "drv-1")

        with pytest.raises(WindowExpired):
            await make_machine(NOW + timedelta(hours=24, minutes=1)).pay("q-1")

        stored = await QuoteRepository(db_session).get_by_id("q-1")
        assert stored.status == QuoteStatus.EXPIRED
        assert stored.assigned_driver_id is None

    @pytest.mark.asyncio
    async def test_pay_after_worker_expired_quote(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        await make_machine().assign_driver("q-1", "drv-1")
        later = NOW + timedelta(hours=24, minutes=1)
        assert await expire_quote(db_session, "q-1", NOW, later, timedelta(hours=24))

        with pytest.raises(WindowExpired) as exc:
            await make_machine(later).pay("q-1")

        assert exc.value.status_code == 410
        assert exc.value.code == "QUOTE_EXPIRED"

    @pytest.mark.asyncio
    async def test_pay_lapsed_quote_emits_expiry(
        self, db_session, catalogue, make_machine, collaborators
    ):
        await add_driver(db_session, "drv-1")
        await add_quote(db_session, make_quote("q-1"))
        await make_machine().assign_driver("q-1", "drv-1")

        with pytest.raises(WindowExpired):
            await make_machine(NOW + timedelta(hours=25)).pay("q-1")

        assert _emitted(collaborators.events) == ["quote.quoted", "quote.expired"]

    @pytest.mark.asyncio
    async def test_pay_requires_quoted(self, db_session, make_machine):
        await add_quote(db_session, make_quote("q-1"))

        with pytest.raises(InvalidStateTransition):
            await make_machine().pay("q-1")
