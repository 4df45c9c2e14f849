"""
Integration tests for the REST API endpoints.

Uses the in-memory SQLite database from ``conftest``.  The DB session
dependency is overridden, and the quote service is built without Redis
(expiry scheduling is an AsyncMock, no driver lock).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from charterbook.domain.entities import Reservation, SelectedVehicle
from charterbook.domain.enums import DriverStatus, QuoteStatus, TripType
from charterbook.infrastructure.repositories import ReservationRepository
from charterbook.services.quotes import QuoteStateMachine
from tests.factories import add_driver, add_quote, leg_stops, make_quote, seed_catalogue

# the API runs on the wall clock, so fixtures are placed relative to it
START = (datetime.now(timezone.utc) + timedelta(days=10)).replace(
    hour=10, minute=0, second=0, microsecond=0
)


def _ts(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ── Fixture ───────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(session_factory):
    """AsyncClient backed by SQLite with a Redis-free quote service."""
    async with session_factory() as session:
        await seed_catalogue(session)
        await add_driver(session, "drv-1")
        await add_driver(session, "drv-2", status=DriverStatus.SUSPENDED)
        await add_quote(session, make_quote("q-1", start=START))

    with (
        patch(
            "charterbook.workers.expiry.start_expiry_loop",
            new_callable=AsyncMock,
        ),
        patch(
            "charterbook.workers.expiry.stop_expiry_loop",
            new_callable=AsyncMock,
        ),
    ):
        # DB session dependency
        async def _test_db():
            async with session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        from charterbook.api.app import create_app
        from charterbook.api.dependencies import get_db, get_quote_service

        async def _test_quote_service(db: AsyncSession = Depends(get_db)):
            return QuoteStateMachine(db, expiry_scheduler=AsyncMock())

        app = create_app()
        app.dependency_overrides[get_db] = _test_db
        app.dependency_overrides[get_quote_service] = _test_quote_service

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


# ── Tests ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/api/v1/admin/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_get_quote(client: AsyncClient):
    resp = await client.get("/api/v1/quotes/q-1")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "submitted"
    assert data["pricing"] is None
    assert data["payment_window_ends_at"] is None
    assert len(data["itinerary"]) == 2
    assert _ts(data["trip_start_at"]) == START


@pytest.mark.asyncio
async def test_get_quote_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/quotes/q-missing")
    assert resp.status_code == 404
    assert resp.json()["code"] == "QUOTE_NOT_FOUND"


@pytest.mark.asyncio
async def test_assign_driver(client: AsyncClient):
    resp = await client.post(
        "/api/v1/quotes/q-1/assign-driver", json={"driver_id": "drv-1"}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "quoted"
    assert data["assigned_driver_id"] == "drv-1"
    assert data["pricing"]["driver_charge"] == 2600
    assert data["pricing"]["total"] == 16060
    ends = _ts(data["payment_window_ends_at"])
    assert ends - _ts(data["quoted_at"]) == timedelta(hours=24)


@pytest.mark.asyncio
async def test_assign_ineligible_driver(client: AsyncClient):
    resp = await client.post(
        "/api/v1/quotes/q-1/assign-driver", json={"driver_id": "drv-2"}
    )
    assert resp.status_code == 409
    assert resp.json()["code"] == "DRIVER_NOT_ELIGIBLE"


@pytest.mark.asyncio
async def test_assign_requires_driver_id(client: AsyncClient):
    resp = await client.post("/api/v1/quotes/q-1/assign-driver", json={})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_auto_assign(client: AsyncClient):
    resp = await client.post("/api/v1/quotes/q-1/auto-assign")
    assert resp.status_code == 200
    assert resp.json()["assigned_driver_id"] == "drv-1"


@pytest.mark.asyncio
async def test_driver_eligibility(client: AsyncClient):
    ok = await client.get("/api/v1/drivers/drv-1/eligibility", params={"quote_id": "q-1"})
    blocked = await client.get(
        "/api/v1/drivers/drv-2/eligibility", params={"quote_id": "q-1"}
    )

    assert ok.status_code == 200
    assert ok.json() == {"can_assign": True, "reason": None}
    assert blocked.status_code == 200
    assert blocked.json()["can_assign"] is False
    assert "suspended" in blocked.json()["reason"]


@pytest.mark.asyncio
async def test_pay_flow_is_idempotent(client: AsyncClient):
    await client.post("/api/v1/quotes/q-1/assign-driver", json={"driver_id": "drv-1"})

    first = await client.post(
        "/api/v1/quotes/q-1/pay", json={"payment_reference": "pay-1"}
    )
    second = await client.post("/api/v1/quotes/q-1/pay", json={})

    assert first.status_code == 200
    data = first.json()
    assert data["status"] == "confirmed"
    assert data["original_pricing"]["total"] == 16060
    assert data["payment_reference"] == "pay-1"
    assert second.json()["id"] == data["id"]

    quote = await client.get("/api/v1/quotes/q-1")
    assert quote.json()["status"] == "paid"


@pytest.mark.asyncio
async def test_pay_unquoted_quote(client: AsyncClient):
    resp = await client.post("/api/v1/quotes/q-1/pay", json={})
    assert resp.status_code == 409
    assert resp.json()["code"] == "INVALID_QUOTE_STATUS"


@pytest.mark.asyncio
async def test_pay_lapsed_quote_returns_410(client: AsyncClient, session_factory):
    async with session_factory() as session:
        await add_quote(
            session,
            make_quote(
                "q-old",
                start=START,
                status=QuoteStatus.QUOTED,
                driver_id="drv-1",
                vehicles=("veh-2",),
                quoted_at=datetime.now(timezone.utc) - timedelta(hours=25),
            ),
        )

    resp = await client.post("/api/v1/quotes/q-old/pay", json={})
    assert resp.status_code == 410
    assert resp.json()["code"] == "QUOTE_EXPIRED"

    quote = await client.get("/api/v1/quotes/q-old")
    assert quote.json()["status"] == "expired"

    retry = await client.post("/api/v1/quotes/q-old/pay", json={})
    assert retry.status_code == 410
    assert retry.json()["code"] == "QUOTE_EXPIRED"


@pytest.mark.asyncio
async def test_trip_status(client: AsyncClient, session_factory):
    async with session_factory() as session:
        await ReservationRepository(session).create(
            Reservation(
                id="r-1",
                quote_id="q-9",
                user_id="user-1",
                trip_type=TripType.ONE_WAY,
                selected_vehicles=(SelectedVehicle("veh-1"),),
                itinerary=leg_stops(START),
            )
        )
        await session.commit()

    resp = await client.get("/api/v1/reservations/r-1/trip-status")
    assert resp.status_code == 200
    data = resp.json()
    assert data["state"] == "UPCOMING"
    assert data["chat_enabled"] is False
    assert data["privacy"] == "NAME_ONLY"


@pytest.mark.asyncio
async def test_trip_status_not_found(client: AsyncClient):
    resp = await client.get("/api/v1/reservations/r-missing/trip-status")
    assert resp.status_code == 404
    assert resp.json()["code"] == "RESERVATION_NOT_FOUND"
