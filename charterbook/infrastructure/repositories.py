"""
Repository Pattern -- abstracts DB access so domain logic stays DB-agnostic.

Each repository receives an ``AsyncSession`` (unit-of-work), exposes
domain-relevant queries only and hands back frozen domain records, never
ORM rows.  Status changes are *conditional* updates (``WHERE status IN
...``) that report whether they matched, so callers can detect a lost
race instead of overwriting it.
"""

from __future__ import annotations

import dataclasses
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    AmenityModel,
    DriverModel,
    PricingConfigModel,
    QuoteModel,
    QuoteStopModel,
    ReservationModel,
    ReservationStopModel,
    VehicleModel,
)
from charterbook.domain.entities import (
    PAYMENT_WINDOW,
    Amenity,
    Driver,
    ItineraryStop,
    PricingBreakdown,
    PricingConfig,
    Quote,
    Reservation,
    RouteData,
    RouteLeg,
    SelectedVehicle,
    Vehicle,
)
from charterbook.domain.enums import (
    BLOCKING_QUOTE_STATUSES,
    BLOCKING_RESERVATION_STATUSES,
    DriverStatus,
    QuoteStatus,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Document (de)serialisation ────────────────────────────────────────


def pricing_to_doc(pricing: Optional[PricingBreakdown]) -> Optional[dict]:
    return dataclasses.asdict(pricing) if pricing is not None else None


def pricing_from_doc(doc: Optional[dict]) -> Optional[PricingBreakdown]:
    if not doc:
        return None
    known = {f.name for f in dataclasses.fields(PricingBreakdown)}
    return PricingBreakdown(**{k: v for k, v in doc.items() if k in known})


def route_to_doc(route: Optional[RouteData]) -> Optional[dict]:
    if route is None:
        return None
    doc = {}
    if route.outbound is not None:
        doc["outbound"] = dataclasses.asdict(route.outbound)
    if route.return_leg is not None:
        doc["return"] = dataclasses.asdict(route.return_leg)
    return doc


def route_from_doc(doc: Optional[dict]) -> Optional[RouteData]:
    if doc is None:
        return None
    outbound = doc.get("outbound")
    ret = doc.get("return")
    return RouteData(
        outbound=RouteLeg(**outbound) if outbound else None,
        return_leg=RouteLeg(**ret) if ret else None,
    )


def vehicles_to_doc(vehicles: Iterable[SelectedVehicle]) -> list[dict]:
    return [{"vehicle_id": v.vehicle_id, "quantity": v.quantity} for v in vehicles]


def vehicles_from_doc(doc: Optional[list]) -> tuple[SelectedVehicle, ...]:
    return tuple(
        SelectedVehicle(vehicle_id=v["vehicle_id"], quantity=v.get("quantity", 1))
        for v in doc or []
    )


def _stop_from_row(row) -> ItineraryStop:
    return ItineraryStop(
        trip_leg=row.trip_leg,
        stop_order=row.stop_order,
        arrival_time=row.arrival_time,
        stop_type=row.stop_type,
        location_name=row.location_name,
        latitude=row.latitude,
        longitude=row.longitude,
        departure_time=row.departure_time,
        is_driver_staying=row.is_driver_staying,
        staying_duration_hours=row.staying_duration_hours,
    )


def _stop_columns(stop: ItineraryStop) -> dict:
    return dict(
        trip_leg=stop.trip_leg,
        stop_order=stop.stop_order,
        stop_type=stop.stop_type,
        location_name=stop.location_name,
        latitude=stop.latitude,
        longitude=stop.longitude,
        arrival_time=stop.arrival_time,
        departure_time=stop.departure_time,
        is_driver_staying=stop.is_driver_staying,
        staying_duration_hours=stop.staying_duration_hours,
    )


def _window_subquery(stop_model, owner_column):
    """Per-owner allocation range: min(arrival), max(arrival)."""
    return (
        select(
            owner_column.label("owner_id"),
            func.min(stop_model.arrival_time).label("window_start"),
            func.max(stop_model.arrival_time).label("window_end"),
        )
        .group_by(owner_column)
        .subquery()
    )


def _vehicle_ids(rows) -> set[str]:
    ids: set[str] = set()
    for row in rows:
        ids.update(v.vehicle_id for v in vehicles_from_doc(row))
    return ids


# ── Quotes ────────────────────────────────────────────────────────────


class QuoteRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(row: QuoteModel, stops: Sequence[QuoteStopModel]) -> Quote:
        return Quote(
            id=row.id,
            user_id=row.user_id,
            trip_type=row.trip_type,
            status=row.status,
            trip_name=row.trip_name,
            passenger_count=row.passenger_count,
            selected_vehicles=vehicles_from_doc(row.selected_vehicles),
            selected_amenities=tuple(row.selected_amenities or ()),
            route_data=route_from_doc(row.route_data),
            pricing=pricing_from_doc(row.pricing),
            assigned_driver_id=row.assigned_driver_id,
            actual_driver_rate=row.actual_driver_rate,
            quoted_at=row.quoted_at,
            itinerary=tuple(_stop_from_row(s) for s in stops),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    async def create(self, quote: Quote) -> Quote:
        row = QuoteModel(
            id=quote.id or str(uuid.uuid4()),
            user_id=quote.user_id,
            trip_type=quote.trip_type,
            status=quote.status,
            trip_name=quote.trip_name,
            passenger_count=quote.passenger_count,
            selected_vehicles=vehicles_to_doc(quote.selected_vehicles),
            selected_amenities=list(quote.selected_amenities),
            route_data=route_to_doc(quote.route_data),
            pricing=pricing_to_doc(quote.pricing),
            assigned_driver_id=quote.assigned_driver_id,
            actual_driver_rate=quote.actual_driver_rate,
            quoted_at=quote.quoted_at,
            created_at=quote.created_at or _utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        for stop in quote.itinerary:
            self.session.add(QuoteStopModel(quote_id=row.id, **_stop_columns(stop)))
        await self.session.flush()
        return await self.get_by_id(row.id)

    async def get_by_id(self, quote_id: str) -> Optional[Quote]:
        result = await self.session.execute(
            select(QuoteModel).where(
                QuoteModel.id == quote_id, QuoteModel.is_deleted.is_(False)
            )
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        # make sure a re-read sees the latest committed values
        await self.session.refresh(row)
        return self._to_entity(row, await self._stops(quote_id))

    async def _stops(self, quote_id: str) -> list[QuoteStopModel]:
        result = await self.session.execute(
            select(QuoteStopModel)
            .where(QuoteStopModel.quote_id == quote_id)
            .order_by(QuoteStopModel.trip_leg, QuoteStopModel.stop_order)
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        quote_id: str,
        new_status: QuoteStatus,
        expected: Iterable[QuoteStatus],
    ) -> bool:
        """Conditional status write; ``False`` means someone moved it first."""
        result = await self.session.execute(
            update(QuoteModel)
            .where(QuoteModel.id == quote_id, QuoteModel.status.in_(list(expected)))
            .values(status=new_status, updated_at=_utcnow())
        )
        return result.rowcount == 1

    async def mark_quoted(
        self,
        quote_id: str,
        *,
        driver_id: str,
        driver_rate: float,
        pricing: PricingBreakdown,
        quoted_at: datetime,
        expected: Iterable[QuoteStatus],
    ) -> bool:
        """Driver, rate, pricing, ``quoted_at`` and status in one update."""
        result = await self.session.execute(
            update(QuoteModel)
            .where(QuoteModel.id == quote_id, QuoteModel.status.in_(list(expected)))
            .values(
                status=QuoteStatus.QUOTED,
                assigned_driver_id=driver_id,
                actual_driver_rate=driver_rate,
                pricing=pricing_to_doc(pricing),
                pricing_last_updated_at=quoted_at,
                quoted_at=quoted_at,
                updated_at=_utcnow(),
            )
        )
        return result.rowcount == 1

    async def expire_if_quoted(self, quote_id: str, quoted_at: datetime) -> bool:
        """
        QUOTED -> EXPIRED only if the quote still carries *this* quoted_at.
        Driver hold is released; pricing and quoted_at stay for audit.
        """
        result = await self.session.execute(
            update(QuoteModel)
            .where(
                QuoteModel.id == quote_id,
                QuoteModel.status == QuoteStatus.QUOTED,
                QuoteModel.quoted_at == quoted_at,
            )
            .values(
                status=QuoteStatus.EXPIRED,
                assigned_driver_id=None,
                actual_driver_rate=None,
                updated_at=_utcnow(),
            )
        )
        return result.rowcount == 1

    async def find_lapsed_quoted_ids(
        self, now: datetime, window: timedelta = PAYMENT_WINDOW, limit: int = 100
    ) -> list[str]:
        result = await self.session.execute(
            select(QuoteModel.id)
            .where(
                QuoteModel.status == QuoteStatus.QUOTED,
                QuoteModel.quoted_at < now - window,
                QuoteModel.is_deleted.is_(False),
            )
            .order_by(QuoteModel.quoted_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    def _blocking_query(self, columns, start, end, exclude_id, now, window):
        w = _window_subquery(QuoteStopModel, QuoteStopModel.quote_id)
        query = (
            select(*columns)
            .join(w, w.c.owner_id == QuoteModel.id)
            .where(
                QuoteModel.status.in_(list(BLOCKING_QUOTE_STATUSES)),
                QuoteModel.is_deleted.is_(False),
                # a QUOTED quote only blocks while its payment window is open
                or_(
                    QuoteModel.status != QuoteStatus.QUOTED,
                    QuoteModel.quoted_at >= now - window,
                ),
                w.c.window_start <= end,
                w.c.window_end >= start,
            )
        )
        if exclude_id:
            query = query.where(QuoteModel.id != exclude_id)
        return query

    async def find_booked_driver_ids_in_date_range(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
        window: timedelta = PAYMENT_WINDOW,
    ) -> set[str]:
        query = self._blocking_query(
            [QuoteModel.assigned_driver_id], start, end, exclude_id, now or _utcnow(), window
        ).where(QuoteModel.assigned_driver_id.isnot(None))
        result = await self.session.execute(query)
        return set(result.scalars().all())

    async def find_booked_vehicle_ids_in_date_range(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
        window: timedelta = PAYMENT_WINDOW,
    ) -> set[str]:
        query = self._blocking_query(
            [QuoteModel.selected_vehicles], start, end, exclude_id, now or _utcnow(), window
        )
        result = await self.session.execute(query)
        return _vehicle_ids(result.scalars().all())

    def _draft_hold_query(self, columns, start, end, exclude_id, now, hold):
        w = _window_subquery(QuoteStopModel, QuoteStopModel.quote_id)
        query = (
            select(*columns)
            .join(w, w.c.owner_id == QuoteModel.id)
            .where(
                QuoteModel.status == QuoteStatus.DRAFT,
                QuoteModel.is_deleted.is_(False),
                QuoteModel.created_at >= now - hold,
                w.c.window_start <= end,
                w.c.window_end >= start,
            )
        )
        if exclude_id:
            query = query.where(QuoteModel.id != exclude_id)
        return query

    async def find_reserved_vehicle_ids_in_date_range(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
        hold: timedelta = timedelta(minutes=30),
    ) -> set[str]:
        """Soft holds: vehicles in DRAFT quotes created within ``hold``."""
        query = self._draft_hold_query(
            [QuoteModel.selected_vehicles], start, end, exclude_id, now or _utcnow(), hold
        )
        result = await self.session.execute(query)
        return _vehicle_ids(result.scalars().all())

    async def find_reserved_driver_ids_in_date_range(
        self,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
        now: Optional[datetime] = None,
        hold: timedelta = timedelta(minutes=30),
    ) -> set[str]:
        query = self._draft_hold_query(
            [QuoteModel.assigned_driver_id], start, end, exclude_id, now or _utcnow(), hold
        ).where(QuoteModel.assigned_driver_id.isnot(None))
        result = await self.session.execute(query)
        return set(result.scalars().all())


# ── Reservations ──────────────────────────────────────────────────────


class ReservationRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(
        row: ReservationModel, stops: Sequence[ReservationStopModel]
    ) -> Reservation:
        return Reservation(
            id=row.id,
            quote_id=row.quote_id,
            user_id=row.user_id,
            trip_type=row.trip_type,
            status=row.status,
            selected_vehicles=vehicles_from_doc(row.selected_vehicles),
            selected_amenities=tuple(row.selected_amenities or ()),
            route_data=route_from_doc(row.route_data),
            assigned_driver_id=row.assigned_driver_id,
            original_driver_id=row.original_driver_id,
            original_pricing=pricing_from_doc(row.original_pricing),
            payment_reference=row.payment_reference,
            itinerary=tuple(_stop_from_row(s) for s in stops),
            confirmed_at=row.confirmed_at,
            started_at=row.started_at,
            completed_at=row.completed_at,
        )

    async def create(self, reservation: Reservation) -> Reservation:
        row = ReservationModel(
            id=reservation.id,
            quote_id=reservation.quote_id,
            user_id=reservation.user_id,
            trip_type=reservation.trip_type,
            status=reservation.status,
            selected_vehicles=vehicles_to_doc(reservation.selected_vehicles),
            selected_amenities=list(reservation.selected_amenities),
            route_data=route_to_doc(reservation.route_data),
            original_pricing=pricing_to_doc(reservation.original_pricing),
            assigned_driver_id=reservation.assigned_driver_id,
            original_driver_id=reservation.original_driver_id,
            payment_reference=reservation.payment_reference,
            confirmed_at=reservation.confirmed_at,
            started_at=reservation.started_at,
            completed_at=reservation.completed_at,
        )
        self.session.add(row)
        await self.session.flush()
        for stop in reservation.itinerary:
            self.session.add(
                ReservationStopModel(reservation_id=row.id, **_stop_columns(stop))
            )
        await self.session.flush()
        return await self.get_by_id(row.id)

    async def get_by_id(self, reservation_id: str) -> Optional[Reservation]:
        row = await self.session.get(ReservationModel, reservation_id)
        if row is None:
            return None
        return self._to_entity(row, await self._stops(reservation_id))

    async def get_by_quote_id(self, quote_id: str) -> Optional[Reservation]:
        result = await self.session.execute(
            select(ReservationModel).where(ReservationModel.quote_id == quote_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            return None
        return self._to_entity(row, await self._stops(row.id))

    async def _stops(self, reservation_id: str) -> list[ReservationStopModel]:
        result = await self.session.execute(
            select(ReservationStopModel)
            .where(ReservationStopModel.reservation_id == reservation_id)
            .order_by(ReservationStopModel.trip_leg, ReservationStopModel.stop_order)
        )
        return list(result.scalars().all())

    def _blocking_query(self, columns, start, end, exclude_quote_id):
        w = _window_subquery(ReservationStopModel, ReservationStopModel.reservation_id)
        query = (
            select(*columns)
            .join(w, w.c.owner_id == ReservationModel.id)
            .where(
                ReservationModel.status.in_(list(BLOCKING_RESERVATION_STATUSES)),
                w.c.window_start <= end,
                w.c.window_end >= start,
            )
        )
        if exclude_quote_id:
            query = query.where(
                ReservationModel.id != exclude_quote_id,
                ReservationModel.quote_id != exclude_quote_id,
            )
        return query

    async def find_booked_driver_ids_in_date_range(
        self, start: datetime, end: datetime, exclude_id: Optional[str] = None
    ) -> set[str]:
        query = self._blocking_query(
            [ReservationModel.assigned_driver_id], start, end, exclude_id
        ).where(ReservationModel.assigned_driver_id.isnot(None))
        result = await self.session.execute(query)
        return set(result.scalars().all())

    async def find_booked_vehicle_ids_in_date_range(
        self, start: datetime, end: datetime, exclude_id: Optional[str] = None
    ) -> set[str]:
        query = self._blocking_query(
            [ReservationModel.selected_vehicles], start, end, exclude_id
        )
        result = await self.session.execute(query)
        return _vehicle_ids(result.scalars().all())


# ── Drivers ───────────────────────────────────────────────────────────


class DriverRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(row: DriverModel) -> Driver:
        return Driver(
            id=row.id,
            full_name=row.full_name,
            status=row.status,
            is_onboarded=row.is_onboarded,
            salary=row.salary,
            last_assigned_at=row.last_assigned_at,
        )

    async def create(self, driver: Driver) -> Driver:
        row = DriverModel(
            id=driver.id,
            full_name=driver.full_name,
            status=driver.status,
            is_onboarded=driver.is_onboarded,
            salary=driver.salary,
            last_assigned_at=driver.last_assigned_at,
        )
        self.session.add(row)
        await self.session.flush()
        return self._to_entity(row)

    async def get_by_id(self, driver_id: str) -> Optional[Driver]:
        row = await self.session.get(DriverModel, driver_id)
        if row is None or row.is_deleted:
            return None
        await self.session.refresh(row)
        return self._to_entity(row)

    async def find_available_drivers(self) -> list[Driver]:
        """AVAILABLE + onboarded, least recently assigned first (nulls first)."""
        result = await self.session.execute(
            select(DriverModel)
            .where(
                DriverModel.status == DriverStatus.AVAILABLE,
                DriverModel.is_onboarded.is_(True),
                DriverModel.is_deleted.is_(False),
            )
            .order_by(
                DriverModel.last_assigned_at.isnot(None),
                DriverModel.last_assigned_at,
                DriverModel.id,
            )
        )
        return [self._to_entity(r) for r in result.scalars().all()]

    async def update_last_assigned_at(self, driver_id: str, at: datetime) -> None:
        result = await self.session.execute(
            update(DriverModel)
            .where(DriverModel.id == driver_id)
            .values(last_assigned_at=at, updated_at=_utcnow())
        )
        if result.rowcount == 0:
            raise LookupError(f"Driver with id {driver_id} not found")


# ── Catalogue ─────────────────────────────────────────────────────────


class VehicleRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, vehicle: Vehicle) -> Vehicle:
        self.session.add(VehicleModel(**dataclasses.asdict(vehicle)))
        await self.session.flush()
        return vehicle

    async def get_by_ids(self, vehicle_ids: Iterable[str]) -> dict[str, Vehicle]:
        ids = list(vehicle_ids)
        if not ids:
            return {}
        result = await self.session.execute(
            select(VehicleModel).where(VehicleModel.id.in_(ids))
        )
        return {
            r.id: Vehicle(
                id=r.id,
                name=r.name,
                capacity=r.capacity,
                base_fare=r.base_fare,
                maintenance_cost=r.maintenance_cost,
                fuel_consumption=r.fuel_consumption,
            )
            for r in result.scalars().all()
        }


class AmenityRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, amenity: Amenity) -> Amenity:
        self.session.add(AmenityModel(**dataclasses.asdict(amenity)))
        await self.session.flush()
        return amenity

    async def get_by_ids(self, amenity_ids: Iterable[str]) -> list[Amenity]:
        ids = list(amenity_ids)
        if not ids:
            return []
        result = await self.session.execute(
            select(AmenityModel).where(AmenityModel.id.in_(ids)).order_by(AmenityModel.id)
        )
        return [
            Amenity(id=r.id, name=r.name, price=r.price, is_paid=r.is_paid)
            for r in result.scalars().all()
        ]


class PricingConfigRepository:
    """Append-only versions; exactly one is active at a time."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def _to_entity(row: PricingConfigModel) -> PricingConfig:
        return PricingConfig(
            id=row.id,
            version=row.version,
            fuel_price=row.fuel_price,
            average_driver_rate_per_hour=row.average_driver_rate_per_hour,
            staying_charge_per_day=row.staying_charge_per_day,
            tax_percentage=row.tax_percentage,
            night_charge_per_leg=row.night_charge_per_leg,
            is_active=row.is_active,
            created_at=row.created_at,
        )

    async def find_active(self) -> Optional[PricingConfig]:
        result = await self.session.execute(
            select(PricingConfigModel)
            .where(PricingConfigModel.is_active.is_(True))
            .order_by(PricingConfigModel.version.desc())
            .limit(1)
        )
        row = result.scalar_one_or_none()
        return self._to_entity(row) if row else None

    async def create_version(
        self,
        *,
        fuel_price: float,
        average_driver_rate_per_hour: float,
        tax_percentage: float,
        night_charge_per_leg: float,
        staying_charge_per_day: float = 0.0,
        created_by: Optional[str] = None,
    ) -> PricingConfig:
        latest = await self.session.execute(select(func.max(PricingConfigModel.version)))
        row = PricingConfigModel(
            id=str(uuid.uuid4()),
            version=(latest.scalar() or 0) + 1,
            fuel_price=fuel_price,
            average_driver_rate_per_hour=average_driver_rate_per_hour,
            staying_charge_per_day=staying_charge_per_day,
            tax_percentage=tax_percentage,
            night_charge_per_leg=night_charge_per_leg,
            is_active=False,
            created_by=created_by,
            created_at=_utcnow(),
        )
        self.session.add(row)
        await self.session.flush()
        return self._to_entity(row)

    async def activate(self, version: int) -> PricingConfig:
        row = (
            await self.session.execute(
                select(PricingConfigModel).where(PricingConfigModel.version == version)
            )
        ).scalar_one_or_none()
        if row is None:
            raise LookupError(f"Pricing config version {version} not found")
        await self.session.execute(
            update(PricingConfigModel)
            .where(PricingConfigModel.version != version)
            .values(is_active=False)
        )
        row.is_active = True
        await self.session.flush()
        return self._to_entity(row)
