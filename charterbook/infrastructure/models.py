"""
SQLAlchemy ORM models  (maps to PostgreSQL).

Tables
------
* ``drivers``            -- operators with status / onboarding / hourly rate
* ``vehicles``           -- fleet catalogue used for pricing and conflicts
* ``amenities``          -- optional paid extras
* ``pricing_configs``    -- append-only versions, exactly one active
* ``quotes``             -- priced trip proposals (status state machine)
* ``quote_stops``        -- ordered itinerary per quote and leg
* ``reservations``       -- paid bookings, one per quote
* ``reservation_stops``  -- itinerary snapshot copied at payment time

Structured documents (selected vehicles, route data, pricing) live in
JSON columns.

Indexes
-------
* **B-Tree** on ``status`` and ``assigned_driver_id`` for the booked-set
  range queries, and on ``(quote_id, arrival_time)`` for window
  aggregation.
"""

from datetime import timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.types import TypeDecorator

from .database import Base
from charterbook.domain.enums import (
    DriverStatus,
    QuoteStatus,
    ReservationStatus,
    StopType,
    TripLeg,
    TripType,
)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC timestamps on every backend.

    SQLite has no tz support: values are stored as naive UTC and the
    ``tzinfo`` is re-attached on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _enum(enum_cls):
    # persist the lowercase .value, not the member name
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=20,
    )


class DriverModel(Base):
    __tablename__ = "drivers"

    id = Column(String(36), primary_key=True)
    full_name = Column(String(120), nullable=False, default="")
    status = Column(_enum(DriverStatus), default=DriverStatus.AVAILABLE, nullable=False)
    is_onboarded = Column(Boolean, default=False, nullable=False)
    salary = Column(Float, default=0.0, nullable=False)  # per hour
    last_assigned_at = Column(UTCDateTime, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_drivers_status", "status"),
        Index("idx_drivers_last_assigned", "last_assigned_at"),
    )


class VehicleModel(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True)
    name = Column(String(120), nullable=False, default="")
    capacity = Column(Integer, default=0, nullable=False)
    base_fare = Column(Float, default=0.0, nullable=False)
    maintenance_cost = Column(Float, default=0.0, nullable=False)
    fuel_consumption = Column(Float, default=0.0, nullable=False)  # l / km
    created_at = Column(UTCDateTime, server_default=func.now())


class AmenityModel(Base):
    __tablename__ = "amenities"

    id = Column(String(36), primary_key=True)
    name = Column(String(120), nullable=False, default="")
    price = Column(Float, default=0.0, nullable=False)
    is_paid = Column(Boolean, default=True, nullable=False)


class PricingConfigModel(Base):
    __tablename__ = "pricing_configs"

    id = Column(String(36), primary_key=True)
    version = Column(Integer, unique=True, nullable=False)
    fuel_price = Column(Float, nullable=False)
    average_driver_rate_per_hour = Column(Float, nullable=False)
    staying_charge_per_day = Column(Float, default=0.0, nullable=False)
    tax_percentage = Column(Float, nullable=False)
    night_charge_per_leg = Column(Float, default=0.0, nullable=False)
    is_active = Column(Boolean, default=False, nullable=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (Index("idx_pricing_configs_active", "is_active"),)


class QuoteModel(Base):
    __tablename__ = "quotes"

    id = Column(String(36), primary_key=True)
    user_id = Column(String(36), nullable=False)
    trip_type = Column(_enum(TripType), default=TripType.ONE_WAY, nullable=False)
    status = Column(_enum(QuoteStatus), default=QuoteStatus.DRAFT, nullable=False)
    trip_name = Column(String(200), nullable=True)
    passenger_count = Column(Integer, nullable=True)

    selected_vehicles = Column(JSON, nullable=False, default=list)
    selected_amenities = Column(JSON, nullable=False, default=list)
    route_data = Column(JSON, nullable=True)
    pricing = Column(JSON, nullable=True)

    assigned_driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=True)
    actual_driver_rate = Column(Float, nullable=True)
    quoted_at = Column(UTCDateTime, nullable=True)
    pricing_last_updated_at = Column(UTCDateTime, nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)

    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_quotes_status", "status"),
        Index("idx_quotes_user", "user_id"),
        Index("idx_quotes_driver", "assigned_driver_id"),
        Index("idx_quotes_created", "created_at"),
    )


class QuoteStopModel(Base):
    __tablename__ = "quote_stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    quote_id = Column(String(36), ForeignKey("quotes.id"), nullable=False)
    trip_leg = Column(_enum(TripLeg), nullable=False)
    stop_order = Column(Integer, nullable=False)
    stop_type = Column(_enum(StopType), default=StopType.STOP, nullable=False)
    location_name = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=False, default=0.0)
    longitude = Column(Float, nullable=False, default=0.0)
    arrival_time = Column(UTCDateTime, nullable=False)
    departure_time = Column(UTCDateTime, nullable=True)
    is_driver_staying = Column(Boolean, default=False, nullable=False)
    staying_duration_hours = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("quote_id", "trip_leg", "stop_order", name="uq_quote_stop_order"),
        Index("idx_quote_stops_window", "quote_id", "arrival_time"),
    )


class ReservationModel(Base):
    __tablename__ = "reservations"

    id = Column(String(36), primary_key=True)
    quote_id = Column(String(36), ForeignKey("quotes.id"), unique=True, nullable=False)
    user_id = Column(String(36), nullable=False)
    trip_type = Column(_enum(TripType), nullable=False)
    status = Column(
        _enum(ReservationStatus), default=ReservationStatus.CONFIRMED, nullable=False
    )

    selected_vehicles = Column(JSON, nullable=False, default=list)
    selected_amenities = Column(JSON, nullable=False, default=list)
    route_data = Column(JSON, nullable=True)
    original_pricing = Column(JSON, nullable=True)

    assigned_driver_id = Column(String(36), ForeignKey("drivers.id"), nullable=True)
    original_driver_id = Column(String(36), nullable=True)
    payment_reference = Column(String(120), nullable=True)

    confirmed_at = Column(UTCDateTime, nullable=True)
    started_at = Column(UTCDateTime, nullable=True)
    completed_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("idx_reservations_status", "status"),
        Index("idx_reservations_driver", "assigned_driver_id"),
    )


class ReservationStopModel(Base):
    __tablename__ = "reservation_stops"

    id = Column(Integer, primary_key=True, autoincrement=True)
    reservation_id = Column(String(36), ForeignKey("reservations.id"), nullable=False)
    trip_leg = Column(_enum(TripLeg), nullable=False)
    stop_order = Column(Integer, nullable=False)
    stop_type = Column(_enum(StopType), default=StopType.STOP, nullable=False)
    location_name = Column(String(255), nullable=False, default="")
    latitude = Column(Float, nullable=False, default=0.0)
    longitude = Column(Float, nullable=False, default=0.0)
    arrival_time = Column(UTCDateTime, nullable=False)
    departure_time = Column(UTCDateTime, nullable=True)
    is_driver_staying = Column(Boolean, default=False, nullable=False)
    staying_duration_hours = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "reservation_id", "trip_leg", "stop_order", name="uq_reservation_stop_order"
        ),
        Index("idx_reservation_stops_window", "reservation_id", "arrival_time"),
    )
