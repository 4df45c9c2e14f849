"""Initial schema: drivers, catalogue, pricing configs, quotes, reservations.

Revision ID: 001
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _stop_columns() -> list:
    return [
        sa.Column("trip_leg", sa.String(20), nullable=False),
        sa.Column("stop_order", sa.Integer, nullable=False),
        sa.Column("stop_type", sa.String(20), nullable=False, server_default="stop"),
        sa.Column("location_name", sa.String(255), nullable=False, server_default=""),
        sa.Column("latitude", sa.Float, nullable=False, server_default="0"),
        sa.Column("longitude", sa.Float, nullable=False, server_default="0"),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "is_driver_staying", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("staying_duration_hours", sa.Float, nullable=True),
    ]


def _timestamps() -> list:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    # ── drivers ───────────────────────────────────────────────────────
    op.create_table(
        "drivers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("full_name", sa.String(120), nullable=False, server_default=""),
        sa.Column("status", sa.String(20), nullable=False, server_default="available"),
        sa.Column("is_onboarded", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("salary", sa.Float, nullable=False, server_default="0"),
        sa.Column("last_assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("idx_drivers_status", "drivers", ["status"])
    op.create_index("idx_drivers_last_assigned", "drivers", ["last_assigned_at"])

    # ── vehicles / amenities ──────────────────────────────────────────
    op.create_table(
        "vehicles",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column("capacity", sa.Integer, nullable=False, server_default="0"),
        sa.Column("base_fare", sa.Float, nullable=False, server_default="0"),
        sa.Column("maintenance_cost", sa.Float, nullable=False, server_default="0"),
        sa.Column("fuel_consumption", sa.Float, nullable=False, server_default="0"),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_table(
        "amenities",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(120), nullable=False, server_default=""),
        sa.Column("price", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_paid", sa.Boolean, nullable=False, server_default=sa.true()),
    )

    # ── pricing_configs ───────────────────────────────────────────────
    op.create_table(
        "pricing_configs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("version", sa.Integer, unique=True, nullable=False),
        sa.Column("fuel_price", sa.Float, nullable=False),
        sa.Column("average_driver_rate_per_hour", sa.Float, nullable=False),
        sa.Column("staying_charge_per_day", sa.Float, nullable=False, server_default="0"),
        sa.Column("tax_percentage", sa.Float, nullable=False),
        sa.Column("night_charge_per_leg", sa.Float, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_by", sa.String(36), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now()
        ),
    )
    op.create_index("idx_pricing_configs_active", "pricing_configs", ["is_active"])

    # ── quotes ────────────────────────────────────────────────────────
    op.create_table(
        "quotes",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("trip_type", sa.String(20), nullable=False, server_default="one_way"),
        sa.Column("status", sa.String(20), nullable=False, server_default="draft"),
        sa.Column("trip_name", sa.String(200), nullable=True),
        sa.Column("passenger_count", sa.Integer, nullable=True),
        sa.Column("selected_vehicles", sa.JSON, nullable=False),
        sa.Column("selected_amenities", sa.JSON, nullable=False),
        sa.Column("route_data", sa.JSON, nullable=True),
        sa.Column("pricing", sa.JSON, nullable=True),
        sa.Column(
            "assigned_driver_id",
            sa.String(36),
            sa.ForeignKey("drivers.id"),
            nullable=True,
        ),
        sa.Column("actual_driver_rate", sa.Float, nullable=True),
        sa.Column("quoted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pricing_last_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean, nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("idx_quotes_status", "quotes", ["status"])
    op.create_index("idx_quotes_user", "quotes", ["user_id"])
    op.create_index("idx_quotes_driver", "quotes", ["assigned_driver_id"])
    op.create_index("idx_quotes_created", "quotes", ["created_at"])

    op.create_table(
        "quote_stops",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("quote_id", sa.String(36), sa.ForeignKey("quotes.id"), nullable=False),
        *_stop_columns(),
        sa.UniqueConstraint(
            "quote_id", "trip_leg", "stop_order", name="uq_quote_stop_order"
        ),
    )
    op.create_index(
        "idx_quote_stops_window", "quote_stops", ["quote_id", "arrival_time"]
    )

    # ── reservations ──────────────────────────────────────────────────
    op.create_table(
        "reservations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "quote_id",
            sa.String(36),
            sa.ForeignKey("quotes.id"),
            unique=True,
            nullable=False,
        ),
        sa.Column("user_id", sa.String(36), nullable=False),
        sa.Column("trip_type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="confirmed"),
        sa.Column("selected_vehicles", sa.JSON, nullable=False),
        sa.Column("selected_amenities", sa.JSON, nullable=False),
        sa.Column("route_data", sa.JSON, nullable=True),
        sa.Column("original_pricing", sa.JSON, nullable=True),
        sa.Column(
            "assigned_driver_id",
            sa.String(36),
            sa.ForeignKey("drivers.id"),
            nullable=True,
        ),
        sa.Column("original_driver_id", sa.String(36), nullable=True),
        sa.Column("payment_reference", sa.String(120), nullable=True),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_reservations_status", "reservations", ["status"])
    op.create_index("idx_reservations_driver", "reservations", ["assigned_driver_id"])

    op.create_table(
        "reservation_stops",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "reservation_id",
            sa.String(36),
            sa.ForeignKey("reservations.id"),
            nullable=False,
        ),
        *_stop_columns(),
        sa.UniqueConstraint(
            "reservation_id",
            "trip_leg",
            "stop_order",
            name="uq_reservation_stop_order",
        ),
    )
    op.create_index(
        "idx_reservation_stops_window",
        "reservation_stops",
        ["reservation_id", "arrival_time"],
    )


def downgrade() -> None:
    op.drop_table("reservation_stops")
    op.drop_table("reservations")
    op.drop_table("quote_stops")
    op.drop_table("quotes")
    op.drop_table("pricing_configs")
    op.drop_table("amenities")
    op.drop_table("vehicles")
    op.drop_table("drivers")
