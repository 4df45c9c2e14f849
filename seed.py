"""
Seed script -- populates the database with sample data for reviewers.

Run after migrations:
    python seed.py

Creates:
  - an active pricing config (version 1)
  - 4 vehicles and 3 amenities
  - 5 drivers (mix of AVAILABLE, ONTRIP, SUSPENDED, not onboarded)
  - 2 submitted quotes (one-way and two-way) ready for driver assignment
"""

import asyncio
from datetime import datetime, timedelta, timezone

from sqlalchemy import text

from charterbook.domain.entities import (
    Amenity,
    Driver,
    ItineraryStop,
    Quote,
    RouteData,
    RouteLeg,
    SelectedVehicle,
    Vehicle,
)
from charterbook.domain.enums import (
    DriverStatus,
    QuoteStatus,
    StopType,
    TripLeg,
    TripType,
)
from charterbook.infrastructure.database import async_session_factory, engine
from charterbook.infrastructure.repositories import (
    AmenityRepository,
    DriverRepository,
    PricingConfigRepository,
    QuoteRepository,
    VehicleRepository,
)


VEHICLES = [
    Vehicle("veh-coach-50", "Coach 50", 50, 15000.0, 2000.0, 0.35),
    Vehicle("veh-coach-35", "Coach 35", 35, 11000.0, 1500.0, 0.28),
    Vehicle("veh-mini-20", "Minibus 20", 20, 7000.0, 900.0, 0.18),
    Vehicle("veh-van-12", "Van 12", 12, 4000.0, 500.0, 0.12),
]

AMENITIES = [
    Amenity("amn-wifi", "Wi-Fi", 500.0, True),
    Amenity("amn-water", "Bottled water", 300.0, True),
    Amenity("amn-ac", "Air conditioning", 0.0, False),
]

DRIVERS = [
    Driver("drv-001", "Samuel Okafor", DriverStatus.AVAILABLE, True, 650.0),
    Driver("drv-002", "Lena Fischer", DriverStatus.AVAILABLE, True, 600.0),
    Driver("drv-003", "Tomás Rivera", DriverStatus.ON_TRIP, True, 700.0),
    Driver("drv-004", "Aiko Tanaka", DriverStatus.SUSPENDED, True, 550.0),
    Driver("drv-005", "Noor Haddad", DriverStatus.AVAILABLE, False, 500.0),
]


def _quotes(now: datetime) -> list[Quote]:
    day = (now + timedelta(days=7)).replace(hour=8, minute=0, second=0, microsecond=0)
    one_way = Quote(
        id="qt-seed-oneway",
        user_id="usr-001",
        trip_type=TripType.ONE_WAY,
        status=QuoteStatus.SUBMITTED,
        trip_name="Conference shuttle",
        passenger_count=40,
        selected_vehicles=(SelectedVehicle("veh-coach-50", 1),),
        selected_amenities=("amn-wifi", "amn-water"),
        route_data=RouteData(outbound=RouteLeg(distance_km=180.0, duration_hours=3.0)),
        itinerary=(
            ItineraryStop(TripLeg.OUTBOUND, 1, day, StopType.PICKUP, "Central Station"),
            ItineraryStop(
                TripLeg.OUTBOUND,
                2,
                day + timedelta(hours=3),
                StopType.DROPOFF,
                "Lakeside Convention Centre",
            ),
        ),
    )
    two_way = Quote(
        id="qt-seed-return",
        user_id="usr-002",
        trip_type=TripType.TWO_WAY,
        status=QuoteStatus.SUBMITTED,
        trip_name="School excursion",
        passenger_count=18,
        selected_vehicles=(SelectedVehicle("veh-mini-20", 1),),
        route_data=RouteData(
            outbound=RouteLeg(distance_km=90.0, duration_hours=1.5),
            return_leg=RouteLeg(distance_km=90.0, duration_hours=1.5),
        ),
        itinerary=(
            ItineraryStop(TripLeg.OUTBOUND, 1, day, StopType.PICKUP, "North High School"),
            ItineraryStop(
                TripLeg.OUTBOUND,
                2,
                day + timedelta(hours=1, minutes=30),
                StopType.DROPOFF,
                "Science Museum",
            ),
            ItineraryStop(
                TripLeg.RETURN,
                1,
                day + timedelta(hours=7),
                StopType.PICKUP,
                "Science Museum",
            ),
            ItineraryStop(
                TripLeg.RETURN,
                2,
                day + timedelta(hours=8, minutes=30),
                StopType.DROPOFF,
                "North High School",
            ),
        ),
    )
    return [one_way, two_way]


async def seed():
    async with async_session_factory() as session:
        # Check if already seeded
        result = await session.execute(text("SELECT count(*) FROM pricing_configs"))
        if result.scalar() > 0:
            print("Database already seeded. Skipping.")
            return

        # ── Pricing config ────────────────────────────────────────────
        configs = PricingConfigRepository(session)
        config = await configs.create_version(
            fuel_price=95.0,
            average_driver_rate_per_hour=500.0,
            tax_percentage=18.0,
            night_charge_per_leg=1500.0,
            staying_charge_per_day=2500.0,
            created_by="seed",
        )
        await configs.activate(config.version)
        print(f"  Activated pricing config v{config.version}")

        # ── Catalogue ─────────────────────────────────────────────────
        for v in VEHICLES:
            await VehicleRepository(session).create(v)
        for a in AMENITIES:
            await AmenityRepository(session).create(a)
        print(f"  Created {len(VEHICLES)} vehicles, {len(AMENITIES)} amenities")

        # ── Drivers ───────────────────────────────────────────────────
        for d in DRIVERS:
            await DriverRepository(session).create(d)
        print(f"  Created {len(DRIVERS)} drivers")

        # ── Quotes ────────────────────────────────────────────────────
        quotes = _quotes(datetime.now(timezone.utc))
        for q in quotes:
            await QuoteRepository(session).create(q)
        print(f"  Created {len(quotes)} submitted quotes")

        await session.commit()
        print("\nSeed complete!")


async def main():
    print("Seeding database...")
    await seed()
    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
