"""
Quote Pricing Engine  (Strategy Pattern)
========================================

Formula
-------
  base_fare       = sum(vehicle.base_fare x quantity)
  distance_fare   = total_km x sum(vehicle.fuel_consumption x quantity) x fuel_price
  driver_charge   = total_hours x driver_rate            (strategy, see below)
  night_charge    = legs_crossing_night x night_charge_per_leg
  staying_charge  = sum(ceil(staying_hours / 24) x staying_charge_per_day)
                    for stops where the driver stays >= 24 h
  amenities_total = sum(amenity.unit_price)
  subtotal        = sum of the components above (+ fuel_maintenance, always 0)
  tax             = subtotal x tax_percentage / 100
  total           = subtotal + tax

* **Driver rate**: ``AverageDriverRate`` (config average) until a driver
  is bound, then ``ActualDriverRate`` (the driver's salary).  It is the
  only component allowed to deviate from the config snapshot.
* The night window is itinerary-relative: hours are read from the stop
  timestamps themselves, so the engine never looks at the wall clock and
  identical inputs always give an identical breakdown.

Complexity: O(v + a + s) for v vehicles, a amenities, s stops.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Optional, Sequence

from .entities import (
    Amenity,
    ItineraryStop,
    PricingBreakdown,
    PricingConfig,
    RouteData,
    RouteLeg,
    Vehicle,
)
from .enums import TripLeg, TripType
from .errors import MissingRouteData
from .trip_window import TripWindow, group_by_leg, leg_window


# ── Strategy hierarchy ────────────────────────────────────────────────


class DriverRateStrategy(ABC):
    @abstractmethod
    def hourly_rate(self, config: PricingConfig) -> float: ...


class AverageDriverRate(DriverRateStrategy):
    def hourly_rate(self, config: PricingConfig) -> float:
        return config.average_driver_rate_per_hour


class ActualDriverRate(DriverRateStrategy):
    """Rate of the concrete driver bound to the quote."""

    def __init__(self, salary: float):
        self.salary = salary

    def hourly_rate(self, config: PricingConfig) -> float:
        return self.salary


# ── Inputs ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PricedVehicle:
    vehicle: Vehicle
    quantity: int = 1


@dataclass(frozen=True)
class PricingInput:
    vehicles: Sequence[PricedVehicle]
    amenities: Sequence[Amenity]
    itinerary: Sequence[ItineraryStop]
    config: PricingConfig
    trip_type: TripType
    route_data: Optional[RouteData]


def _money(value: float) -> float:
    return round(value, 2)


def required_route_legs(
    trip_type: TripType, route_data: Optional[RouteData]
) -> list[RouteLeg]:
    """Return the legs that must be priced, or raise ``MissingRouteData``."""
    outbound = route_data.outbound if route_data else None
    if outbound is None or not outbound.is_complete:
        raise MissingRouteData(TripLeg.OUTBOUND.value)
    if trip_type != TripType.TWO_WAY:
        return [outbound]

    ret = route_data.return_leg
    if ret is None or not ret.is_complete:
        raise MissingRouteData(TripLeg.RETURN.value)
    return [outbound, ret]


def leg_crosses_night(
    window: TripWindow, night_start_hour: int = 22, night_end_hour: int = 6
) -> bool:
    """
    True when ``[trip_start_at, trip_end_at]`` touches a night interval.

    Nights are ``[d @ start_hour, d+1 @ end_hour)`` for every calendar
    day ``d`` spanned by the window (or ``[d @ start, d @ end)`` when the
    night does not wrap midnight).
    """
    start, end = window.trip_start_at, window.trip_end_at
    tz = start.tzinfo
    wraps = night_start_hour > night_end_hour

    day = start.date() - timedelta(days=1)
    while day <= end.date():
        night_start = datetime.combine(day, time(night_start_hour), tzinfo=tz)
        night_end_day = day + timedelta(days=1) if wraps else day
        night_end = datetime.combine(night_end_day, time(night_end_hour), tzinfo=tz)
        if start < night_end and night_start <= end:
            return True
        day += timedelta(days=1)
    return False


# ── Engine facade ─────────────────────────────────────────────────────


class PricingEngine:
    """High-level API used by the quote state machine."""

    def __init__(self, night_start_hour: int = 22, night_end_hour: int = 6):
        self.night_start_hour = night_start_hour
        self.night_end_hour = night_end_hour

    @staticmethod
    def base_fare(vehicles: Sequence[PricedVehicle]) -> float:
        return sum(pv.vehicle.base_fare * pv.quantity for pv in vehicles)

    @staticmethod
    def distance_fare(
        total_km: float, vehicles: Sequence[PricedVehicle], fuel_price: float
    ) -> float:
        consumption = sum(pv.vehicle.fuel_consumption * pv.quantity for pv in vehicles)
        return total_km * consumption * fuel_price

    @staticmethod
    def driver_charge(total_hours: float, hourly_rate: float) -> float:
        return total_hours * hourly_rate

    def night_charge(
        self, itinerary: Sequence[ItineraryStop], night_charge_per_leg: float
    ) -> float:
        crossing = sum(
            1
            for leg_stops in group_by_leg(itinerary).values()
            if leg_crosses_night(
                leg_window(leg_stops), self.night_start_hour, self.night_end_hour
            )
        )
        return crossing * night_charge_per_leg

    @staticmethod
    def staying_charge(
        itinerary: Sequence[ItineraryStop], staying_charge_per_day: float
    ) -> float:
        total = 0.0
        for stop in itinerary:
            hours = stop.staying_duration_hours or 0.0
            if stop.is_driver_staying and hours >= 24:
                total += math.ceil(hours / 24) * staying_charge_per_day
        return total

    @staticmethod
    def amenities_total(amenities: Sequence[Amenity]) -> float:
        return sum(a.unit_price for a in amenities)

    @staticmethod
    def tax(subtotal: float, tax_percentage: float) -> float:
        return subtotal * tax_percentage / 100

    def calculate(
        self,
        inp: PricingInput,
        driver_rate: Optional[DriverRateStrategy] = None,
    ) -> PricingBreakdown:
        route_legs = required_route_legs(inp.trip_type, inp.route_data)
        total_km = sum(leg.distance_km for leg in route_legs)
        total_hours = sum(leg.duration_hours for leg in route_legs)

        cfg = inp.config
        rate = (driver_rate or AverageDriverRate()).hourly_rate(cfg)

        base = _money(self.base_fare(inp.vehicles))
        distance = _money(self.distance_fare(total_km, inp.vehicles, cfg.fuel_price))
        driver = _money(self.driver_charge(total_hours, rate))
        fuel_maintenance = 0.0  # already part of distance_fare
        night = _money(self.night_charge(inp.itinerary, cfg.night_charge_per_leg))
        staying = _money(self.staying_charge(inp.itinerary, cfg.staying_charge_per_day))
        amenities = _money(self.amenities_total(inp.amenities))

        subtotal = (
            base + distance + driver + fuel_maintenance + night + staying + amenities
        )
        tax = _money(self.tax(subtotal, cfg.tax_percentage))

        return PricingBreakdown(
            base_fare=base,
            distance_fare=distance,
            driver_charge=driver,
            fuel_maintenance=fuel_maintenance,
            night_charge=night,
            staying_charge=staying,
            amenities_total=amenities,
            subtotal=subtotal,
            tax=tax,
            total=subtotal + tax,
            fuel_price_at_time=cfg.fuel_price,
            average_driver_rate_at_time=cfg.average_driver_rate_per_hour,
            tax_percentage_at_time=cfg.tax_percentage,
            night_charge_at_time=cfg.night_charge_per_leg,
            pricing_config_version=cfg.version,
            driver_rate_applied=rate,
        )


SUBTOTAL_COMPONENTS = (
    "base_fare",
    "distance_fare",
    "driver_charge",
    "fuel_maintenance",
    "night_charge",
    "staying_charge",
    "amenities_total",
)
