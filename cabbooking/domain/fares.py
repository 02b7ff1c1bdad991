"""
Fare Calculation Engine  (Strategy Pattern)
===========================================

One strategy per trip category, selected through a closed mapping on
``TripType.category``:

* **Outstation** (one-way / round-trip)
    base      = round(distance x per_km_rate)            (x 2 for round-trip)
    base      = max(base, min_fare)                      (min_fare x 1.5 for round-trip)
    night     = round(base x (night_multiplier - 1))     if 22:00 <= local start < 06:00
    tolls     = round(total_km x toll_per_km) + permit   only when requested
* **Local package**
    base      = flat package price for (hours, km)
    overage   = round(extra_km x km_rate) + round(extra_hours x hour_rate)
* **Airport transfer**
    base      = round(airport_base + max(0, distance - free_km) x per_km_rate)
    night     = as outstation; distance capped at 200 km

All categories then apply
    gst       = round(subtotal x gst_rate)
    final     = subtotal + gst

Every stage is rounded half-up to whole rupees, so the stored breakdown
always adds up exactly.  Pure functions: no I/O, the clock is injectable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from cabbooking.errors import BadRequestError, ConflictError

from .enums import TripCategory, TripType, VehicleClass
from .money import round_km, round_money, to_decimal
from .tariffs import Tariffs
from .vehicles import VehicleInfo, vehicle_info

logger = logging.getLogger(__name__)


class NoApplicableFare(BadRequestError):
    """The vehicle class has no price for the requested trip type."""


# ── Value Objects ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class PackageExtras:
    extra_km: float = 0.0
    extra_hours: float = 0.0


@dataclass(frozen=True)
class FareBreakdown:
    trip_type: TripType
    vehicle_class: VehicleClass
    distance_km: float
    base_fare: int
    subtotal: int
    gst: int
    gst_rate: float
    final_amount: int
    per_km_rate: float = 0.0
    min_fare_applied: bool = False
    is_night: bool = False
    night_charge: int = 0
    toll_charges: int = 0
    state_permit: int = 0
    package_code: Optional[str] = None
    included_km: Optional[float] = None
    included_hours: Optional[float] = None
    extra_km: float = 0.0
    extra_hours: float = 0.0
    extra_km_charge: int = 0
    extra_hour_charge: int = 0
    discount_code: Optional[str] = None
    discount_amount: int = 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["trip_type"] = self.trip_type.value
        data["vehicle_class"] = self.vehicle_class.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FareBreakdown":
        values = dict(data)
        values["trip_type"] = TripType(values["trip_type"])
        values["vehicle_class"] = VehicleClass(values["vehicle_class"])
        return cls(**values)


@dataclass(frozen=True)
class VehicleOption:
    vehicle: VehicleInfo
    fare: FareBreakdown
    recommended: bool = False


@dataclass(frozen=True)
class FareRequest:
    trip_type: TripType
    vehicle_class: VehicleClass
    distance_km: float
    is_night: bool
    extras: PackageExtras
    include_tolls: bool


# ── Strategy hierarchy ────────────────────────────────────────────────


class FareStrategy(ABC):
    def __init__(self, tariffs: Tariffs):
        self.tariffs = tariffs

    @abstractmethod
    def validate_distance(self, distance_km: float) -> float: ...

    @abstractmethod
    def calculate(self, req: FareRequest) -> FareBreakdown: ...

    def _rate(self, vehicle_class: VehicleClass):
        rate = self.tariffs.rates.get(vehicle_class)
        if rate is None:
            raise NoApplicableFare(
                f"Pricing not configured for vehicle class: {vehicle_class.value}"
            )
        return rate

    def _night_charge(self, base: int, multiplier: float, is_night: bool) -> int:
        if not is_night:
            return 0
        return round_money(to_decimal(base) * (to_decimal(multiplier) - 1))

    def _finish(self, req: FareRequest, subtotal: int, **fields) -> FareBreakdown:
        gst = round_money(to_decimal(subtotal) * to_decimal(self.tariffs.gst_rate))
        return FareBreakdown(
            trip_type=req.trip_type,
            vehicle_class=req.vehicle_class,
            subtotal=subtotal,
            gst=gst,
            gst_rate=self.tariffs.gst_rate,
            final_amount=subtotal + gst,
            **fields,
        )


class OutstationFare(FareStrategy):
    def validate_distance(self, distance_km: float) -> float:
        t = self.tariffs
        if distance_km is None:
            raise BadRequestError("Distance is required for outstation trips")
        if distance_km < t.min_distance_km:
            raise BadRequestError(
                f"Distance must be at least {t.min_distance_km:g} km"
            )
        if distance_km > t.max_distance_km:
            raise BadRequestError(f"Maximum distance is {t.max_distance_km:g} km")
        return round_km(distance_km)

    def calculate(self, req: FareRequest) -> FareBreakdown:
        rate = self._rate(req.vehicle_class)
        round_trip = req.trip_type is TripType.ROUND_TRIP
        legs = 2 if round_trip else 1

        one_leg = round_money(to_decimal(req.distance_km) * to_decimal(rate.per_km_rate))
        base = one_leg * legs
        floor = to_decimal(rate.min_fare)
        if round_trip:
            floor *= to_decimal(self.tariffs.round_trip_min_fare_factor)
        min_fare_applied = base < floor
        if min_fare_applied:
            base = round_money(floor)

        night = self._night_charge(base, rate.night_multiplier, req.is_night)
        total_km = round_km(to_decimal(req.distance_km) * legs)

        tolls = permit = 0
        if req.include_tolls:
            tolls = round_money(to_decimal(total_km) * to_decimal(self.tariffs.toll_per_km))
            permit = rate.state_permit_fee

        return self._finish(
            req,
            base + night + tolls + permit,
            distance_km=total_km,
            base_fare=base,
            per_km_rate=rate.per_km_rate,
            min_fare_applied=min_fare_applied,
            is_night=req.is_night,
            night_charge=night,
            toll_charges=tolls,
            state_permit=permit,
        )


class LocalPackageFare(FareStrategy):
    def validate_distance(self, distance_km: float) -> float:
        # The package defines the distance; callers don't supply one.
        return 0.0

    def _package(self, trip_type: TripType):
        pkg = self.tariffs.packages.get(trip_type.package_code)
        if pkg is None:
            raise BadRequestError(f"Unknown local package: {trip_type.value}")
        return pkg

    def validate_extras(self, extras: PackageExtras) -> PackageExtras:
        t = self.tariffs
        if extras.extra_km < 0 or extras.extra_hours < 0:
            raise BadRequestError("Extra km and extra hours must be non-negative")
        if extras.extra_km > t.max_extra_km:
            raise BadRequestError(f"Extra km cannot exceed {t.max_extra_km:g} km")
        if extras.extra_hours > t.max_extra_hours:
            raise BadRequestError(
                f"Extra hours cannot exceed {t.max_extra_hours:g} hours"
            )
        return PackageExtras(round_km(extras.extra_km), round_km(extras.extra_hours))

    def calculate(self, req: FareRequest) -> FareBreakdown:
        pkg = self._package(req.trip_type)
        price = pkg.prices.get(req.vehicle_class)
        if price is None:
            raise NoApplicableFare(
                f"Vehicle class {req.vehicle_class.value} not available for "
                f"package {pkg.code}"
            )
        km_rate = pkg.extra_km_rates[req.vehicle_class]
        hour_rate = pkg.extra_hour_rates[req.vehicle_class]
        extras = req.extras

        km_charge = round_money(to_decimal(extras.extra_km) * to_decimal(km_rate))
        hour_charge = round_money(
            to_decimal(extras.extra_hours) * to_decimal(hour_rate)
        )

        return self._finish(
            req,
            price + km_charge + hour_charge,
            distance_km=float(pkg.km),
            base_fare=price,
            per_km_rate=km_rate,
            package_code=pkg.code,
            included_km=float(pkg.km),
            included_hours=float(pkg.hours),
            extra_km=extras.extra_km,
            extra_hours=extras.extra_hours,
            extra_km_charge=km_charge,
            extra_hour_charge=hour_charge,
        )


class AirportFare(FareStrategy):
    def validate_distance(self, distance_km: float) -> float:
        t = self.tariffs
        if distance_km is None or distance_km <= 0:
            raise BadRequestError("Distance is required for airport transfers")
        if distance_km > t.airport_max_distance_km:
            raise BadRequestError(
                f"Airport transfers are limited to {t.airport_max_distance_km:g} km; "
                "please book an outstation trip instead"
            )
        return round_km(distance_km)

    def calculate(self, req: FareRequest) -> FareBreakdown:
        base_price = self.tariffs.airport_base_prices.get(req.vehicle_class)
        if base_price is None:
            raise NoApplicableFare(
                f"Airport transfer not configured for vehicle class: "
                f"{req.vehicle_class.value}"
            )
        rate = self._rate(req.vehicle_class)
        free_km = self.tariffs.airport_free_km

        extra_km = round_km(max(0.0, req.distance_km - free_km))
        extra_charge = to_decimal(extra_km) * to_decimal(rate.per_km_rate)
        base = round_money(to_decimal(base_price) + extra_charge)
        night = self._night_charge(base, rate.night_multiplier, req.is_night)

        return self._finish(
            req,
            base + night,
            distance_km=req.distance_km,
            base_fare=base,
            per_km_rate=rate.per_km_rate,
            is_night=req.is_night,
            night_charge=night,
            included_km=free_km,
            extra_km=extra_km,
            extra_km_charge=round_money(extra_charge),
        )


_STRATEGIES: dict[TripCategory, type[FareStrategy]] = {
    TripCategory.OUTSTATION: OutstationFare,
    TripCategory.LOCAL_PACKAGE: LocalPackageFare,
    TripCategory.AIRPORT: AirportFare,
}


# ── Engine facade ─────────────────────────────────────────────────────


class FareCalculator:
    """High-level API used by the booking service and the search endpoints."""

    RECOMMENDED = VehicleClass.SEDAN

    def __init__(
        self,
        tariffs: Tariffs,
        local_timezone: str = "Asia/Kolkata",
        min_hours_ahead: float = 2,
        max_advance_days: int = 30,
    ):
        self.tariffs = tariffs
        self.tz = ZoneInfo(local_timezone)
        self.min_hours_ahead = min_hours_ahead
        self.max_advance_days = max_advance_days
        self._strategies = {cat: cls(tariffs) for cat, cls in _STRATEGIES.items()}

    def is_night(self, start_time: datetime) -> bool:
        hour = start_time.astimezone(self.tz).hour
        t = self.tariffs
        return hour >= t.night_start_hour or hour < t.night_end_hour

    def validate_start_time(
        self, start_time: datetime, now: Optional[datetime] = None
    ) -> datetime:
        if start_time.tzinfo is None:
            raise BadRequestError("Start time must include a timezone offset")
        now = now or datetime.now(timezone.utc)
        if start_time < now + timedelta(hours=self.min_hours_ahead):
            raise BadRequestError(
                f"Booking must be at least {self.min_hours_ahead:g} hours in advance"
            )
        if start_time > now + timedelta(days=self.max_advance_days):
            raise BadRequestError(
                f"Cannot book more than {self.max_advance_days} days in advance"
            )
        return start_time

    def _prepare(
        self,
        trip_type: TripType,
        vehicle_class: VehicleClass,
        distance_km: Optional[float],
        start_time: datetime,
        extras: Optional[PackageExtras],
        now: Optional[datetime],
        include_tolls: bool,
    ) -> tuple[FareStrategy, FareRequest]:
        strategy = self._strategies[trip_type.category]
        distance = strategy.validate_distance(distance_km)
        self.validate_start_time(start_time, now)
        extras = extras or PackageExtras()
        if isinstance(strategy, LocalPackageFare):
            extras = strategy.validate_extras(extras)
        req = FareRequest(
            trip_type=trip_type,
            vehicle_class=vehicle_class,
            distance_km=distance,
            is_night=self.is_night(start_time),
            extras=extras,
            include_tolls=include_tolls and trip_type.category is TripCategory.OUTSTATION,
        )
        return strategy, req

    def price(
        self,
        trip_type: TripType,
        vehicle_class: VehicleClass,
        distance_km: Optional[float],
        start_time: datetime,
        extras: Optional[PackageExtras] = None,
        *,
        now: Optional[datetime] = None,
        include_tolls: bool = False,
    ) -> FareBreakdown:
        strategy, req = self._prepare(
            trip_type, vehicle_class, distance_km, start_time, extras, now,
            include_tolls,
        )
        fare = strategy.calculate(req)
        logger.debug(
            "Priced %s/%s %.1f km night=%s -> %d",
            trip_type.value, vehicle_class.value, fare.distance_km,
            fare.is_night, fare.final_amount,
        )
        return fare

    def get_vehicle_options(
        self,
        trip_type: TripType,
        distance_km: Optional[float],
        start_time: datetime,
        extras: Optional[PackageExtras] = None,
        *,
        now: Optional[datetime] = None,
        include_tolls: bool = False,
    ) -> list[VehicleOption]:
        """Price every vehicle class, cheapest first."""
        options: list[VehicleOption] = []
        for vehicle_class in VehicleClass:
            strategy, req = self._prepare(
                trip_type, vehicle_class, distance_km, start_time, extras, now,
                include_tolls,
            )
            try:
                fare = strategy.calculate(req)
            except NoApplicableFare as exc:
                logger.debug("Skipping %s for %s: %s",
                             vehicle_class.value, trip_type.value, exc.message)
                continue
            options.append(
                VehicleOption(
                    vehicle=vehicle_info(vehicle_class),
                    fare=fare,
                    recommended=vehicle_class is self.RECOMMENDED,
                )
            )

        if not options:
            raise BadRequestError(
                "No vehicles available for the selected trip type and parameters"
            )
        options.sort(key=lambda o: o.fare.final_amount)
        logger.info("Vehicle options for %s: %d priced", trip_type.value, len(options))
        return options

    def apply_discount(self, fare: FareBreakdown, code: str) -> FareBreakdown:
        """Return *fare* with the discount applied and GST recomputed."""
        if fare.discount_code:
            raise ConflictError("A discount has already been applied to this booking")
        discount = self.tariffs.discounts.get(code.strip().upper())
        if discount is None:
            raise BadRequestError(f"Invalid discount code: {code}")
        if fare.subtotal < discount.min_subtotal:
            raise BadRequestError(
                f"Code {discount.code} requires a minimum fare of Rs {discount.min_subtotal}"
            )

        if discount.flat is not None:
            amount = discount.flat
        else:
            amount = round_money(to_decimal(fare.subtotal) * to_decimal(discount.percent))
        if discount.max_discount is not None:
            amount = min(amount, discount.max_discount)
        amount = min(amount, fare.subtotal)

        taxable = fare.subtotal - amount
        gst = round_money(to_decimal(taxable) * to_decimal(fare.gst_rate))
        return replace(
            fare,
            discount_code=discount.code,
            discount_amount=amount,
            gst=gst,
            final_amount=taxable + gst,
        )
