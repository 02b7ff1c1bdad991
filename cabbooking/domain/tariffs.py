"""
Pricing tables.

All rates live in one immutable ``Tariffs`` value built at process start
and handed to the ``FareCalculator``.  Nothing in the pricing path reads
module globals, so tests can price against alternate tables.

Amounts are in whole rupees.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

from .enums import VehicleClass


@dataclass(frozen=True)
class VehicleRate:
    per_km_rate: float
    min_fare: int
    night_multiplier: float = 1.2
    state_permit_fee: int = 450


@dataclass(frozen=True)
class LocalPackage:
    code: str
    hours: int
    km: int
    prices: Mapping[VehicleClass, int]
    extra_km_rates: Mapping[VehicleClass, float]
    extra_hour_rates: Mapping[VehicleClass, float]


@dataclass(frozen=True)
class DiscountCode:
    code: str
    percent: Optional[float] = None  # 0.10 == 10 %
    flat: Optional[int] = None
    max_discount: Optional[int] = None
    min_subtotal: int = 0
    description: str = ""


@dataclass(frozen=True)
class Tariffs:
    rates: Mapping[VehicleClass, VehicleRate]
    packages: Mapping[str, LocalPackage]
    airport_base_prices: Mapping[VehicleClass, int]
    discounts: Mapping[str, DiscountCode] = field(default_factory=dict)
    gst_rate: float = 0.05
    min_distance_km: float = 1.0
    max_distance_km: float = 2000.0
    airport_free_km: float = 10.0
    airport_max_distance_km: float = 200.0
    round_trip_min_fare_factor: float = 1.5
    toll_per_km: float = 1.5
    max_extra_km: float = 500.0
    max_extra_hours: float = 24.0
    night_start_hour: int = 22
    night_end_hour: int = 6


def _frozen(mapping: dict) -> Mapping:
    return MappingProxyType(dict(mapping))


_EXTRA_KM = {
    VehicleClass.HATCHBACK: 12,
    VehicleClass.SEDAN: 14,
    VehicleClass.SUV: 18,
    VehicleClass.PREMIUM_SEDAN: 22,
}
_EXTRA_HOUR = {
    VehicleClass.HATCHBACK: 150,
    VehicleClass.SEDAN: 175,
    VehicleClass.SUV: 200,
    VehicleClass.PREMIUM_SEDAN: 250,
}


def _package(code: str, hours: int, km: int, prices: dict) -> LocalPackage:
    return LocalPackage(
        code=code,
        hours=hours,
        km=km,
        prices=_frozen(prices),
        extra_km_rates=_frozen(_EXTRA_KM),
        extra_hour_rates=_frozen(_EXTRA_HOUR),
    )


def default_tariffs() -> Tariffs:
    """The production price list."""
    rates = {
        VehicleClass.HATCHBACK: VehicleRate(12, 300, state_permit_fee=300),
        VehicleClass.SEDAN: VehicleRate(15, 350, state_permit_fee=400),
        VehicleClass.SUV: VehicleRate(18, 450, state_permit_fee=500),
        VehicleClass.SUV_INNOVA: VehicleRate(20, 500, state_permit_fee=500),
        VehicleClass.PREMIUM_SEDAN: VehicleRate(22, 550, state_permit_fee=600),
        VehicleClass.TRAVELLER_12_1: VehicleRate(28, 900, state_permit_fee=800),
    }

    # Packages are not offered for the larger classes.
    packages = [
        _package("2_20", 2, 20, {
            VehicleClass.HATCHBACK: 599,
            VehicleClass.SEDAN: 699,
            VehicleClass.SUV: 899,
            VehicleClass.PREMIUM_SEDAN: 1199,
        }),
        _package("4_40", 4, 40, {
            VehicleClass.HATCHBACK: 899,
            VehicleClass.SEDAN: 999,
            VehicleClass.SUV: 1299,
            VehicleClass.PREMIUM_SEDAN: 1799,
        }),
        _package("8_80", 8, 80, {
            VehicleClass.HATCHBACK: 1299,
            VehicleClass.SEDAN: 1499,
            VehicleClass.SUV: 1899,
            VehicleClass.PREMIUM_SEDAN: 2499,
        }),
        _package("12_120", 12, 120, {
            VehicleClass.HATCHBACK: 1799,
            VehicleClass.SEDAN: 1999,
            VehicleClass.SUV: 2499,
            VehicleClass.PREMIUM_SEDAN: 3299,
        }),
    ]

    airport = {
        VehicleClass.HATCHBACK: 499,
        VehicleClass.SEDAN: 599,
        VehicleClass.SUV: 799,
        VehicleClass.SUV_INNOVA: 899,
        VehicleClass.PREMIUM_SEDAN: 999,
    }

    discounts = [
        DiscountCode("FIRST100", flat=100, min_subtotal=500,
                     description="Flat Rs 100 off your first ride"),
        DiscountCode("SAVE10", percent=0.10, max_discount=300,
                     description="10% off, up to Rs 300"),
    ]

    return Tariffs(
        rates=_frozen(rates),
        packages=_frozen({p.code: p for p in packages}),
        airport_base_prices=_frozen(airport),
        discounts=_frozen({d.code: d for d in discounts}),
    )
