"""Vehicle-class metadata used to decorate fare options."""

from __future__ import annotations

from dataclasses import dataclass

from .enums import VehicleClass


@dataclass(frozen=True)
class VehicleInfo:
    vehicle_class: VehicleClass
    display_name: str
    passengers: int
    luggage: int
    features: tuple[str, ...]
    model_examples: tuple[str, ...]
    description: str


_BASIC = ("AC", "Music System", "Central Locking")

VEHICLE_CATALOG: dict[VehicleClass, VehicleInfo] = {
    VehicleClass.HATCHBACK: VehicleInfo(
        VehicleClass.HATCHBACK, "AC Hatchback", 4, 2, _BASIC,
        ("Maruti Swift", "Hyundai i20", "Tata Altroz"),
        "Economical and perfect for short trips.",
    ),
    VehicleClass.SEDAN: VehicleInfo(
        VehicleClass.SEDAN, "AC Sedan", 4, 3, _BASIC + ("Power Windows",),
        ("Honda City", "Maruti Ciaz", "Hyundai Verna"),
        "Comfortable for city and outstation travel.",
    ),
    VehicleClass.SUV: VehicleInfo(
        VehicleClass.SUV, "AC SUV (Ertiga)", 6, 4,
        _BASIC + ("Power Windows", "Extra Space"),
        ("Maruti Ertiga", "Kia Carens"),
        "Ideal for small groups, 6-seater.",
    ),
    VehicleClass.SUV_INNOVA: VehicleInfo(
        VehicleClass.SUV_INNOVA, "AC SUV (Innova)", 7, 4,
        _BASIC + ("Power Windows", "Extra Space"),
        ("Toyota Innova Crysta",),
        "Reliable and spacious 7-seater.",
    ),
    VehicleClass.PREMIUM_SEDAN: VehicleInfo(
        VehicleClass.PREMIUM_SEDAN, "Premium Sedan", 4, 3,
        ("AC", "Premium Music System", "Leather Seats", "Premium Interior"),
        ("Toyota Camry", "Skoda Superb"),
        "Business-class comfort.",
    ),
    VehicleClass.TRAVELLER_12_1: VehicleInfo(
        VehicleClass.TRAVELLER_12_1, "Tempo Traveller (12+1)", 12, 8,
        ("AC", "Push-back Seats", "Extra Space"),
        ("Force Traveller (12 Seater)",),
        "For medium-sized groups.",
    ),
}


def vehicle_info(vehicle_class: VehicleClass) -> VehicleInfo:
    return VEHICLE_CATALOG[vehicle_class]
