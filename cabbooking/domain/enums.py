"""Domain enumerations and state-transition rules."""

import enum


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


# State machine: maps current status -> set of valid next statuses
BOOKING_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.REJECTED},
    BookingStatus.CONFIRMED: {BookingStatus.ASSIGNED, BookingStatus.CANCELLED},
    BookingStatus.ASSIGNED: {BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED},
    BookingStatus.IN_PROGRESS: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.REJECTED: set(),
}

TERMINAL_STATUSES = frozenset(
    s for s, nxt in BOOKING_TRANSITIONS.items() if not nxt
)


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    ADVANCE_PAID = "ADVANCE_PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"


PAID_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.ADVANCE_PAID})


class PaymentMethod(str, enum.Enum):
    CASH = "CASH"
    CARD = "CARD"
    UPI = "UPI"
    WALLET = "WALLET"
    NET_BANKING = "NET_BANKING"


# Gateway-reported method name -> our method
GATEWAY_METHODS: dict[str, PaymentMethod] = {
    "card": PaymentMethod.CARD,
    "upi": PaymentMethod.UPI,
    "wallet": PaymentMethod.WALLET,
    "netbanking": PaymentMethod.NET_BANKING,
}


class UserRole(str, enum.Enum):
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"
    ADMIN = "ADMIN"


class VehicleClass(str, enum.Enum):
    HATCHBACK = "HATCHBACK"
    SEDAN = "SEDAN"
    SUV = "SUV"
    SUV_INNOVA = "SUV_INNOVA"
    PREMIUM_SEDAN = "PREMIUM_SEDAN"
    TRAVELLER_12_1 = "TRAVELLER_12_1"


class TripCategory(str, enum.Enum):
    OUTSTATION = "OUTSTATION"
    LOCAL_PACKAGE = "LOCAL_PACKAGE"
    AIRPORT = "AIRPORT"


class TripType(str, enum.Enum):
    ONE_WAY = "ONE_WAY"
    ROUND_TRIP = "ROUND_TRIP"
    LOCAL_2_20 = "LOCAL_2_20"
    LOCAL_4_40 = "LOCAL_4_40"
    LOCAL_8_80 = "LOCAL_8_80"
    LOCAL_12_120 = "LOCAL_12_120"
    AIRPORT_PICKUP = "AIRPORT_PICKUP"
    AIRPORT_DROP = "AIRPORT_DROP"

    @property
    def category(self) -> TripCategory:
        return _TRIP_CATEGORIES[self]

    @property
    def package_code(self) -> str | None:
        """``"8_80"`` for ``LOCAL_8_80``; ``None`` for non-package trips."""
        if self.category is not TripCategory.LOCAL_PACKAGE:
            return None
        return self.value.removeprefix("LOCAL_")

    @property
    def needs_distance(self) -> bool:
        return self.category is not TripCategory.LOCAL_PACKAGE


_TRIP_CATEGORIES: dict[TripType, TripCategory] = {
    TripType.ONE_WAY: TripCategory.OUTSTATION,
    TripType.ROUND_TRIP: TripCategory.OUTSTATION,
    TripType.LOCAL_2_20: TripCategory.LOCAL_PACKAGE,
    TripType.LOCAL_4_40: TripCategory.LOCAL_PACKAGE,
    TripType.LOCAL_8_80: TripCategory.LOCAL_PACKAGE,
    TripType.LOCAL_12_120: TripCategory.LOCAL_PACKAGE,
    TripType.AIRPORT_PICKUP: TripCategory.AIRPORT,
    TripType.AIRPORT_DROP: TripCategory.AIRPORT,
}
