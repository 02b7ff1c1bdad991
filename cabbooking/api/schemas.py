"""Pydantic request / response schemas for the REST API."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import AwareDatetime, BaseModel, Field

from cabbooking.domain.entities import Location, Passenger
from cabbooking.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    TripType,
    VehicleClass,
)
from cabbooking.domain.fares import PackageExtras


# ── Shared ────────────────────────────────────────────────────────────


class LocationIn(BaseModel):
    city: str = Field(..., min_length=1, max_length=120)
    address: Optional[str] = Field(None, max_length=500)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)

    def to_location(self) -> Location:
        return Location(self.city, self.address, self.lat, self.lng)


class PassengerIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    phone: str = Field(..., pattern=r"^\d{10}$")
    email: Optional[str] = Field(None, max_length=255)

    def to_passenger(self) -> Passenger:
        return Passenger(self.name, self.phone, self.email)


class PackageExtrasIn(BaseModel):
    extra_km: float = Field(0, ge=0, description="Kilometres beyond the package")
    extra_hours: float = Field(0, ge=0, description="Hours beyond the package")

    def to_extras(self) -> PackageExtras:
        return PackageExtras(self.extra_km, self.extra_hours)


# ── Requests ──────────────────────────────────────────────────────────


class SearchRequest(PackageExtrasIn):
    trip_type: TripType
    pickup: LocationIn
    drop: Optional[LocationIn] = None
    via: list[LocationIn] = Field(default_factory=list, max_length=5)
    start_time: AwareDatetime
    include_tolls: bool = False


class EstimateFareRequest(PackageExtrasIn):
    trip_type: TripType
    vehicle_class: VehicleClass
    start_time: AwareDatetime
    distance_km: Optional[float] = Field(None, gt=0)
    pickup: Optional[LocationIn] = None
    drop: Optional[LocationIn] = None
    via: list[LocationIn] = Field(default_factory=list, max_length=5)
    include_tolls: bool = False


class BookingCreateRequest(PackageExtrasIn):
    trip_type: TripType
    vehicle_class: VehicleClass
    pickup: LocationIn
    drop: Optional[LocationIn] = None
    via: list[LocationIn] = Field(default_factory=list, max_length=5)
    start_time: AwareDatetime
    end_time: Optional[AwareDatetime] = None
    passenger: Optional[PassengerIn] = Field(
        None, description="Defaults to the caller's profile."
    )
    payment_method: PaymentMethod = PaymentMethod.CASH
    include_tolls: bool = False
    search_id: Optional[str] = Field(None, max_length=32)
    special_requests: list[str] = Field(default_factory=list, max_length=10)
    notes: Optional[str] = Field(None, max_length=500)


class BookingUpdateRequest(BaseModel):
    """Fields a customer may change on a confirmed booking."""

    pickup: Optional[LocationIn] = None
    drop: Optional[LocationIn] = None
    start_time: Optional[AwareDatetime] = None
    special_requests: Optional[list[str]] = Field(None, max_length=10)
    notes: Optional[str] = Field(None, max_length=500)


class VerifyPaymentRequest(BaseModel):
    booking_id: int
    razorpay_order_id: str = Field(..., min_length=1, max_length=64)
    razorpay_payment_id: str = Field(..., min_length=1, max_length=64)
    razorpay_signature: str = Field(..., min_length=1, max_length=128)


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class StatusUpdateRequest(BaseModel):
    status: BookingStatus
    driver_id: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class RatingRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)


class DiscountRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=32)


# ── Responses ─────────────────────────────────────────────────────────


class FareResponse(BaseModel):
    trip_type: TripType
    vehicle_class: VehicleClass
    distance_km: float
    base_fare: int
    per_km_rate: float
    min_fare_applied: bool
    is_night: bool
    night_charge: int
    toll_charges: int
    state_permit: int
    package_code: Optional[str] = None
    included_km: Optional[float] = None
    included_hours: Optional[float] = None
    extra_km: float
    extra_hours: float
    extra_km_charge: int
    extra_hour_charge: int
    discount_code: Optional[str] = None
    discount_amount: int
    subtotal: int
    gst: int
    gst_rate: float
    final_amount: int


class VehicleResponse(BaseModel):
    vehicle_class: VehicleClass
    display_name: str
    passengers: int
    luggage: int
    features: list[str]
    model_examples: list[str]
    description: str


class VehicleOptionResponse(BaseModel):
    vehicle: VehicleResponse
    fare: FareResponse
    recommended: bool


class SearchResponse(BaseModel):
    search_id: str
    trip_type: TripType
    pickup: LocationIn
    drop: Optional[LocationIn] = None
    via: list[LocationIn] = []
    distance_km: Optional[float] = None
    start_time: datetime
    valid_until: datetime
    options: list[VehicleOptionResponse]


class PaymentResponse(BaseModel):
    id: int
    amount: int
    currency: str
    status: PaymentStatus
    method: PaymentMethod
    gateway_order_id: Optional[str] = None
    paid_amount: Optional[int] = None
    refunded_amount: Optional[int] = None
    failure_reason: Optional[str] = None

    model_config = {"from_attributes": True}


class BookingResponse(BaseModel):
    id: int
    reference: str
    user_id: int
    trip_type: TripType
    vehicle_class: VehicleClass
    pickup: LocationIn
    drop: Optional[LocationIn] = None
    via: list[LocationIn] = []
    start_time: datetime
    end_time: Optional[datetime] = None
    passenger: PassengerIn
    fare: FareResponse
    status: BookingStatus
    driver_id: Optional[int] = None
    cancellation: Optional[dict] = None
    rating: Optional[dict] = None
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    special_requests: list[str] = []
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    payment: PaymentResponse

    @classmethod
    def from_models(cls, booking, payment) -> "BookingResponse":
        return cls(
            id=booking.id,
            reference=booking.reference,
            user_id=booking.user_id,
            trip_type=booking.trip_type,
            vehicle_class=booking.vehicle_class,
            pickup=booking.pickup,
            drop=booking.drop,
            via=booking.via or [],
            start_time=booking.start_time,
            end_time=booking.end_time,
            passenger=booking.passenger,
            fare=booking.fare,
            status=booking.status,
            driver_id=booking.driver_id,
            cancellation=booking.cancellation,
            rating=booking.rating,
            actual_start=booking.actual_start,
            actual_end=booking.actual_end,
            special_requests=booking.special_requests or [],
            notes=booking.notes,
            created_at=booking.created_at,
            payment=PaymentResponse.model_validate(payment),
        )


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    limit: int


class CheckoutPrefill(BaseModel):
    name: str
    email: Optional[str] = None
    contact: str


class CheckoutResponse(BaseModel):
    """Everything the client-side payment widget needs to open checkout."""

    booking: BookingResponse
    order_id: str
    amount: int = Field(..., description="Amount in minor units (paise)")
    currency: str
    key_id: str
    prefill: CheckoutPrefill


class VerifyPaymentResponse(BaseModel):
    booking: BookingResponse
    already_verified: bool
    message: str


class CancellationChargesResponse(BaseModel):
    booking_id: int
    reference: str
    hours_until_start: float
    cancellable: bool
    charge: int
    refund_amount: Optional[int] = None
    window_hours: float
    charge_percent: float
    message: str


class CancelResponse(BaseModel):
    booking: BookingResponse
    charge: int
    refund_amount: Optional[int] = None
    refund_status: str
    message: str


class DiscountResponse(BaseModel):
    booking: BookingResponse
    discount_code: str
    discount_amount: int
    final_amount: int
    order_id: Optional[str] = None
    amount_minor: Optional[int] = None


class WebhookAck(BaseModel):
    status: str = "ok"


class HealthResponse(BaseModel):
    status: str = "ok"
    database: str = "ok"
    redis: str = "ok"


class ErrorResponse(BaseModel):
    detail: str
