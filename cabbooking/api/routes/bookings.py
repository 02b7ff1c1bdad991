"""
Booking endpoints
=================

POST  /api/v1/bookings                                -- create (cash 201, online 200 + checkout)
GET   /api/v1/bookings                                -- caller's bookings, newest first
GET   /api/v1/bookings/upcoming                       -- confirmed / assigned trips ahead
GET   /api/v1/bookings/history                        -- completed and cancelled trips
GET   /api/v1/bookings/code/{reference}               -- look-up by booking reference
GET   /api/v1/bookings/{id}                           -- one booking with its payment
PUT   /api/v1/bookings/{id}                           -- edit a confirmed booking
POST  /api/v1/bookings/verify-payment                 -- checkout callback
PATCH /api/v1/bookings/{id}/cancel                    -- cancel (charge + refund)
GET   /api/v1/bookings/{id}/cancellation-charges      -- preview of the above
PATCH /api/v1/bookings/{id}/status                    -- driver / admin transitions
POST  /api/v1/bookings/{id}/rating                    -- rate a completed trip
POST  /api/v1/bookings/{id}/apply-discount            -- apply a discount code
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from cabbooking.api.auth import get_identity
from cabbooking.api.dependencies import get_booking_service, get_reconciler
from cabbooking.api.middleware import RATE_LIMIT, limiter
from cabbooking.api.schemas import (
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingUpdateRequest,
    CancellationChargesResponse,
    CancelRequest,
    CancelResponse,
    CheckoutPrefill,
    CheckoutResponse,
    DiscountRequest,
    DiscountResponse,
    RatingRequest,
    StatusUpdateRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from cabbooking.domain.entities import Identity
from cabbooking.domain.enums import BookingStatus
from cabbooking.domain.money import to_minor_units
from cabbooking.services.bookings import BookingService
from cabbooking.services.payments import PaymentReconciler

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post(
    "",
    status_code=201,
    response_model=BookingResponse,
    summary="Create a booking",
    responses={
        200: {
            "model": CheckoutResponse,
            "description": "Online payment: booking is PENDING until payment is verified.",
        },
        409: {"description": "Overlapping booking exists"},
        429: {"description": "Daily booking limit reached"},
        503: {"description": "Distance or payment service unavailable"},
    },
)
@limiter.limit(RATE_LIMIT)
async def create_booking(
    request: Request,
    body: BookingCreateRequest,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    created = await service.create(
        identity,
        trip_type=body.trip_type,
        vehicle_class=body.vehicle_class,
        pickup=body.pickup.to_location(),
        drop=body.drop.to_location() if body.drop else None,
        via=[v.to_location() for v in body.via],
        start_time=body.start_time,
        end_time=body.end_time,
        passenger=body.passenger.to_passenger() if body.passenger else None,
        payment_method=body.payment_method,
        extras=body.to_extras(),
        include_tolls=body.include_tolls,
        search_id=body.search_id,
        special_requests=body.special_requests,
        notes=body.notes,
    )
    booking = BookingResponse.from_models(created.booking, created.payment)
    if created.order is None:
        return booking

    passenger = created.booking.passenger
    checkout = CheckoutResponse(
        booking=booking,
        order_id=created.order["id"],
        amount=to_minor_units(created.payment.amount),
        currency=created.payment.currency,
        key_id=reconciler.gateway.key_id,
        prefill=CheckoutPrefill(
            name=passenger["name"],
            email=passenger.get("email"),
            contact=passenger["phone"],
        ),
    )
    return JSONResponse(status_code=200, content=checkout.model_dump(mode="json"))


@router.get("", response_model=BookingListResponse, summary="List my bookings")
@limiter.limit(RATE_LIMIT)
async def list_bookings(
    request: Request,
    status: Optional[BookingStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    views, total = await service.list_for_user(identity, status, page, limit)
    return BookingListResponse(
        items=[BookingResponse.from_models(v.booking, v.payment) for v in views],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/upcoming",
    response_model=list[BookingResponse],
    summary="My upcoming trips, soonest first",
)
@limiter.limit(RATE_LIMIT)
async def upcoming_bookings(
    request: Request,
    limit: int = Query(10, ge=1, le=50),
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    views = await service.list_upcoming(identity, limit)
    return [BookingResponse.from_models(v.booking, v.payment) for v in views]


@router.get(
    "/history",
    response_model=BookingListResponse,
    summary="My completed and cancelled trips",
)
@limiter.limit(RATE_LIMIT)
async def booking_history(
    request: Request,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    views, total = await service.list_history(identity, page, limit)
    return BookingListResponse(
        items=[BookingResponse.from_models(v.booking, v.payment) for v in views],
        total=total,
        page=page,
        limit=limit,
    )


@router.get(
    "/code/{reference}",
    response_model=BookingResponse,
    summary="Get one of my bookings by its reference",
)
@limiter.limit(RATE_LIMIT)
async def get_booking_by_reference(
    request: Request,
    reference: str,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    view = await service.get_by_reference(identity, reference)
    return BookingResponse.from_models(view.booking, view.payment)


@router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    summary="Verify a checkout payment",
)
@limiter.limit(RATE_LIMIT)
async def verify_payment(
    request: Request,
    body: VerifyPaymentRequest,
    identity: Identity = Depends(get_identity),
    reconciler: PaymentReconciler = Depends(get_reconciler),
):
    result = await reconciler.verify_client_payment(
        identity,
        body.booking_id,
        body.razorpay_order_id,
        body.razorpay_payment_id,
        body.razorpay_signature,
    )
    return VerifyPaymentResponse(
        booking=BookingResponse.from_models(result.booking, result.payment),
        already_verified=result.already_verified,
        message=(
            "Payment already verified"
            if result.already_verified
            else "Payment verified successfully"
        ),
    )


@router.get("/{booking_id}", response_model=BookingResponse, summary="Get a booking")
@limiter.limit(RATE_LIMIT)
async def get_booking(
    request: Request,
    booking_id: int,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    view = await service.get(identity, booking_id)
    return BookingResponse.from_models(view.booking, view.payment)


@router.put(
    "/{booking_id}",
    response_model=BookingResponse,
    summary="Edit a confirmed booking",
    responses={
        400: {"description": "Not confirmed, outside the booking window, or the fare would change on a prepaid booking"},
        409: {"description": "Overlapping booking exists"},
    },
)
@limiter.limit(RATE_LIMIT)
async def update_booking(
    request: Request,
    booking_id: int,
    body: BookingUpdateRequest,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    view = await service.update(
        identity,
        booking_id,
        pickup=body.pickup.to_location() if body.pickup else None,
        drop=body.drop.to_location() if body.drop else None,
        start_time=body.start_time,
        special_requests=body.special_requests,
        notes=body.notes,
    )
    return BookingResponse.from_models(view.booking, view.payment)


@router.get(
    "/{booking_id}/cancellation-charges",
    response_model=CancellationChargesResponse,
    summary="Preview cancellation charges",
)
@limiter.limit(RATE_LIMIT)
async def cancellation_charges(
    request: Request,
    booking_id: int,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    booking, quote = await service.preview_cancellation(identity, booking_id)
    return CancellationChargesResponse(
        booking_id=booking.id,
        reference=booking.reference,
        hours_until_start=quote.hours_until_start,
        cancellable=quote.cancellable,
        charge=quote.charge,
        refund_amount=quote.refund_amount,
        window_hours=quote.window_hours,
        charge_percent=quote.charge_percent,
        message=quote.message,
    )


@router.patch(
    "/{booking_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel a booking",
)
@limiter.limit(RATE_LIMIT)
async def cancel_booking(
    request: Request,
    booking_id: int,
    body: CancelRequest | None = None,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    result = await service.cancel(
        identity, booking_id, body.reason if body else None
    )
    message = "Booking cancelled successfully. " + result.quote.message
    if result.refund_status == "MANUAL_INTERVENTION_REQUIRED":
        message += " The refund could not be processed automatically; our team will process it manually."
    return CancelResponse(
        booking=BookingResponse.from_models(result.booking, result.payment),
        charge=result.quote.charge,
        refund_amount=result.quote.refund_amount,
        refund_status=result.refund_status,
        message=message,
    )


@router.patch(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="Update booking status (driver / admin)",
)
@limiter.limit(RATE_LIMIT)
async def update_status(
    request: Request,
    booking_id: int,
    body: StatusUpdateRequest,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    view = await service.update_status(
        identity, booking_id, body.status, body.driver_id, body.reason
    )
    return BookingResponse.from_models(view.booking, view.payment)


@router.post(
    "/{booking_id}/rating",
    response_model=BookingResponse,
    summary="Rate a completed trip",
)
@limiter.limit(RATE_LIMIT)
async def rate_booking(
    request: Request,
    booking_id: int,
    body: RatingRequest,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    view = await service.rate(identity, booking_id, body.rating, body.comment)
    return BookingResponse.from_models(view.booking, view.payment)


@router.post(
    "/{booking_id}/apply-discount",
    response_model=DiscountResponse,
    summary="Apply a discount code",
)
@limiter.limit(RATE_LIMIT)
async def apply_discount(
    request: Request,
    booking_id: int,
    body: DiscountRequest,
    identity: Identity = Depends(get_identity),
    service: BookingService = Depends(get_booking_service),
):
    result = await service.apply_discount(identity, booking_id, body.code)
    fare = result.booking.fare
    return DiscountResponse(
        booking=BookingResponse.from_models(result.booking, result.payment),
        discount_code=fare["discount_code"],
        discount_amount=fare["discount_amount"],
        final_amount=fare["final_amount"],
        order_id=result.order["id"] if result.order else None,
        amount_minor=to_minor_units(result.payment.amount) if result.order else None,
    )
