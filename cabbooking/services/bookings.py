"""
Booking orchestration.

The one place where fares, the lifecycle graph, the cancellation policy and
payment reconciliation meet.  Route handlers validate the request shape and
hand over plain values; everything the customer is charged is computed
here from server-side data.

Creation order: the Payment row is inserted first, then the Booking that
references it, in the same transaction.  Online orders are opened with the
gateway before commit, so a gateway outage rolls both rows back.  A booking
whose payment never arrives is expired by the sweep worker.
"""

from __future__ import annotations

import logging
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from cabbooking.domain.cancellation import CancellationPolicy, CancellationQuote
from cabbooking.domain.entities import Identity, Location, Passenger, mask_phone
from cabbooking.domain.enums import (
    TERMINAL_STATUSES,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    TripType,
    UserRole,
    VehicleClass,
)
from cabbooking.domain.fares import FareBreakdown, FareCalculator, PackageExtras
from cabbooking.domain.lifecycle import (
    InvalidStateTransition,
    authorize_status_change,
    plan_transition,
    transition_effects,
)
from cabbooking.domain.money import round_km
from cabbooking.errors import (
    AuthorizationError,
    BadRequestError,
    ConflictError,
    NotFoundError,
    TooManyRequestsError,
)
from cabbooking.infrastructure.database import utcnow
from cabbooking.infrastructure.models import BookingModel, PaymentModel
from cabbooking.infrastructure.repositories import (
    BookingRepository,
    DriverRepository,
    PaymentRepository,
    UserRepository,
)
from cabbooking.infrastructure.search_store import SearchStore
from cabbooking.integrations.geocoder import DistanceProvider
from cabbooking.integrations.notifier import Notifier, notify_quietly

from .payments import PaymentReconciler, RefundOutcome

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "CB"
_REFERENCE_ALPHABET = string.ascii_uppercase + string.digits


def generate_reference() -> str:
    return REFERENCE_PREFIX + "".join(
        secrets.choice(_REFERENCE_ALPHABET) for _ in range(8)
    )


@dataclass(frozen=True)
class BookingView:
    booking: BookingModel
    payment: PaymentModel


@dataclass(frozen=True)
class CreatedBooking:
    booking: BookingModel
    payment: PaymentModel
    order: Optional[dict] = None


@dataclass(frozen=True)
class CancellationResult:
    booking: BookingModel
    payment: PaymentModel
    quote: CancellationQuote
    refund: Optional[RefundOutcome] = None

    @property
    def refund_status(self) -> str:
        return self.refund.status if self.refund else "NOT_APPLICABLE"


class BookingService:
    def __init__(
        self,
        session: AsyncSession,
        calculator: FareCalculator,
        policy: CancellationPolicy,
        reconciler: PaymentReconciler,
        distance: DistanceProvider,
        notifier: Notifier,
        search_store: Optional[SearchStore] = None,
        *,
        currency: str = "INR",
        duplicate_window_minutes: int = 30,
        max_bookings_per_day: int = 10,
        search_ttl_seconds: int = 3600,
    ):
        self.session = session
        self.calculator = calculator
        self.policy = policy
        self.reconciler = reconciler
        self.distance = distance
        self.notifier = notifier
        self.search_store = search_store
        self.currency = currency
        self.duplicate_window = timedelta(minutes=duplicate_window_minutes)
        self.max_bookings_per_day = max_bookings_per_day
        self.search_ttl = timedelta(seconds=search_ttl_seconds)

        self.bookings = BookingRepository(session)
        self.payments = PaymentRepository(session)
        self.users = UserRepository(session)
        self.drivers = DriverRepository(session)

    # ── Helpers ───────────────────────────────────────────────────────

    async def _resolve_distance(
        self,
        trip_type: TripType,
        pickup: Location,
        drop: Optional[Location],
        via: Sequence[Location] = (),
        distance_km: Optional[float] = None,
    ) -> Optional[float]:
        if not trip_type.needs_distance:
            return None
        if distance_km is not None:
            return distance_km
        if drop is None:
            raise BadRequestError("Drop location is required for this trip type")
        stops = [pickup, *via, drop]
        return await self.distance.route_km([s.to_dict() for s in stops])

    @staticmethod
    def _validate_schedule(
        trip_type: TripType, start_time: datetime, end_time: Optional[datetime]
    ) -> None:
        if end_time is None:
            return
        if trip_type is not TripType.ROUND_TRIP:
            raise BadRequestError("End time can only be set for round trips")
        if end_time <= start_time:
            raise BadRequestError("End time must be after the start time")

    async def _load(self, booking_id: int) -> tuple[BookingModel, PaymentModel]:
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        payment = await self.payments.get_by_id(booking.payment_id)
        return booking, payment

    async def _caller_driver_id(self, identity: Identity) -> Optional[int]:
        if identity.role is not UserRole.DRIVER:
            return None
        driver = await self.drivers.get_by_user_id(identity.user_id)
        return driver.id if driver else None

    async def _check_access(self, identity: Identity, booking: BookingModel) -> None:
        if identity.is_admin or booking.user_id == identity.user_id:
            return
        if identity.role is UserRole.DRIVER and booking.driver_id is not None:
            if booking.driver_id == await self._caller_driver_id(identity):
                return
        raise AuthorizationError("You do not have access to this booking")

    async def _notify_user(self, user_id: int, title: str, body: str, data: dict) -> None:
        user = await self.users.get_by_id(user_id)
        await notify_quietly(
            self.notifier, user.fcm_token if user else None, title, body, data
        )

    async def _notify_driver(self, driver_id: Optional[int], title: str, body: str,
                             data: dict) -> None:
        if driver_id is None:
            return
        driver = await self.drivers.get_by_id(driver_id)
        if driver is not None:
            await notify_quietly(self.notifier, driver.fcm_token, title, body, data)

    async def _refreshed(self, booking: BookingModel, payment: PaymentModel) -> BookingView:
        await self.bookings.refresh(booking)
        await self.payments.refresh(payment)
        return BookingView(booking, payment)

    # ── Quotes ────────────────────────────────────────────────────────

    async def search(
        self,
        *,
        trip_type: TripType,
        pickup: Location,
        drop: Optional[Location],
        start_time: datetime,
        via: Sequence[Location] = (),
        extras: Optional[PackageExtras] = None,
        include_tolls: bool = False,
        now: Optional[datetime] = None,
    ) -> dict:
        now = now or utcnow()
        self.calculator.validate_start_time(start_time, now)
        distance = await self._resolve_distance(trip_type, pickup, drop, via)
        options = self.calculator.get_vehicle_options(
            trip_type, distance, start_time, extras,
            now=now, include_tolls=include_tolls,
        )

        snapshot = {
            "search_id": uuid.uuid4().hex[:16],
            "trip_type": trip_type.value,
            "pickup": pickup.to_dict(),
            "drop": drop.to_dict() if drop else None,
            "via": [v.to_dict() for v in via],
            "distance_km": round_km(distance) if distance is not None else None,
            "start_time": start_time.isoformat(),
            "valid_until": (now + self.search_ttl).isoformat(),
            "options": [
                {
                    "vehicle": {
                        "vehicle_class": o.vehicle.vehicle_class.value,
                        "display_name": o.vehicle.display_name,
                        "passengers": o.vehicle.passengers,
                        "luggage": o.vehicle.luggage,
                        "features": list(o.vehicle.features),
                        "model_examples": list(o.vehicle.model_examples),
                        "description": o.vehicle.description,
                    },
                    "fare": o.fare.to_dict(),
                    "recommended": o.recommended,
                }
                for o in options
            ],
        }
        if self.search_store is not None:
            await self.search_store.save(snapshot["search_id"], snapshot)
        logger.info(
            "Search %s: %s %s -> %s, %d options",
            snapshot["search_id"], trip_type.value, pickup.city,
            drop.city if drop else "-", len(options),
        )
        return snapshot

    async def get_search(self, search_id: str) -> dict:
        snapshot = None
        if self.search_store is not None:
            snapshot = await self.search_store.load(search_id)
        if snapshot is None:
            raise NotFoundError("Search results expired or not found")
        return snapshot

    async def estimate(
        self,
        *,
        trip_type: TripType,
        vehicle_class: VehicleClass,
        start_time: datetime,
        distance_km: Optional[float] = None,
        pickup: Optional[Location] = None,
        drop: Optional[Location] = None,
        via: Sequence[Location] = (),
        extras: Optional[PackageExtras] = None,
        include_tolls: bool = False,
        now: Optional[datetime] = None,
    ) -> FareBreakdown:
        now = now or utcnow()
        self.calculator.validate_start_time(start_time, now)
        if trip_type.needs_distance and distance_km is None and pickup is None:
            raise BadRequestError("Provide either a distance or pickup and drop locations")
        distance = await self._resolve_distance(
            trip_type, pickup, drop, via, distance_km
        )
        return self.calculator.price(
            trip_type, vehicle_class, distance, start_time, extras,
            now=now, include_tolls=include_tolls,
        )

    # ── Create ────────────────────────────────────────────────────────

    async def create(
        self,
        identity: Identity,
        *,
        trip_type: TripType,
        vehicle_class: VehicleClass,
        pickup: Location,
        start_time: datetime,
        drop: Optional[Location] = None,
        via: Sequence[Location] = (),
        end_time: Optional[datetime] = None,
        passenger: Optional[Passenger] = None,
        payment_method: PaymentMethod = PaymentMethod.CASH,
        extras: Optional[PackageExtras] = None,
        include_tolls: bool = False,
        search_id: Optional[str] = None,
        special_requests: Sequence[str] = (),
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CreatedBooking:
        now = now or utcnow()
        self._validate_schedule(trip_type, start_time, end_time)
        self.calculator.validate_start_time(start_time, now)

        user = await self.users.get_by_id(identity.user_id)
        if user is None:
            raise NotFoundError("User not found")
        if passenger is None:
            passenger = Passenger(name=user.name, phone=user.phone, email=user.email)

        existing = await self.bookings.find_overlapping(
            user.id, start_time - self.duplicate_window, start_time + self.duplicate_window
        )
        if existing is not None:
            raise ConflictError(
                f"You already have booking {existing.reference} around this time. "
                "Please cancel it first or choose a different time."
            )
        created_today = await self.bookings.count_created_since(
            user.id, now - timedelta(hours=24)
        )
        if created_today >= self.max_bookings_per_day:
            raise TooManyRequestsError(
                f"Daily booking limit of {self.max_bookings_per_day} reached"
            )

        distance = await self._resolve_distance(trip_type, pickup, drop, via)
        fare = self.calculator.price(
            trip_type, vehicle_class, distance, start_time, extras,
            now=now, include_tolls=include_tolls,
        )

        payment = await self.payments.create(
            PaymentModel(
                user_id=user.id,
                amount=fare.final_amount,
                currency=self.currency,
                status=PaymentStatus.PENDING,
                method=payment_method,
            )
        )
        booking = await self.bookings.create(
            BookingModel(
                reference=generate_reference(),
                user_id=user.id,
                trip_type=trip_type,
                vehicle_class=vehicle_class,
                pickup=pickup.to_dict(),
                drop=drop.to_dict() if drop else None,
                via=[v.to_dict() for v in via],
                start_time=start_time,
                end_time=end_time,
                passenger=passenger.to_dict(),
                fare=fare.to_dict(),
                status=BookingStatus.PENDING,
                payment_id=payment.id,
                search_id=search_id,
                special_requests=list(special_requests),
                notes=notes,
            )
        )
        logger.info(
            "Booking %s created for user %s (%s, %s, Rs %d, %s) passenger %s",
            booking.reference, user.id, trip_type.value, vehicle_class.value,
            fare.final_amount, payment_method.value, mask_phone(passenger.phone),
        )

        if payment_method is not PaymentMethod.CASH:
            order = await self.reconciler.create_order(payment, booking)
            return CreatedBooking(booking, payment, order)

        await self.bookings.transition(
            booking.id, [BookingStatus.PENDING], BookingStatus.CONFIRMED
        )
        await self.bookings.refresh(booking)
        await self.session.commit()
        await self._notify_user(
            user.id,
            "Booking confirmed",
            f"Your booking {booking.reference} is confirmed. Pay Rs "
            f"{fare.final_amount} in cash to the driver.",
            {"booking_id": booking.id, "type": "BOOKING_CONFIRMED"},
        )
        return CreatedBooking(booking, payment)

    # ── Reads ─────────────────────────────────────────────────────────

    async def get(self, identity: Identity, booking_id: int) -> BookingView:
        booking, payment = await self._load(booking_id)
        await self._check_access(identity, booking)
        return BookingView(booking, payment)

    async def get_by_reference(self, identity: Identity, reference: str) -> BookingView:
        """Owner-only look-up by the reference printed on receipts."""
        booking = await self.bookings.get_by_reference(
            identity.user_id, reference.strip().upper()
        )
        if booking is None:
            logger.warning(
                "Booking %s not found for user %s", reference, identity.user_id
            )
            raise NotFoundError("Booking not found")
        payment = await self.payments.get_by_id(booking.payment_id)
        return BookingView(booking, payment)

    async def _with_payments(self, rows: list[BookingModel]) -> list[BookingView]:
        payments = await self.payments.get_many([b.payment_id for b in rows])
        return [BookingView(b, payments[b.payment_id]) for b in rows]

    async def list_for_user(
        self,
        identity: Identity,
        status: Optional[BookingStatus] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[BookingView], int]:
        rows, total = await self.bookings.list_for_user(
            identity.user_id,
            [status] if status is not None else None,
            offset=(page - 1) * limit,
            limit=limit,
        )
        return await self._with_payments(rows), total

    async def list_upcoming(
        self, identity: Identity, limit: int = 10, now: Optional[datetime] = None
    ) -> list[BookingView]:
        rows = await self.bookings.list_upcoming(identity.user_id, now or utcnow(), limit)
        return await self._with_payments(rows)

    async def list_history(
        self, identity: Identity, page: int = 1, limit: int = 10
    ) -> tuple[list[BookingView], int]:
        """Completed and cancelled trips, newest first."""
        rows, total = await self.bookings.list_for_user(
            identity.user_id,
            [BookingStatus.COMPLETED, BookingStatus.CANCELLED],
            offset=(page - 1) * limit,
            limit=limit,
        )
        return await self._with_payments(rows), total

    # ── Edit ──────────────────────────────────────────────────────────

    async def update(
        self,
        identity: Identity,
        booking_id: int,
        *,
        pickup: Optional[Location] = None,
        drop: Optional[Location] = None,
        start_time: Optional[datetime] = None,
        special_requests: Optional[Sequence[str]] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingView:
        """
        Edit a CONFIRMED booking.  A new pickup, drop or start time re-prices
        the trip with the original vehicle, extras, tolls and discount.  A
        cash booking not yet paid takes the new fare; a prepaid one refuses
        any change that moves the fare.
        """
        now = now or utcnow()
        booking, payment = await self._load(booking_id)
        if booking.user_id != identity.user_id:
            raise AuthorizationError("You can only update your own bookings")
        if booking.status is not BookingStatus.CONFIRMED:
            raise BadRequestError(
                "Only confirmed bookings can be updated. "
                f"Current status: {booking.status.value}"
            )

        values: dict = {}
        if special_requests is not None:
            values["special_requests"] = list(special_requests)
        if notes is not None:
            values["notes"] = notes

        new_amount = None
        if pickup is not None or drop is not None or start_time is not None:
            new_start = start_time or booking.start_time
            if start_time is not None:
                self._validate_schedule(booking.trip_type, start_time, booking.end_time)
                self.calculator.validate_start_time(start_time, now)
                clash = await self.bookings.find_overlapping(
                    booking.user_id,
                    start_time - self.duplicate_window,
                    start_time + self.duplicate_window,
                    exclude_id=booking.id,
                )
                if clash is not None:
                    raise ConflictError(
                        f"You already have booking {clash.reference} around this time."
                    )

            current = FareBreakdown.from_dict(booking.fare)
            new_pickup = pickup or Location.from_dict(booking.pickup)
            new_drop = drop or (Location.from_dict(booking.drop) if booking.drop else None)
            if pickup is not None or drop is not None:
                distance = await self._resolve_distance(
                    booking.trip_type, new_pickup, new_drop,
                    [Location.from_dict(v) for v in booking.via or []],
                )
            elif booking.trip_type.needs_distance:
                # Round-trip fares store both legs.
                legs = 2 if booking.trip_type is TripType.ROUND_TRIP else 1
                distance = current.distance_km / legs
            else:
                distance = None

            extras = (
                PackageExtras(current.extra_km, current.extra_hours)
                if current.package_code else None
            )
            fare = self.calculator.price(
                booking.trip_type, booking.vehicle_class, distance, new_start,
                extras, now=now, include_tolls=current.toll_charges > 0,
            )
            if current.discount_code:
                fare = self.calculator.apply_discount(fare, current.discount_code)

            if fare.final_amount != current.final_amount:
                if (
                    payment.method is not PaymentMethod.CASH
                    or payment.status is not PaymentStatus.PENDING
                ):
                    raise BadRequestError(
                        f"This change moves the fare from Rs {current.final_amount} to "
                        f"Rs {fare.final_amount} on a prepaid booking. "
                        "Please cancel and book again."
                    )
                new_amount = fare.final_amount

            values.update(
                pickup=new_pickup.to_dict(),
                drop=new_drop.to_dict() if new_drop else None,
                start_time=new_start,
                fare=fare.to_dict(),
            )

        if not values:
            raise BadRequestError("Nothing to update")

        if new_amount is not None and not await self.payments.transition(
            payment.id, [PaymentStatus.PENDING], PaymentStatus.PENDING,
            amount=new_amount,
        ):
            raise ConflictError("Payment was already processed for this booking")
        if not await self.bookings.set_fields(
            booking.id, [BookingStatus.CONFIRMED], **values
        ):
            raise ConflictError("Booking status changed; please reload and retry")

        view = await self._refreshed(booking, payment)
        await self.session.commit()
        logger.info(
            "Booking %s updated by user %s (%s)",
            booking.reference, identity.user_id, ", ".join(sorted(values)),
        )
        await self._notify_user(
            booking.user_id,
            "Booking updated",
            f"Your booking {booking.reference} has been updated.",
            {"booking_id": booking.id, "type": "BOOKING_UPDATED"},
        )
        return view

    # ── Cancellation ──────────────────────────────────────────────────

    def _quote(
        self, booking: BookingModel, payment: PaymentModel, now: datetime
    ) -> CancellationQuote:
        if booking.status in TERMINAL_STATUSES:
            raise InvalidStateTransition(
                f"Booking is already in a final state ({booking.status.value})"
            )
        if booking.status is BookingStatus.IN_PROGRESS:
            raise BadRequestError("A trip in progress cannot be cancelled")
        quote = self.policy.quote(
            booking.fare["final_amount"],
            booking.status,
            booking.start_time,
            payment_status=payment.status,
            paid_amount=payment.paid_amount or 0,
            now=now,
        )
        return quote

    async def preview_cancellation(
        self, identity: Identity, booking_id: int, now: Optional[datetime] = None
    ) -> tuple[BookingModel, CancellationQuote]:
        booking, payment = await self._load(booking_id)
        await self._check_access(identity, booking)
        return booking, self._quote(booking, payment, now or utcnow())

    async def cancel(
        self,
        identity: Identity,
        booking_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CancellationResult:
        now = now or utcnow()
        booking, payment = await self._load(booking_id)
        await self._check_access(identity, booking)
        if booking.cancellation:
            raise ConflictError("Booking is already cancelled")
        quote = self._quote(booking, payment, now)
        if not quote.cancellable:
            raise BadRequestError("The trip start time has passed; it cannot be cancelled")

        record = {
            "cancelled_by": identity.role.value,
            "cancelled_at": now.isoformat(),
            "reason": reason or "Cancelled",
            "charge": quote.charge,
        }

        if booking.status is BookingStatus.PENDING:
            # Nothing captured yet: abandon the payment, then reject the booking.
            if not await self.payments.transition(
                payment.id,
                [PaymentStatus.PENDING],
                PaymentStatus.FAILED,
                failure_reason="Booking cancelled before payment",
            ):
                raise ConflictError(
                    "Payment is being processed for this booking; please retry"
                )
            won = await self.bookings.transition(
                booking.id, [BookingStatus.PENDING], BookingStatus.REJECTED,
                cancellation=record,
            )
        else:
            won = await self.bookings.transition(
                booking.id,
                [BookingStatus.CONFIRMED, BookingStatus.ASSIGNED],
                BookingStatus.CANCELLED,
                cancellation=record,
            )
        if not won:
            await self.bookings.refresh(booking)
            if booking.cancellation:
                raise ConflictError("Booking is already cancelled")
            raise ConflictError("Booking status changed; please reload and retry")

        refund = None
        if payment.status is PaymentStatus.COMPLETED and quote.refund_amount:
            refund = await self.reconciler.refund(payment, quote.refund_amount)

        view = await self._refreshed(booking, payment)
        await self.session.commit()
        logger.info(
            "Booking %s cancelled by %s (charge Rs %d, refund %s)",
            booking.reference, identity.role.value, quote.charge,
            refund.status if refund else "n/a",
        )

        await self._notify_user(
            booking.user_id,
            "Booking cancelled",
            f"Your booking {booking.reference} has been cancelled. {quote.message}",
            {"booking_id": booking.id, "type": "BOOKING_CANCELLED"},
        )
        await self._notify_driver(
            booking.driver_id,
            "Trip cancelled",
            f"Booking {booking.reference} was cancelled.",
            {"booking_id": booking.id, "type": "BOOKING_CANCELLED"},
        )
        return CancellationResult(view.booking, view.payment, quote, refund)

    # ── Status transitions ────────────────────────────────────────────

    async def update_status(
        self,
        identity: Identity,
        booking_id: int,
        target: BookingStatus,
        driver_id: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingView:
        now = now or utcnow()
        target = BookingStatus(target)
        booking, payment = await self._load(booking_id)
        authorize_status_change(
            identity.role, target, booking.driver_id,
            await self._caller_driver_id(identity),
        )

        if target is BookingStatus.CANCELLED:
            result = await self.cancel(identity, booking_id, reason, now=now)
            return BookingView(result.booking, result.payment)

        if not plan_transition(booking.status, target):
            return BookingView(booking, payment)

        if target is BookingStatus.REJECTED:
            if not await self.reconciler.fail(payment, reason or "Rejected by admin"):
                raise ConflictError("Payment was already processed for this booking")
            view = await self._refreshed(booking, payment)
            await self.session.commit()
            await self._notify_user(
                booking.user_id,
                "Booking rejected",
                f"Your booking {booking.reference} could not be accepted.",
                {"booking_id": booking.id, "type": "BOOKING_REJECTED"},
            )
            return view

        values = transition_effects(target, now)
        if target is BookingStatus.ASSIGNED:
            if driver_id is None:
                raise BadRequestError("A driver id is required to assign a booking")
            if await self.drivers.get_by_id(driver_id) is None:
                raise NotFoundError("Driver not found")
            values["driver_id"] = driver_id

        won = await self.bookings.transition(
            booking.id, [booking.status], target, **values
        )
        if not won:
            await self.bookings.refresh(booking)
            if (
                target is BookingStatus.IN_PROGRESS
                and booking.status is BookingStatus.IN_PROGRESS
            ):
                return BookingView(booking, payment)
            raise ConflictError("Booking status changed; please reload and retry")

        if target is BookingStatus.COMPLETED and booking.driver_id is not None:
            await self.drivers.increment_completed(booking.driver_id)

        view = await self._refreshed(booking, payment)
        await self.session.commit()
        logger.info(
            "Booking %s -> %s by %s %s",
            booking.reference, target.value, identity.role.value, identity.user_id,
        )
        await self._notify_user(
            booking.user_id,
            "Booking update",
            f"Your booking {booking.reference} is now {target.value.replace('_', ' ').lower()}.",
            {"booking_id": booking.id, "type": f"BOOKING_{target.value}"},
        )
        if target is BookingStatus.ASSIGNED:
            await self._notify_driver(
                driver_id,
                "New trip assigned",
                f"Booking {booking.reference} has been assigned to you.",
                {"booking_id": booking.id, "type": "BOOKING_ASSIGNED"},
            )
        return view

    # ── Rating ────────────────────────────────────────────────────────

    async def rate(
        self,
        identity: Identity,
        booking_id: int,
        value: int,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BookingView:
        if not 1 <= value <= 5:
            raise BadRequestError("Rating must be between 1 and 5")
        booking, payment = await self._load(booking_id)
        if booking.user_id != identity.user_id:
            raise AuthorizationError("You can only rate your own bookings")
        if booking.status is not BookingStatus.COMPLETED:
            raise BadRequestError("Only completed trips can be rated")
        if booking.rating:
            raise ConflictError("This booking has already been rated")

        rating = {
            "value": value,
            "comment": comment,
            "rated_at": (now or utcnow()).isoformat(),
        }
        if not await self.bookings.record_rating(booking.id, rating):
            raise ConflictError("This booking has already been rated")
        if booking.driver_id is not None:
            await self.drivers.record_rating(booking.driver_id, value)
        logger.info("Booking %s rated %d", booking.reference, value)
        return await self._refreshed(booking, payment)

    # ── Discounts ─────────────────────────────────────────────────────

    async def apply_discount(
        self, identity: Identity, booking_id: int, code: str
    ) -> CreatedBooking:
        booking, payment = await self._load(booking_id)
        if not (identity.is_admin or booking.user_id == identity.user_id):
            raise AuthorizationError("You can only discount your own bookings")
        if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            raise BadRequestError(
                f"Discounts cannot be applied to a {booking.status.value} booking"
            )
        if payment.status is not PaymentStatus.PENDING:
            raise BadRequestError("Discounts can only be applied before payment")

        fare = self.calculator.apply_discount(FareBreakdown.from_dict(booking.fare), code)

        if not await self.payments.transition(
            payment.id, [PaymentStatus.PENDING], PaymentStatus.PENDING,
            amount=fare.final_amount,
        ):
            raise ConflictError("Payment was already processed for this booking")
        if not await self.bookings.set_fields(
            booking.id,
            [BookingStatus.PENDING, BookingStatus.CONFIRMED],
            fare=fare.to_dict(),
        ):
            raise ConflictError("Booking status changed; please reload and retry")

        view = await self._refreshed(booking, payment)
        order = None
        if payment.method is not PaymentMethod.CASH:
            order = await self.reconciler.create_order(payment, booking)
        logger.info(
            "Discount %s applied to %s: -Rs %d, final Rs %d",
            fare.discount_code, booking.reference, fare.discount_amount,
            fare.final_amount,
        )
        return CreatedBooking(view.booking, view.payment, order)
