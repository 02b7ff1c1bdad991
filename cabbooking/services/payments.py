"""
Payment reconciliation.

Two independent signals can report the same capture: the client's checkout
callback (``verify_client_payment``) and the gateway webhook
(``process_webhook``).  Both end in ``capture``, whose conditional update
``PENDING -> COMPLETED | ADVANCE_PAID`` lets exactly one of them win.  Only
the winner confirms the booking and sends the notification; the loser is
logged and reported as already processed.

Expiry (sweep worker) and explicit failure use the same conditional update
``PENDING -> FAILED``, so a late capture and an expiry cannot both apply.

Every order opened with the gateway is kept in ``payment_orders``.  The
first capture on an order claims its row, which is what tells a repeated
signal apart from new money.  New money the booking cannot use (a capture
after expiry or failure, a second order paid, the surplus of a superseded
order) is refunded at once and the refund is recorded on the order row;
when the refund itself fails the row is marked for manual settlement.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cabbooking.domain.entities import Identity
from cabbooking.domain.enums import (
    GATEWAY_METHODS,
    PAID_STATUSES,
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
)
from cabbooking.domain.money import to_minor_units
from cabbooking.errors import (
    AuthorizationError,
    BadRequestError,
    NotFoundError,
)
from cabbooking.infrastructure.models import (
    BookingModel,
    PaymentModel,
    PaymentOrderModel,
)
from cabbooking.infrastructure.repositories import (
    BookingRepository,
    PaymentRepository,
    UserRepository,
)
from cabbooking.integrations.gateway import (
    PaymentGateway,
    verify_order_payment,
    verify_webhook,
)
from cabbooking.integrations.notifier import Notifier, notify_quietly

logger = logging.getLogger(__name__)

CAPTURE_EVENTS = frozenset({"payment.captured", "order.paid"})
FAILURE_EVENT = "payment.failed"

MANUAL_REFUND = "MANUAL_INTERVENTION_REQUIRED"
REFUNDED = "REFUNDED"


class InvalidWebhookSignature(BadRequestError):
    default_message = "Invalid webhook signature"


@dataclass(frozen=True)
class VerifyResult:
    booking: BookingModel
    payment: PaymentModel
    already_verified: bool


@dataclass(frozen=True)
class RefundOutcome:
    status: str
    amount: int
    refund_id: Optional[str] = None


class PaymentReconciler:
    def __init__(
        self,
        session: AsyncSession,
        gateway: PaymentGateway,
        notifier: Notifier,
        key_secret: str,
        webhook_secret: str,
        currency: str = "INR",
    ):
        self.session = session
        self.gateway = gateway
        self.notifier = notifier
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.payments = PaymentRepository(session)
        self.bookings = BookingRepository(session)
        self.users = UserRepository(session)

    # ── Orders ────────────────────────────────────────────────────────

    async def create_order(self, payment: PaymentModel, booking: BookingModel) -> dict:
        """Open a gateway order for the server-side amount of *payment*."""
        order = await self.gateway.create_order(
            to_minor_units(payment.amount),
            self.currency,
            receipt=booking.reference,
            notes={
                "booking_id": str(booking.id),
                "trip_type": booking.trip_type.value,
            },
        )
        previous = payment.gateway_order_id
        await self.payments.add_order(payment.id, order["id"], payment.amount)
        payment.gateway_order_id = order["id"]
        payment.receipt_id = booking.reference
        await self.session.flush()
        if previous:
            logger.info(
                "Order %s supersedes %s for payment %s (Rs %d)",
                order["id"], previous, payment.id, payment.amount,
            )
        return order

    # ── Shared transitions ────────────────────────────────────────────

    async def capture(
        self,
        payment: PaymentModel,
        gateway_payment_id: Optional[str],
        paid_amount: int,
        signature: Optional[str] = None,
        method: Optional[PaymentMethod] = None,
        order: Optional[PaymentOrderModel] = None,
    ) -> bool:
        """
        Record a capture of *paid_amount* on *order* (the payment's current
        order by default).  Returns ``True`` only for the caller that moved
        the payment out of PENDING; that caller also confirms the booking
        and notifies the customer.  A capture the payment can no longer
        take is refunded.
        """
        if order is None:
            order = await self.payments.get_order(payment.gateway_order_id or "")
        if order is None:
            raise BadRequestError("No gateway order is recorded for this payment")

        if not await self.payments.claim_order(order.id, gateway_payment_id, paid_amount):
            await self.payments.refresh(payment)
            logger.info(
                "Capture %s on order %s already recorded; skipped",
                gateway_payment_id, order.order_id,
            )
            return False

        applied = min(paid_amount, payment.amount)
        new_status = (
            PaymentStatus.ADVANCE_PAID
            if applied < payment.amount
            else PaymentStatus.COMPLETED
        )
        values = {
            "gateway_order_id": order.order_id,
            "gateway_payment_id": gateway_payment_id,
            "paid_amount": applied,
        }
        if signature:
            values["gateway_signature"] = signature
        if method is not None:
            values["method"] = method

        won = await self.payments.transition(
            payment.id, [PaymentStatus.PENDING], new_status, **values
        )
        await self.payments.refresh(payment)
        if not won:
            await self._refund_unused_capture(
                order, gateway_payment_id, paid_amount,
                f"Captured after payment was {payment.status.value}",
            )
            await self.session.commit()
            return False

        if paid_amount > applied:
            await self._refund_unused_capture(
                order, gateway_payment_id, paid_amount - applied,
                f"Paid Rs {paid_amount} on a superseded order for Rs {payment.amount}",
            )

        booking = await self.bookings.get_by_payment_id(payment.id)
        confirmed = await self.bookings.transition(
            booking.id, [BookingStatus.PENDING], BookingStatus.CONFIRMED
        )
        await self.bookings.refresh(booking)
        await self.session.commit()
        logger.info(
            "Payment %s %s (Rs %d); booking %s %s",
            payment.id, new_status.value, applied, booking.reference,
            booking.status.value,
        )

        if confirmed:
            user = await self.users.get_by_id(booking.user_id)
            await notify_quietly(
                self.notifier,
                user.fcm_token if user else None,
                "Booking confirmed",
                f"Your booking {booking.reference} is confirmed.",
                {"booking_id": booking.id, "type": "BOOKING_CONFIRMED"},
            )
        return True

    async def fail(self, payment: PaymentModel, reason: str) -> bool:
        """``PENDING -> FAILED`` and reject the booking; ``False`` if too late."""
        won = await self.payments.transition(
            payment.id,
            [PaymentStatus.PENDING],
            PaymentStatus.FAILED,
            failure_reason=reason,
        )
        await self.payments.refresh(payment)
        if not won:
            return False
        booking = await self.bookings.get_by_payment_id(payment.id)
        if booking is not None:
            await self.bookings.transition(
                booking.id, [BookingStatus.PENDING], BookingStatus.REJECTED
            )
            await self.bookings.refresh(booking)
        logger.info("Payment %s failed: %s", payment.id, reason)
        return True

    async def expire_stale(self, booking: BookingModel) -> bool:
        payment = await self.payments.get_by_id(booking.payment_id)
        return await self.fail(payment, "Payment window expired")

    async def _refund_unused_capture(
        self,
        order: PaymentOrderModel,
        gateway_payment_id: Optional[str],
        amount: int,
        reason: str,
    ) -> str:
        """Return money captured on *order* that no booking can use."""
        refund_id = None
        if not gateway_payment_id:
            logger.error(
                "Unused capture of Rs %d on order %s has no payment id; manual refund required",
                amount, order.order_id,
            )
            settlement = MANUAL_REFUND
        else:
            try:
                result = await self.gateway.refund(
                    gateway_payment_id, to_minor_units(amount)
                )
            except Exception:
                logger.exception(
                    "Refund of unused capture %s (Rs %d, order %s) failed; "
                    "manual refund required",
                    gateway_payment_id, amount, order.order_id,
                )
                settlement = MANUAL_REFUND
            else:
                settlement, refund_id = REFUNDED, result.get("id")
                logger.warning(
                    "Unused capture %s on order %s refunded (Rs %d): %s",
                    gateway_payment_id, order.order_id, amount, reason,
                )
        await self.payments.settle_order(
            order.id,
            settlement=settlement,
            settlement_amount=amount,
            refund_id=refund_id,
            note=reason[:255],
        )
        return settlement

    # ── Client checkout callback ──────────────────────────────────────

    async def verify_client_payment(
        self,
        identity: Identity,
        booking_id: int,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> VerifyResult:
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        if booking.user_id != identity.user_id:
            raise AuthorizationError("You can only verify payments for your own bookings")

        payment = await self.payments.get_by_id(booking.payment_id)
        if payment.status in PAID_STATUSES:
            logger.info("Payment %s already verified; replay ignored", payment.id)
            return VerifyResult(booking, payment, already_verified=True)

        order = await self.payments.get_order(order_id)
        if order is None or order.payment_id != payment.id:
            raise BadRequestError("Order id does not match this booking")

        if not verify_order_payment(
            self.key_secret, order_id, gateway_payment_id, signature
        ):
            logger.warning(
                "Invalid payment signature for booking %s order %s",
                booking.reference, order_id,
            )
            await self.fail(payment, "Invalid payment signature")
            await self.session.commit()
            raise BadRequestError("Payment verification failed")

        won = await self.capture(
            payment, gateway_payment_id, order.amount,
            signature=signature, order=order,
        )
        await self.bookings.refresh(booking)
        await self.payments.refresh(payment)
        if not won and payment.status not in PAID_STATUSES:
            raise BadRequestError(
                f"Payment is {payment.status.value} and can no longer be verified; "
                "any amount captured is refunded"
            )
        return VerifyResult(booking, payment, already_verified=not won)

    # ── Webhook ───────────────────────────────────────────────────────

    def verify_webhook_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not verify_webhook(self.webhook_secret, raw_body, signature):
            logger.warning("Rejected webhook with invalid signature")
            raise InvalidWebhookSignature()

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> str:
        """Verify, parse and process one delivery; returns the outcome."""
        self.verify_webhook_signature(raw_body, signature)
        try:
            event = json.loads(raw_body)
        except ValueError as exc:
            raise BadRequestError("Malformed webhook payload") from exc
        if not isinstance(event, dict):
            raise BadRequestError("Malformed webhook payload")
        return await self.process_webhook(event)

    async def process_webhook(self, event: dict) -> str:
        name = event.get("event")
        payload = event.get("payload") or {}
        payment_entity = (payload.get("payment") or {}).get("entity") or {}
        order_entity = (payload.get("order") or {}).get("entity") or {}
        order_id = payment_entity.get("order_id") or order_entity.get("id")

        if name not in CAPTURE_EVENTS and name != FAILURE_EVENT:
            logger.info("Webhook event %s acknowledged", name)
            return "acknowledged"

        order = await self.payments.get_order(order_id) if order_id else None
        if order is None:
            logger.info("Webhook %s for unknown order %s ignored", name, order_id)
            return "ignored"
        payment = await self.payments.get_by_id(order.payment_id)

        if name == FAILURE_EVENT:
            if order.order_id != payment.gateway_order_id:
                logger.info(
                    "Webhook %s for superseded order %s ignored", name, order.order_id
                )
                return "ignored"
            if payment.status is not PaymentStatus.PENDING:
                logger.info(
                    "Webhook %s for payment %s skipped (already %s)",
                    name, payment.id, payment.status.value,
                )
                return "skipped"
            reason = payment_entity.get("error_description") or "Payment failed"
            await self.fail(payment, reason)
            await self.session.commit()
            return "failed"

        amount_minor = payment_entity.get("amount") or order_entity.get("amount_paid")
        paid = amount_minor // 100 if amount_minor else order.amount
        won = await self.capture(
            payment,
            payment_entity.get("id"),
            paid,
            method=GATEWAY_METHODS.get(payment_entity.get("method")),
            order=order,
        )
        return "processed" if won else "skipped"

    # ── Refunds ───────────────────────────────────────────────────────

    async def refund(self, payment: PaymentModel, amount: int) -> RefundOutcome:
        """
        Refund *amount* of a COMPLETED payment.  Any failure is reported as
        ``MANUAL_INTERVENTION_REQUIRED`` instead of raising, so a refund
        problem never undoes the cancellation that asked for it.
        """
        if not payment.gateway_payment_id:
            logger.error(
                "Payment %s has no gateway payment id; manual refund of Rs %d required",
                payment.id, amount,
            )
            return RefundOutcome(MANUAL_REFUND, amount)
        try:
            result = await self.gateway.refund(
                payment.gateway_payment_id, to_minor_units(amount)
            )
        except Exception:
            logger.exception(
                "Refund of Rs %d for payment %s failed; manual refund required",
                amount, payment.id,
            )
            return RefundOutcome(MANUAL_REFUND, amount)

        paid = payment.paid_amount or payment.amount
        new_status = (
            PaymentStatus.REFUNDED if amount >= paid
            else PaymentStatus.PARTIALLY_REFUNDED
        )
        await self.payments.transition(
            payment.id,
            [PaymentStatus.COMPLETED],
            new_status,
            refund_id=result.get("id"),
            refunded_amount=amount,
        )
        await self.payments.refresh(payment)
        logger.info("Refunded Rs %d for payment %s", amount, payment.id)
        return RefundOutcome("PROCESSED", amount, result.get("id"))
