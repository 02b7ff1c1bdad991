"""
Payment reconciliation tests.

The checkout callback and the gateway webhook can both report the same
capture; exactly one of them may confirm the booking and notify the
customer.  Runs against SQLite with a fake gateway.
"""

import json
from datetime import timedelta
from unittest.mock import AsyncMock

import httpx
import pytest

from cabbooking.config import settings
from cabbooking.domain.entities import Identity
from cabbooking.domain.enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    UserRole,
)
from cabbooking.errors import AuthorizationError, BadRequestError
from cabbooking.infrastructure.repositories import PaymentRepository
from cabbooking.integrations.gateway import (
    RazorpayGateway,
    sign_order_payment,
    sign_webhook,
)
from cabbooking.services.payments import MANUAL_REFUND, REFUNDED


async def order_row(session, order_id):
    order = await PaymentRepository(session).get_order(order_id)
    await session.refresh(order)
    return order


def customer(seeded):
    return Identity(seeded.customer.id, UserRole.CUSTOMER)


def captured_event(order_id, payment_id="pay_hook", amount=362300, method="upi"):
    return {
        "event": "payment.captured",
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": order_id,
                    "amount": amount,
                    "method": method,
                }
            }
        },
    }


class TestOrders:
    @pytest.mark.asyncio
    async def test_online_booking_opens_gateway_order(self, book, gateway, notifier):
        created = await book(PaymentMethod.UPI)

        assert created.booking.status is BookingStatus.PENDING
        assert created.payment.status is PaymentStatus.PENDING
        assert created.order["amount"] == 362300
        assert created.order["receipt"] == created.booking.reference
        assert created.payment.gateway_order_id == gateway.orders[0]["id"]
        assert notifier.sent == []

    @pytest.mark.asyncio
    async def test_cash_booking_skips_gateway(self, book, gateway, notifier):
        created = await book(PaymentMethod.CASH)

        assert created.order is None
        assert gateway.orders == []
        assert created.booking.status is BookingStatus.CONFIRMED
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1


class TestClientVerification:
    @pytest.mark.asyncio
    async def test_verify_confirms_once(self, book, reconciler, notifier, seeded):
        created = await book()
        order_id = created.order["id"]
        identity = Identity(seeded.customer.id, UserRole.CUSTOMER)
        sig = sign_order_payment(settings.gateway_key_secret, order_id, "pay_001")

        first = await reconciler.verify_client_payment(
            identity, created.booking.id, order_id, "pay_001", sig
        )
        assert not first.already_verified
        assert first.booking.status is BookingStatus.CONFIRMED
        assert first.payment.status is PaymentStatus.COMPLETED
        assert first.payment.paid_amount == 3623
        assert first.payment.gateway_payment_id == "pay_001"

        replay = await reconciler.verify_client_payment(
            identity, created.booking.id, order_id, "pay_001", sig
        )
        assert replay.already_verified
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1

    @pytest.mark.asyncio
    async def test_bad_signature_fails_payment(self, book, reconciler, seeded):
        created = await book()
        identity = Identity(seeded.customer.id, UserRole.CUSTOMER)

        with pytest.raises(BadRequestError, match="verification failed"):
            await reconciler.verify_client_payment(
                identity, created.booking.id, created.order["id"], "pay_001", "forged"
            )
        assert created.payment.status is PaymentStatus.FAILED
        assert created.payment.failure_reason == "Invalid payment signature"
        assert created.booking.status is BookingStatus.REJECTED

    @pytest.mark.asyncio
    async def test_order_mismatch(self, book, reconciler, seeded):
        created = await book()
        identity = Identity(seeded.customer.id, UserRole.CUSTOMER)
        sig = sign_order_payment(settings.gateway_key_secret, "order_other", "pay_001")

        with pytest.raises(BadRequestError, match="does not match"):
            await reconciler.verify_client_payment(
                identity, created.booking.id, "order_other", "pay_001", sig
            )
        assert created.payment.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_only_owner_may_verify(self, book, reconciler, seeded):
        created = await book()
        order_id = created.order["id"]
        sig = sign_order_payment(settings.gateway_key_secret, order_id, "pay_001")

        with pytest.raises(AuthorizationError):
            await reconciler.verify_client_payment(
                Identity(seeded.other_customer.id, UserRole.CUSTOMER),
                created.booking.id, order_id, "pay_001", sig,
            )


class TestWebhook:
    @pytest.mark.asyncio
    async def test_capture_then_duplicate(self, book, reconciler, notifier):
        created = await book()
        event = captured_event(created.order["id"])

        assert await reconciler.process_webhook(event) == "processed"
        assert created.payment.status is PaymentStatus.COMPLETED
        assert created.payment.method is PaymentMethod.UPI
        assert created.booking.status is BookingStatus.CONFIRMED

        assert await reconciler.process_webhook(event) == "skipped"
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1

    @pytest.mark.asyncio
    async def test_webhook_then_client_callback(self, book, reconciler, notifier, seeded):
        created = await book()
        order_id = created.order["id"]
        await reconciler.process_webhook(captured_event(order_id, "pay_001"))

        sig = sign_order_payment(settings.gateway_key_secret, order_id, "pay_001")
        result = await reconciler.verify_client_payment(
            Identity(seeded.customer.id, UserRole.CUSTOMER),
            created.booking.id, order_id, "pay_001", sig,
        )
        assert result.already_verified
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1

    @pytest.mark.asyncio
    async def test_unknown_order_is_ignored(self, book, reconciler):
        created = await book()
        assert await reconciler.process_webhook(captured_event("order_nope")) == "ignored"
        assert created.payment.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_other_events_acknowledged(self, reconciler):
        assert await reconciler.process_webhook({"event": "refund.created"}) == "acknowledged"

    @pytest.mark.asyncio
    async def test_payment_failed(self, book, reconciler, gateway, db_session):
        created = await book()
        order_id = created.order["id"]
        event = {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {
                "id": "pay_x", "order_id": order_id,
                "error_description": "Card declined",
            }}},
        }

        assert await reconciler.process_webhook(event) == "failed"
        assert created.payment.status is PaymentStatus.FAILED
        assert created.payment.failure_reason == "Card declined"
        assert created.booking.status is BookingStatus.REJECTED

        # A capture arriving after the failure cannot revive the booking;
        # the money is handed back instead.
        assert await reconciler.process_webhook(captured_event(order_id)) == "skipped"
        assert created.booking.status is BookingStatus.REJECTED
        assert gateway.refunds == [("pay_hook", 362300)]
        order = await order_row(db_session, order_id)
        assert order.gateway_payment_id == "pay_hook"
        assert order.settlement == REFUNDED
        assert order.settlement_amount == 3623

    @pytest.mark.asyncio
    async def test_partial_amount_is_advance(self, book, reconciler):
        created = await book()
        event = captured_event(created.order["id"], amount=100000, method="card")

        assert await reconciler.process_webhook(event) == "processed"
        assert created.payment.status is PaymentStatus.ADVANCE_PAID
        assert created.payment.paid_amount == 1000
        assert created.payment.method is PaymentMethod.CARD
        assert created.booking.status is BookingStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_order_paid_event(self, book, reconciler):
        created = await book()
        event = {
            "event": "order.paid",
            "payload": {"order": {"entity": {
                "id": created.order["id"], "amount_paid": 362300,
            }}},
        }
        assert await reconciler.process_webhook(event) == "processed"
        assert created.payment.status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_signature_checked_on_raw_body(self, book, reconciler):
        created = await book()
        raw = json.dumps(captured_event(created.order["id"])).encode()

        with pytest.raises(BadRequestError, match="Invalid webhook signature"):
            await reconciler.handle_webhook(raw, "bad")
        with pytest.raises(BadRequestError):
            await reconciler.handle_webhook(raw, None)

        sig = sign_webhook(settings.gateway_webhook_secret, raw)
        assert await reconciler.handle_webhook(raw, sig) == "processed"


class TestRefunds:
    async def _paid_booking(self, book, reconciler):
        created = await book()
        await reconciler.process_webhook(captured_event(created.order["id"], "pay_001"))
        return created

    @pytest.mark.asyncio
    async def test_full_refund_outside_window(self, book, reconciler, service, gateway, seeded):
        created = await self._paid_booking(book, reconciler)

        result = await service.cancel(
            Identity(seeded.customer.id, UserRole.CUSTOMER), created.booking.id, "Plans changed"
        )
        assert result.quote.charge == 0
        assert result.refund_status == "PROCESSED"
        assert gateway.refunds == [("pay_001", 362300)]
        assert result.payment.status is PaymentStatus.REFUNDED
        assert result.payment.refunded_amount == 3623
        assert result.booking.status is BookingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_partial_refund_inside_window(self, book, reconciler, service, gateway, seeded):
        created = await self._paid_booking(book, reconciler)
        now = created.booking.start_time - timedelta(hours=3)

        result = await service.cancel(
            Identity(seeded.customer.id, UserRole.CUSTOMER), created.booking.id, now=now
        )
        assert result.quote.charge == 725
        assert result.quote.refund_amount == 2898
        assert gateway.refunds == [("pay_001", 289800)]
        assert result.payment.status is PaymentStatus.PARTIALLY_REFUNDED

    @pytest.mark.asyncio
    async def test_gateway_failure_needs_manual_refund(
        self, book, reconciler, service, gateway, seeded
    ):
        created = await self._paid_booking(book, reconciler)
        gateway.fail_refunds = True

        result = await service.cancel(
            Identity(seeded.customer.id, UserRole.CUSTOMER), created.booking.id
        )
        assert result.refund_status == MANUAL_REFUND
        assert result.booking.status is BookingStatus.CANCELLED
        assert result.payment.status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_advance_payment_is_not_refunded(
        self, book, reconciler, service, gateway, seeded
    ):
        created = await book()
        await reconciler.process_webhook(captured_event(created.order["id"], amount=100000))

        result = await service.cancel(
            Identity(seeded.customer.id, UserRole.CUSTOMER), created.booking.id
        )
        assert result.refund is None
        assert result.refund_status == "NOT_APPLICABLE"
        assert gateway.refunds == []

    @pytest.mark.asyncio
    async def test_unreadable_gateway_reply_keeps_cancellation(
        self, book, reconciler, service, seeded
    ):
        created = await self._paid_booking(book, reconciler)
        reconciler.gateway = RazorpayGateway(
            "https://api.test/v1", "key", "secret",
            client=httpx.AsyncClient(
                base_url="https://api.test/v1",
                transport=httpx.MockTransport(
                    lambda request: httpx.Response(200, text="<html>ok</html>")
                ),
            ),
        )

        result = await service.cancel(customer(seeded), created.booking.id)
        assert result.booking.status is BookingStatus.CANCELLED
        assert result.refund_status == MANUAL_REFUND
        assert result.payment.status is PaymentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_keeps_cancellation(
        self, book, reconciler, service, gateway, seeded
    ):
        created = await self._paid_booking(book, reconciler)
        gateway.refund = AsyncMock(side_effect=RuntimeError("connection reset"))

        result = await service.cancel(customer(seeded), created.booking.id)
        assert result.booking.status is BookingStatus.CANCELLED
        assert result.refund_status == MANUAL_REFUND

    @pytest.mark.asyncio
    async def test_missing_gateway_payment_id(self, book, reconciler, service, gateway, seeded):
        created = await book()
        await reconciler.process_webhook({
            "event": "order.paid",
            "payload": {"order": {"entity": {
                "id": created.order["id"], "amount_paid": 362300,
            }}},
        })
        assert created.payment.gateway_payment_id is None

        result = await service.cancel(customer(seeded), created.booking.id)
        assert result.booking.status is BookingStatus.CANCELLED
        assert result.refund_status == MANUAL_REFUND
        assert gateway.refunds == []


class TestSupersededOrders:
    """A discount re-opens the order; the first one can still be paid."""

    async def _discounted(self, book, service, seeded):
        created = await book(PaymentMethod.UPI)
        result = await service.apply_discount(customer(seeded), created.booking.id, "SAVE10")
        assert result.payment.amount == 3308
        return created, created.order["id"], result.order["id"]

    @pytest.mark.asyncio
    async def test_first_order_paid_after_discount(
        self, book, service, reconciler, gateway, notifier, seeded, db_session
    ):
        created, first, second = await self._discounted(book, service, seeded)

        outcome = await reconciler.process_webhook(
            captured_event(first, "pay_first", amount=362300)
        )
        assert outcome == "processed"
        assert created.booking.status is BookingStatus.CONFIRMED
        assert created.payment.status is PaymentStatus.COMPLETED
        assert created.payment.paid_amount == 3308
        assert created.payment.gateway_order_id == first
        assert created.payment.gateway_payment_id == "pay_first"

        # The surplus over the discounted fare goes back at once.
        assert gateway.refunds == [("pay_first", 31500)]
        order = await order_row(db_session, first)
        assert order.captured_amount == 3623
        assert order.settlement == REFUNDED
        assert order.settlement_amount == 315

        # Paying the newer order as well is refunded in full.
        outcome = await reconciler.process_webhook(
            captured_event(second, "pay_second", amount=330800)
        )
        assert outcome == "skipped"
        assert gateway.refunds[-1] == ("pay_second", 330800)
        assert (await order_row(db_session, second)).settlement == REFUNDED
        assert created.payment.gateway_payment_id == "pay_first"
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1

    @pytest.mark.asyncio
    async def test_client_callback_with_first_order(
        self, book, service, reconciler, gateway, seeded
    ):
        created, first, _ = await self._discounted(book, service, seeded)
        sig = sign_order_payment(settings.gateway_key_secret, first, "pay_first")

        result = await reconciler.verify_client_payment(
            customer(seeded), created.booking.id, first, "pay_first", sig
        )
        assert not result.already_verified
        assert result.booking.status is BookingStatus.CONFIRMED
        assert result.payment.paid_amount == 3308
        assert gateway.refunds == [("pay_first", 31500)]

    @pytest.mark.asyncio
    async def test_failure_on_old_order_is_ignored(self, book, service, reconciler, seeded):
        created, first, _ = await self._discounted(book, service, seeded)
        event = {
            "event": "payment.failed",
            "payload": {"payment": {"entity": {"id": "pay_x", "order_id": first}}},
        }
        assert await reconciler.process_webhook(event) == "ignored"
        assert created.payment.status is PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_refund_failure_is_flagged(
        self, book, service, reconciler, gateway, seeded, db_session
    ):
        created, first, _ = await self._discounted(book, service, seeded)
        gateway.fail_refunds = True

        assert await reconciler.process_webhook(
            captured_event(first, "pay_first", amount=362300)
        ) == "processed"
        assert created.booking.status is BookingStatus.CONFIRMED
        order = await order_row(db_session, first)
        assert order.settlement == MANUAL_REFUND
        assert order.settlement_amount == 315
        assert order.refund_id is None
