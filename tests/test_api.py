"""
Integration tests for the REST API endpoints.

Uses an in-memory SQLite database and the fake gateway / distance /
notification collaborators from ``conftest``.  Every booking here is the
230 km Bengaluru -> Mysuru sedan trip (Rs 3450 + Rs 173 GST = Rs 3623).
"""

import json

import pytest

from cabbooking.config import settings
from cabbooking.domain.enums import UserRole
from cabbooking.integrations.gateway import sign_order_payment, sign_webhook
from tests.conftest import auth_header, local_time

PICKUP = {"city": "Bengaluru", "address": "MG Road", "lat": 12.9756, "lng": 77.605}
DROP = {"city": "Mysuru", "address": "Palace Road", "lat": 12.3052, "lng": 76.6552}


def booking_body(**overrides):
    body = {
        "trip_type": "ONE_WAY",
        "vehicle_class": "SEDAN",
        "pickup": PICKUP,
        "drop": DROP,
        "start_time": local_time(3).isoformat(),
        "payment_method": "CASH",
    }
    body.update(overrides)
    return body


async def create_booking(client, user, **overrides):
    resp = await client.post(
        "/api/v1/bookings", json=booking_body(**overrides), headers=auth_header(user.id)
    )
    assert resp.status_code in (200, 201), resp.text
    return resp.json()


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/api/v1/admin/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "database": "ok", "redis": "ok"}


class TestSearchEndpoints:
    @pytest.mark.asyncio
    async def test_search_and_reopen(self, client):
        resp = await client.post("/api/v1/search", json={
            "trip_type": "ONE_WAY",
            "pickup": PICKUP,
            "drop": DROP,
            "start_time": local_time(3).isoformat(),
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["distance_km"] == 230
        assert len(data["options"]) == 6
        sedan = next(o for o in data["options"] if o["vehicle"]["vehicle_class"] == "SEDAN")
        assert sedan["recommended"]
        assert sedan["fare"]["final_amount"] == 3623

        again = await client.get(f"/api/v1/search/{data['search_id']}")
        assert again.status_code == 200
        assert again.json()["options"] == data["options"]

    @pytest.mark.asyncio
    async def test_unknown_search(self, client):
        resp = await client.get("/api/v1/search/doesnotexist")
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_naive_start_time_rejected(self, client):
        resp = await client.post("/api/v1/search", json={
            "trip_type": "ONE_WAY",
            "pickup": PICKUP,
            "drop": DROP,
            "start_time": "2030-01-01T10:00:00",
        })
        assert resp.status_code == 400
        assert resp.json()["detail"] == "Validation failed"

    @pytest.mark.asyncio
    async def test_distance_service_down(self, client, distance):
        distance.km = None
        resp = await client.post("/api/v1/search", json={
            "trip_type": "ONE_WAY",
            "pickup": PICKUP,
            "drop": DROP,
            "start_time": local_time(3).isoformat(),
        })
        assert resp.status_code == 503
        assert resp.json()["detail"] == "Unable to calculate distance"

    @pytest.mark.asyncio
    async def test_estimate_package(self, client):
        resp = await client.post("/api/v1/estimate-fare", json={
            "trip_type": "LOCAL_8_80",
            "vehicle_class": "SUV",
            "start_time": local_time(3).isoformat(),
        })
        assert resp.status_code == 200
        fare = resp.json()
        assert fare["final_amount"] == 1994
        assert fare["included_km"] == 80

    @pytest.mark.asyncio
    async def test_estimate_outstation_needs_distance(self, client):
        resp = await client.post("/api/v1/estimate-fare", json={
            "trip_type": "ONE_WAY",
            "vehicle_class": "SEDAN",
            "start_time": local_time(3).isoformat(),
        })
        assert resp.status_code == 400


class TestCreateBooking:
    @pytest.mark.asyncio
    async def test_requires_auth(self, client):
        resp = await client.post("/api/v1/bookings", json=booking_body())
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_bad_token(self, client):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_body(),
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_cash_booking(self, client, seeded):
        resp = await client.post(
            "/api/v1/bookings", json=booking_body(), headers=auth_header(seeded.customer.id)
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "CONFIRMED"
        assert data["fare"]["base_fare"] == 3450
        assert data["fare"]["gst"] == 173
        assert data["fare"]["final_amount"] == 3623
        assert data["payment"]["method"] == "CASH"
        assert data["passenger"]["phone"] == "9876543210"

    @pytest.mark.asyncio
    async def test_online_booking_returns_checkout(self, client, seeded):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_body(payment_method="UPI"),
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["booking"]["status"] == "PENDING"
        assert data["amount"] == 362300
        assert data["currency"] == "INR"
        assert data["key_id"] == "rzp_test_key"
        assert data["order_id"] == data["booking"]["payment"]["gateway_order_id"]
        assert data["prefill"]["contact"] == "9876543210"

    @pytest.mark.asyncio
    async def test_client_amount_is_ignored(self, client, seeded):
        data = await create_booking(client, seeded.customer, final_amount=1)
        assert data["fare"]["final_amount"] == 3623

    @pytest.mark.asyncio
    async def test_duplicate_booking(self, client, seeded):
        await create_booking(client, seeded.customer)
        resp = await client.post(
            "/api/v1/bookings", json=booking_body(), headers=auth_header(seeded.customer.id)
        )
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_passenger_phone(self, client, seeded):
        resp = await client.post(
            "/api/v1/bookings",
            json=booking_body(passenger={"name": "Meera", "phone": "12345"}),
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 400


class TestReadBookings:
    @pytest.mark.asyncio
    async def test_get_and_list(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        headers = auth_header(seeded.customer.id)

        resp = await client.get(f"/api/v1/bookings/{created['id']}", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["reference"] == created["reference"]

        resp = await client.get("/api/v1/bookings?status=CONFIRMED", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["total"] == 1
        assert resp.json()["items"][0]["id"] == created["id"]

    @pytest.mark.asyncio
    async def test_not_found(self, client, seeded):
        resp = await client.get("/api/v1/bookings/999", headers=auth_header(seeded.customer.id))
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_other_customer_forbidden(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        resp = await client.get(
            f"/api/v1/bookings/{created['id']}",
            headers=auth_header(seeded.other_customer.id),
        )
        assert resp.status_code == 403


class TestBookingLookups:
    @pytest.mark.asyncio
    async def test_by_reference(self, client, seeded):
        booking = await create_booking(client, seeded.customer)
        reference = booking["reference"]

        resp = await client.get(
            f"/api/v1/bookings/code/{reference.lower()}",
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 200
        assert resp.json()["id"] == booking["id"]

        resp = await client.get(
            f"/api/v1/bookings/code/{reference}",
            headers=auth_header(seeded.other_customer.id),
        )
        assert resp.status_code == 404

    @pytest.mark.asyncio
    async def test_upcoming_and_history(self, client, seeded):
        later = await create_booking(client, seeded.customer,
                                     start_time=local_time(5).isoformat())
        sooner = await create_booking(client, seeded.customer)
        await create_booking(client, seeded.customer, payment_method="UPI",
                             start_time=local_time(4).isoformat())
        headers = auth_header(seeded.customer.id)

        resp = await client.get("/api/v1/bookings/upcoming", headers=headers)
        assert resp.status_code == 200
        assert [b["id"] for b in resp.json()] == [sooner["id"], later["id"]]

        await client.patch(f"/api/v1/bookings/{later['id']}/cancel", json={}, headers=headers)
        resp = await client.get("/api/v1/bookings/history", headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == later["id"]
        assert data["items"][0]["status"] == "CANCELLED"


class TestBookingEdits:
    @pytest.mark.asyncio
    async def test_edit_notes_and_time(self, client, seeded):
        booking = await create_booking(client, seeded.customer)
        headers = auth_header(seeded.customer.id)

        resp = await client.put(
            f"/api/v1/bookings/{booking['id']}",
            json={"notes": "Two suitcases", "special_requests": ["child seat"]},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["notes"] == "Two suitcases"
        assert resp.json()["special_requests"] == ["child seat"]

        # A night start adds the night charge to a cash fare.
        resp = await client.put(
            f"/api/v1/bookings/{booking['id']}",
            json={"start_time": local_time(3, 23).isoformat()},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["fare"]["final_amount"] == 4347
        assert resp.json()["payment"]["amount"] == 4347

    @pytest.mark.asyncio
    async def test_pending_booking_cannot_be_edited(self, client, seeded):
        checkout = await create_booking(client, seeded.customer, payment_method="UPI")
        resp = await client.put(
            f"/api/v1/bookings/{checkout['booking']['id']}",
            json={"notes": "Gate 2"},
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 400
        assert "Only confirmed bookings" in resp.json()["detail"]

    @pytest.mark.asyncio
    async def test_other_customer_cannot_edit(self, client, seeded):
        booking = await create_booking(client, seeded.customer)
        resp = await client.put(
            f"/api/v1/bookings/{booking['id']}",
            json={"notes": "Gate 2"},
            headers=auth_header(seeded.other_customer.id),
        )
        assert resp.status_code == 403


class TestPaymentFlow:
    @pytest.mark.asyncio
    async def test_verify_payment(self, client, seeded, notifier):
        checkout = await create_booking(client, seeded.customer, payment_method="CARD")
        booking_id = checkout["booking"]["id"]
        body = {
            "booking_id": booking_id,
            "razorpay_order_id": checkout["order_id"],
            "razorpay_payment_id": "pay_001",
            "razorpay_signature": sign_order_payment(
                settings.gateway_key_secret, checkout["order_id"], "pay_001"
            ),
        }
        headers = auth_header(seeded.customer.id)

        resp = await client.post("/api/v1/bookings/verify-payment", json=body, headers=headers)
        assert resp.status_code == 200
        data = resp.json()
        assert not data["already_verified"]
        assert data["booking"]["status"] == "CONFIRMED"
        assert data["booking"]["payment"]["status"] == "COMPLETED"

        resp = await client.post("/api/v1/bookings/verify-payment", json=body, headers=headers)
        assert resp.status_code == 200
        assert resp.json()["already_verified"]
        assert len(notifier.of_type("BOOKING_CONFIRMED")) == 1

    @pytest.mark.asyncio
    async def test_forged_signature(self, client, seeded):
        checkout = await create_booking(client, seeded.customer, payment_method="UPI")
        headers = auth_header(seeded.customer.id)
        resp = await client.post("/api/v1/bookings/verify-payment", json={
            "booking_id": checkout["booking"]["id"],
            "razorpay_order_id": checkout["order_id"],
            "razorpay_payment_id": "pay_001",
            "razorpay_signature": "0" * 64,
        }, headers=headers)
        assert resp.status_code == 400

        resp = await client.get(f"/api/v1/bookings/{checkout['booking']['id']}", headers=headers)
        assert resp.json()["status"] == "REJECTED"
        assert resp.json()["payment"]["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_webhook_confirms_booking(self, client, seeded):
        checkout = await create_booking(client, seeded.customer, payment_method="UPI")
        raw = json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {
                "id": "pay_hook", "order_id": checkout["order_id"],
                "amount": 362300, "method": "upi",
            }}},
        }).encode()
        headers = {
            "Content-Type": "application/json",
            "X-Razorpay-Signature": sign_webhook(settings.gateway_webhook_secret, raw),
        }

        resp = await client.post("/api/v1/payments/webhook", content=raw, headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

        resp = await client.get(
            f"/api/v1/bookings/{checkout['booking']['id']}",
            headers=auth_header(seeded.customer.id),
        )
        assert resp.json()["status"] == "CONFIRMED"
        assert resp.json()["payment"]["gateway_order_id"] == checkout["order_id"]

    @pytest.mark.asyncio
    async def test_webhook_bad_signature(self, client):
        raw = b'{"event": "payment.captured"}'
        resp = await client.post(
            "/api/v1/payments/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": "bad"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_webhook_processing_error_is_acknowledged(self, client):
        raw = b"[1, 2, 3]"
        resp = await client.post(
            "/api/v1/payments/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": sign_webhook(settings.gateway_webhook_secret, raw)},
        )
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_webhook_malformed_json_is_acknowledged(self, client):
        raw = b"not json"
        resp = await client.post(
            "/api/v1/payments/webhook",
            content=raw,
            headers={"X-Razorpay-Signature": sign_webhook(settings.gateway_webhook_secret, raw)},
        )
        assert resp.status_code == 200


class TestCancellation:
    @pytest.mark.asyncio
    async def test_preview_then_cancel(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        headers = auth_header(seeded.customer.id)

        resp = await client.get(
            f"/api/v1/bookings/{created['id']}/cancellation-charges", headers=headers
        )
        assert resp.status_code == 200
        assert resp.json()["cancellable"]
        assert resp.json()["charge"] == 0

        resp = await client.patch(
            f"/api/v1/bookings/{created['id']}/cancel",
            json={"reason": "Plans changed"},
            headers=headers,
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["booking"]["status"] == "CANCELLED"
        assert data["booking"]["cancellation"]["reason"] == "Plans changed"
        assert data["refund_status"] == "NOT_APPLICABLE"

        resp = await client.patch(f"/api/v1/bookings/{created['id']}/cancel", headers=headers)
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_preview_of_final_booking(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        headers = auth_header(seeded.customer.id)
        await client.patch(f"/api/v1/bookings/{created['id']}/cancel", headers=headers)

        resp = await client.get(
            f"/api/v1/bookings/{created['id']}/cancellation-charges", headers=headers
        )
        assert resp.status_code == 400


class TestTripLifecycle:
    @pytest.mark.asyncio
    async def test_assign_start_complete_rate(self, client, seeded, notifier):
        created = await create_booking(client, seeded.customer)
        url = f"/api/v1/bookings/{created['id']}"
        admin = auth_header(seeded.admin.id, UserRole.ADMIN)
        driver = auth_header(seeded.driver_user.id, UserRole.DRIVER)
        customer = auth_header(seeded.customer.id)

        resp = await client.patch(f"{url}/status", json={
            "status": "ASSIGNED", "driver_id": seeded.driver.id,
        }, headers=admin)
        assert resp.status_code == 200
        assert resp.json()["driver_id"] == seeded.driver.id
        assert notifier.of_type("BOOKING_ASSIGNED")

        resp = await client.patch(f"{url}/status", json={"status": "IN_PROGRESS"}, headers=driver)
        assert resp.status_code == 200
        assert resp.json()["actual_start"] is not None

        resp = await client.post(f"{url}/rating", json={"rating": 5}, headers=customer)
        assert resp.status_code == 400

        resp = await client.patch(f"{url}/status", json={"status": "COMPLETED"}, headers=driver)
        assert resp.status_code == 200
        assert resp.json()["status"] == "COMPLETED"

        resp = await client.post(f"{url}/rating", json={"rating": 5, "comment": "Great"},
                                 headers=customer)
        assert resp.status_code == 200
        assert resp.json()["rating"]["value"] == 5

        resp = await client.post(f"{url}/rating", json={"rating": 4}, headers=customer)
        assert resp.status_code == 409

    @pytest.mark.asyncio
    async def test_customer_cannot_update_status(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        resp = await client.patch(
            f"/api/v1/bookings/{created['id']}/status",
            json={"status": "COMPLETED"},
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 403

    @pytest.mark.asyncio
    async def test_rating_out_of_range(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        resp = await client.post(
            f"/api/v1/bookings/{created['id']}/rating",
            json={"rating": 6},
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 400


class TestDiscounts:
    @pytest.mark.asyncio
    async def test_apply_code(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        resp = await client.post(
            f"/api/v1/bookings/{created['id']}/apply-discount",
            json={"code": "FIRST100"},
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["discount_amount"] == 100
        assert data["final_amount"] == 3518
        assert data["booking"]["payment"]["amount"] == 3518
        assert data["order_id"] is None

    @pytest.mark.asyncio
    async def test_unknown_code(self, client, seeded):
        created = await create_booking(client, seeded.customer)
        resp = await client.post(
            f"/api/v1/bookings/{created['id']}/apply-discount",
            json={"code": "BOGUS"},
            headers=auth_header(seeded.customer.id),
        )
        assert resp.status_code == 400
        assert "Invalid discount code" in resp.json()["detail"]
