"""
API tests for generic payment verification, refunds and the webhook receiver.
"""

import json

import pytest
from fastapi import status

from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.test_rides.enums import BookingStatus

from fakes import checkout_signature, webhook_signature


@pytest.fixture
def bearer(make_token):
    def _bearer(user):
        return {"Authorization": f"Bearer {make_token(user)}"}

    return _bearer


@pytest.fixture
def captured_ride(book_ride, settlement, razorpay_api):
    async def _captured():
        booking, payment_order = await book_ride()
        payment_id = razorpay_api.add_payment(payment_order.id)
        await settlement.settle_capture(payment_order, payment_id)
        return booking, payment_id

    return _captured


# ============================================================================
# Verification Tests
# ============================================================================


class TestGenericVerification:
    """Test POST /payments/verify."""

    @pytest.mark.asyncio
    async def test_verify_names_entity_explicitly(
        self, api_client, book_ride, bearer, customer, razorpay_api
    ) -> None:
        booking, payment_order = await book_ride()
        payment_id = razorpay_api.add_payment(payment_order.id)
        body = {
            "entity_type": "test_ride",
            "entity_id": str(booking.id),
            "razorpay_order_id": payment_order.id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": checkout_signature(payment_order.id, payment_id),
        }

        first = await api_client.post("/api/v1/payments/verify", json=body, headers=bearer(customer))
        second = await api_client.post("/api/v1/payments/verify", json=body, headers=bearer(customer))

        assert first.json()["status"] == "verified"
        assert second.json()["status"] == "already_verified"

    @pytest.mark.asyncio
    async def test_unknown_entity_type_is_422(self, api_client, bearer, customer) -> None:
        response = await api_client.post(
            "/api/v1/payments/verify",
            json={
                "entity_type": "gift_card",
                "entity_id": "5b0c4a7e-3d4c-4a53-9a0f-2e4f1c7f8e11",
                "razorpay_order_id": "order_1",
                "razorpay_payment_id": "pay_1",
                "razorpay_signature": "sig",
            },
            headers=bearer(customer),
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY


# ============================================================================
# Refund Tests
# ============================================================================


class TestRefundEndpoint:
    """Test POST /payments/refund."""

    @pytest.mark.asyncio
    async def test_admin_refund_created(self, api_client, captured_ride, bearer, admin) -> None:
        booking, payment_id = await captured_ride()

        response = await api_client.post(
            "/api/v1/payments/refund",
            json={"payment_id": payment_id, "amount": "500.00", "reason": "Goodwill"},
            headers=bearer(admin),
        )

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["amount"] == "500.00"
        assert data["refundable_remaining"] == "1500.00"
        assert data["entity_payment_status"] == "partial_refund"
        assert booking.payment_status == PaymentStatus.PARTIAL_REFUND

    @pytest.mark.asyncio
    async def test_customer_forbidden(self, api_client, captured_ride, bearer, customer) -> None:
        _, payment_id = await captured_ride()

        response = await api_client.post(
            "/api/v1/payments/refund", json={"payment_id": payment_id}, headers=bearer(customer)
        )

        assert response.status_code == status.HTTP_403_FORBIDDEN

    @pytest.mark.asyncio
    async def test_over_refund_is_409(self, api_client, captured_ride, bearer, admin) -> None:
        _, payment_id = await captured_ride()

        response = await api_client.post(
            "/api/v1/payments/refund",
            json={"payment_id": payment_id, "amount": "2500.00"},
            headers=bearer(admin),
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        data = response.json()
        assert data["error"] == "REFUND_EXCEEDS_CAPTURED"
        assert data["details"]["refundable"] == "2000.00"

    @pytest.mark.asyncio
    async def test_gateway_rejection_is_502_with_description(
        self, api_client, captured_ride, bearer, admin, razorpay_api
    ) -> None:
        _, payment_id = await captured_ride()
        razorpay_api.fail_next(
            400,
            {"error": {"code": "BAD_REQUEST_ERROR", "description": "The payment has been fully refunded"}},
        )

        response = await api_client.post(
            "/api/v1/payments/refund", json={"payment_id": payment_id}, headers=bearer(admin)
        )

        assert response.status_code == status.HTTP_502_BAD_GATEWAY
        data = response.json()
        assert data["message"] == "The payment has been fully refunded"
        assert data["details"]["retryable"] is False


# ============================================================================
# Webhook Tests
# ============================================================================


class TestWebhookEndpoint:
    """Test POST /webhooks/razorpay."""

    @pytest.mark.asyncio
    async def test_signed_capture_acknowledged(self, api_client, book_ride, db) -> None:
        # Arrange
        booking, payment_order = await book_ride()
        body = json.dumps(
            {
                "event": "payment.captured",
                "payload": {
                    "payment": {
                        "entity": {
                            "id": "pay_hook",
                            "order_id": payment_order.id,
                            "amount": 200000,
                            "status": "captured",
                        }
                    }
                },
            }
        ).encode("utf-8")

        # Act
        response = await api_client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={
                "Content-Type": "application/json",
                "X-Razorpay-Signature": webhook_signature(body),
                "X-Razorpay-Event-Id": "evt_100",
            },
        )

        # Assert
        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"status": "ok"}
        assert booking.status == BookingStatus.CONFIRMED
        [event] = db.webhook_events.values()
        assert event.event_id == "evt_100"

    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, api_client, db) -> None:
        response = await api_client.post(
            "/api/v1/webhooks/razorpay",
            content=b'{"event":"payment.captured"}',
            headers={"X-Razorpay-Signature": "forged"},
        )

        assert response.status_code == status.HTTP_401_UNAUTHORIZED
        assert response.json()["error"] == "INVALID_SIGNATURE"
        assert db.webhook_events == {}

    @pytest.mark.asyncio
    async def test_webhook_needs_no_bearer_token(self, api_client) -> None:
        body = b'{"event":"subscription.charged"}'

        response = await api_client.post(
            "/api/v1/webhooks/razorpay",
            content=body,
            headers={"X-Razorpay-Signature": webhook_signature(body)},
        )

        assert response.status_code == status.HTTP_200_OK
