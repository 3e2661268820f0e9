"""
Test suite for the Razorpay client wrapper.

Tests cover subunit conversion, signature verification, error translation
and the retry policy for idempotent and non-idempotent calls.
"""

import json
from decimal import Decimal

import httpx
import pytest

from evmarket.core.errors import GatewayError
from evmarket.services.payments.razorpay_client import (
    RazorpayClient,
    from_subunits,
    to_subunits,
)

from fakes import (
    KEY_ID,
    KEY_SECRET,
    WEBHOOK_SECRET,
    FakeRazorpayAPI,
    checkout_signature,
    make_gateway,
    webhook_signature,
)


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
async def retrying_gateway(razorpay_api: FakeRazorpayAPI):
    """Client allowing two retries with zero backoff."""
    client = make_gateway(razorpay_api, max_retries=2)
    yield client
    await client.aclose()


def _client_with_handler(handler, max_retries: int = 2) -> RazorpayClient:
    return RazorpayClient(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        max_retries=max_retries,
        initial_backoff=0,
        max_backoff=0,
        transport=httpx.MockTransport(handler),
    )


# ============================================================================
# Conversion Tests
# ============================================================================


class TestSubunitConversion:
    """Test paise conversion."""

    def test_to_subunits(self) -> None:
        assert to_subunits(Decimal("2000.00")) == 200000
        assert to_subunits(Decimal("0.015")) == 2

    def test_from_subunits(self) -> None:
        assert from_subunits(200050) == Decimal("2000.50")


# ============================================================================
# Signature Tests
# ============================================================================


class TestSignatures:
    """Test checkout and webhook signature checks."""

    @pytest.mark.asyncio
    async def test_valid_checkout_signature(self, gateway: RazorpayClient) -> None:
        signature = checkout_signature("order_1", "pay_1")

        assert gateway.verify_payment_signature("order_1", "pay_1", signature) is True

    @pytest.mark.asyncio
    async def test_checkout_signature_bound_to_payment(self, gateway: RazorpayClient) -> None:
        signature = checkout_signature("order_1", "pay_1")

        assert gateway.verify_payment_signature("order_1", "pay_2", signature) is False

    @pytest.mark.asyncio
    async def test_missing_signature_rejected(self, gateway: RazorpayClient) -> None:
        assert gateway.verify_payment_signature("order_1", "pay_1", None) is False
        assert gateway.verify_webhook_signature(b"{}", "") is False

    @pytest.mark.asyncio
    async def test_webhook_signature_over_raw_body(self, gateway: RazorpayClient) -> None:
        body = b'{"event":"payment.captured"}'

        assert gateway.verify_webhook_signature(body, webhook_signature(body)) is True
        assert gateway.verify_webhook_signature(body + b" ", webhook_signature(body)) is False

    @pytest.mark.asyncio
    async def test_webhook_signature_requires_configured_secret(self, razorpay_api) -> None:
        client = RazorpayClient(
            key_id=KEY_ID,
            key_secret=KEY_SECRET,
            transport=httpx.MockTransport(razorpay_api),
        )
        body = b"{}"

        assert client.verify_webhook_signature(body, webhook_signature(body)) is False
        await client.aclose()


# ============================================================================
# Operation Tests
# ============================================================================


class TestOperations:
    """Test order, payment and refund calls."""

    @pytest.mark.asyncio
    async def test_create_order_sends_subunits_and_clean_notes(
        self, gateway: RazorpayClient, razorpay_api: FakeRazorpayAPI
    ) -> None:
        # Act
        order = await gateway.create_order(
            Decimal("2000.00"),
            "INR",
            "receipt-" + "x" * 50,
            notes={"booking_id": "b1", "dealer_id": None, "quantity": 2},
        )

        # Assert
        sent = json.loads(razorpay_api.requests[0].content)
        assert sent["amount"] == 200000
        assert len(sent["receipt"]) == 40
        assert sent["notes"] == {"booking_id": "b1", "quantity": "2"}
        assert order.amount == Decimal("2000.00")
        assert order.id.startswith("order_")

    @pytest.mark.asyncio
    async def test_requests_use_basic_auth(self, gateway, razorpay_api) -> None:
        await gateway.create_order(Decimal("1.00"), "INR", "r1")

        assert razorpay_api.requests[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_fetch_payment(self, gateway, razorpay_api) -> None:
        order = await gateway.create_order(Decimal("2000.00"), "INR", "r1")
        payment_id = razorpay_api.add_payment(order.id, method="card")

        payment = await gateway.fetch_payment(payment_id)

        assert payment.order_id == order.id
        assert payment.amount == Decimal("2000.00")
        assert payment.status == "captured"
        assert payment.method == "card"

    @pytest.mark.asyncio
    async def test_create_refund(self, gateway, razorpay_api) -> None:
        refund = await gateway.create_refund("pay_9", Decimal("500.00"), notes={"reason": "x"})

        assert refund.payment_id == "pay_9"
        assert refund.amount == Decimal("500.00")
        assert refund.status == "processed"


# ============================================================================
# Error Handling Tests
# ============================================================================


class TestErrorTranslation:
    """Test mapping of gateway failures to GatewayError."""

    @pytest.mark.asyncio
    async def test_bad_request_keeps_gateway_description(self, gateway) -> None:
        with pytest.raises(GatewayError) as exc_info:
            await gateway.fetch_payment("pay_missing")

        error = exc_info.value
        assert error.transient is False
        assert error.code == "BAD_REQUEST_ERROR"
        assert error.message == "The id provided does not exist"
        assert error.status_code == 400

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, gateway, razorpay_api) -> None:
        razorpay_api.fail_next(502)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.create_order(Decimal("1.00"), "INR", "r1")

        assert exc_info.value.transient is True
        assert exc_info.value.code == "GATEWAY_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, gateway, razorpay_api) -> None:
        razorpay_api.fail_next(429)

        with pytest.raises(GatewayError) as exc_info:
            await gateway.create_order(Decimal("1.00"), "INR", "r1")

        assert exc_info.value.code == "GATEWAY_RATE_LIMITED"

    @pytest.mark.asyncio
    async def test_connection_failure_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client_with_handler(handler, max_retries=0)
        with pytest.raises(GatewayError) as exc_info:
            await client.fetch_payment("pay_1")
        await client.aclose()

        assert exc_info.value.transient is True
        assert exc_info.value.code == "GATEWAY_CONNECT_ERROR"


class TestRetryPolicy:
    """Test which failures are retried."""

    @pytest.mark.asyncio
    async def test_idempotent_call_retried_after_server_error(
        self, retrying_gateway, razorpay_api
    ) -> None:
        razorpay_api.fail_next(503)
        razorpay_api.fail_next(503)

        order = await retrying_gateway.create_order(Decimal("1.00"), "INR", "r1")

        assert order.id.startswith("order_")
        assert len(razorpay_api.requests) == 3

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, retrying_gateway, razorpay_api) -> None:
        for _ in range(3):
            razorpay_api.fail_next(503)

        with pytest.raises(GatewayError):
            await retrying_gateway.create_order(Decimal("1.00"), "INR", "r1")

        assert len(razorpay_api.requests) == 3

    @pytest.mark.asyncio
    async def test_bad_request_never_retried(self, retrying_gateway, razorpay_api) -> None:
        with pytest.raises(GatewayError):
            await retrying_gateway.fetch_payment("pay_missing")

        assert len(razorpay_api.requests) == 1

    @pytest.mark.asyncio
    async def test_refund_not_retried_after_server_error(
        self, retrying_gateway, razorpay_api
    ) -> None:
        """A 5xx refund may have been applied; retrying could refund twice."""
        razorpay_api.fail_next(500)

        with pytest.raises(GatewayError):
            await retrying_gateway.create_refund("pay_1", Decimal("10.00"))

        assert len(razorpay_api.requests) == 1

    @pytest.mark.asyncio
    async def test_refund_retried_after_rate_limit(self, retrying_gateway, razorpay_api) -> None:
        razorpay_api.fail_next(429)

        refund = await retrying_gateway.create_refund("pay_1", Decimal("10.00"))

        assert refund.id.startswith("rfnd_")
        assert len(razorpay_api.requests) == 2
