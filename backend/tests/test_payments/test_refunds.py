"""
Test suite for RefundService.

Tests cover the refundable budget, authorization, gateway failures and the
reconciliation of refund.processed / refund.failed notifications.
"""

import uuid
from decimal import Decimal

import pytest

from evmarket.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from evmarket.core.identity import UserRole
from evmarket.services.notifications.sink import NotificationType
from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.payments.enums import EntityType, RefundStatus

from fakes import make_user


# ============================================================================
# Test Fixtures
# ============================================================================


@pytest.fixture
def paid_ride(book_ride, settlement, razorpay_api):
    """Factory for a test ride whose deposit was captured."""

    async def _paid(**overrides):
        booking, payment_order = await book_ride(**overrides)
        payment_id = razorpay_api.add_payment(payment_order.id)
        await settlement.settle_capture(payment_order, payment_id)
        return booking, payment_order, payment_id

    return _paid


@pytest.fixture
def paid_vehicle_order(place_order, settlement, razorpay_api):
    """Factory for a vehicle order whose payment was captured."""

    async def _paid(**overrides):
        order, payment_order = await place_order(**overrides)
        payment_id = razorpay_api.add_payment(payment_order.id)
        await settlement.settle_capture(payment_order, payment_id)
        return order, payment_order, payment_id

    return _paid


# ============================================================================
# Initiation Tests
# ============================================================================


class TestInitiateRefund:
    """Test refunds issued by staff."""

    @pytest.mark.asyncio
    async def test_full_refund_defaults_to_remaining_amount(
        self, refund_service, paid_ride, admin, customer, db, notifier
    ) -> None:
        # Arrange
        booking, payment_order, payment_id = await paid_ride()

        # Act
        result = await refund_service.initiate_refund(admin, payment_id, reason="Vehicle unavailable")

        # Assert
        assert result["amount"] == "2000.00"
        assert result["status"] == "processed"
        assert result["refundable_remaining"] == "0.00"
        assert result["reference_type"] == "test_ride"
        assert result["reference_id"] == str(booking.id)
        assert result["entity_payment_status"] == "refunded"
        assert booking.payment_status == PaymentStatus.REFUNDED

        refund = db.refunds[result["refund_id"]]
        assert refund.status == RefundStatus.PROCESSED
        assert refund.reason == "Vehicle unavailable"
        assert refund.initiated_by == admin.id
        assert refund.processed_at is not None
        assert NotificationType.REFUND_INITIATED in notifier.types_for(customer.id)

    @pytest.mark.asyncio
    async def test_partial_refunds_accumulate(
        self, refund_service, paid_vehicle_order, admin
    ) -> None:
        order, payment_order, payment_id = await paid_vehicle_order()

        first = await refund_service.initiate_refund(admin, payment_id, amount=Decimal("50000"))
        second = await refund_service.initiate_refund(admin, payment_id, amount=Decimal("27000"))

        assert first["entity_payment_status"] == "partial_refund"
        assert second["refundable_remaining"] == "100000.00"
        assert order.payment_status == PaymentStatus.PARTIAL_REFUND
        assert order.refund_amount == Decimal("77000.00")

    @pytest.mark.asyncio
    async def test_refund_beyond_remaining_rejected(
        self, refund_service, paid_ride, admin, razorpay_api
    ) -> None:
        booking, payment_order, payment_id = await paid_ride()
        await refund_service.initiate_refund(admin, payment_id, amount=Decimal("1500"))
        calls_before = len(razorpay_api.requests)

        with pytest.raises(ConflictError) as exc_info:
            await refund_service.initiate_refund(admin, payment_id, amount=Decimal("600"))

        assert exc_info.value.code == "REFUND_EXCEEDS_CAPTURED"
        assert len(razorpay_api.requests) == calls_before

    @pytest.mark.asyncio
    async def test_fully_refunded_payment_rejected(self, refund_service, paid_ride, admin) -> None:
        _, _, payment_id = await paid_ride()
        await refund_service.initiate_refund(admin, payment_id)

        with pytest.raises(ConflictError) as exc_info:
            await refund_service.initiate_refund(admin, payment_id)

        assert exc_info.value.code == "REFUND_EXCEEDS_CAPTURED"

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(self, refund_service, paid_ride, admin) -> None:
        _, _, payment_id = await paid_ride()

        with pytest.raises(ValidationError) as exc_info:
            await refund_service.initiate_refund(admin, payment_id, amount=Decimal("0"))

        assert exc_info.value.field == "amount"

    @pytest.mark.asyncio
    async def test_unknown_payment(self, refund_service, admin) -> None:
        with pytest.raises(NotFoundError):
            await refund_service.initiate_refund(admin, "pay_unknown")

    @pytest.mark.asyncio
    async def test_uncaptured_payment_rejected(
        self, refund_service, book_ride, settlement, admin
    ) -> None:
        _, payment_order = await book_ride()
        await settlement.settle_failure(payment_order, "pay_declined", "Card declined")

        with pytest.raises(ConflictError) as exc_info:
            await refund_service.initiate_refund(admin, "pay_declined")

        assert exc_info.value.code == "PAYMENT_NOT_CAPTURED"

    @pytest.mark.asyncio
    async def test_reference_must_match_payment(self, refund_service, paid_ride, admin) -> None:
        _, _, payment_id = await paid_ride()

        with pytest.raises(ValidationError):
            await refund_service.initiate_refund(
                admin, payment_id, reference_type=EntityType.VEHICLE_ORDER
            )
        with pytest.raises(ValidationError):
            await refund_service.initiate_refund(
                admin, payment_id, reference_type=EntityType.TEST_RIDE, reference_id=uuid.uuid4()
            )

    @pytest.mark.asyncio
    async def test_gateway_failure_releases_budget(
        self, refund_service, paid_ride, admin, razorpay_api, db
    ) -> None:
        # Arrange
        booking, payment_order, payment_id = await paid_ride()
        razorpay_api.fail_next(
            400,
            {"error": {"code": "BAD_REQUEST_ERROR", "description": "Refund not allowed"}},
        )

        # Act
        with pytest.raises(GatewayError):
            await refund_service.initiate_refund(admin, payment_id)

        # Assert
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("0.00")
        assert db.refunds == {}
        assert booking.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_pending_gateway_refund_recorded_as_processing(
        self, refund_service, paid_ride, admin, razorpay_api, db
    ) -> None:
        _, _, payment_id = await paid_ride()
        razorpay_api.refund_status = "pending"

        result = await refund_service.initiate_refund(admin, payment_id)

        assert result["status"] == "processing"
        assert db.refunds[result["refund_id"]].processed_at is None


class TestRefundAuthorization:
    """Test who may issue refunds."""

    @pytest.mark.asyncio
    async def test_customer_cannot_refund(self, refund_service, paid_ride, customer) -> None:
        _, _, payment_id = await paid_ride()

        with pytest.raises(PermissionDeniedError):
            await refund_service.initiate_refund(customer, payment_id)

    @pytest.mark.asyncio
    async def test_assigned_dealer_can_refund(
        self, refund_service, paid_vehicle_order, dealer, dealer_user
    ) -> None:
        _, _, payment_id = await paid_vehicle_order(dealer_id=dealer.id)

        result = await refund_service.initiate_refund(dealer_user, payment_id, amount=Decimal("1000"))

        assert result["status"] == "processed"

    @pytest.mark.asyncio
    async def test_other_dealer_cannot_refund(
        self, refund_service, paid_vehicle_order, dealer, db
    ) -> None:
        _, _, payment_id = await paid_vehicle_order(dealer_id=dealer.id)
        stranger = make_user(UserRole.DEALER)
        db.add_dealer(user_id=stranger.id)

        with pytest.raises(PermissionDeniedError):
            await refund_service.initiate_refund(stranger, payment_id)


# ============================================================================
# Reconciliation Tests
# ============================================================================


class TestRefundReconciliation:
    """Test refund.processed and refund.failed handling."""

    @pytest.mark.asyncio
    async def test_processing_refund_marked_processed(
        self, refund_service, paid_ride, admin, razorpay_api, db
    ) -> None:
        _, _, payment_id = await paid_ride()
        razorpay_api.refund_status = "pending"
        result = await refund_service.initiate_refund(admin, payment_id)

        first = await refund_service.record_refund_processed({"id": result["refund_id"]})
        second = await refund_service.record_refund_processed({"id": result["refund_id"]})

        assert first is True
        assert second is False
        assert db.refunds[result["refund_id"]].status == RefundStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_failed_refund_returns_budget(
        self, refund_service, paid_ride, admin, razorpay_api, db
    ) -> None:
        # Arrange
        booking, payment_order, payment_id = await paid_ride()
        razorpay_api.refund_status = "pending"
        result = await refund_service.initiate_refund(admin, payment_id)
        assert booking.payment_status == PaymentStatus.REFUNDED

        # Act
        failed = await refund_service.record_refund_failed({"id": result["refund_id"]})

        # Assert
        assert failed is True
        assert db.refunds[result["refund_id"]].status == RefundStatus.FAILED
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("0.00")
        assert booking.payment_status == PaymentStatus.PAID

    @pytest.mark.asyncio
    async def test_failure_of_processed_refund_ignored(
        self, refund_service, paid_ride, admin, db
    ) -> None:
        _, payment_order, payment_id = await paid_ride()
        result = await refund_service.initiate_refund(admin, payment_id)

        assert await refund_service.record_refund_failed({"id": result["refund_id"]}) is False
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("2000.00")

    @pytest.mark.asyncio
    async def test_unknown_failed_refund(self, refund_service) -> None:
        assert await refund_service.record_refund_failed({"id": "rfnd_ghost"}) is False

    @pytest.mark.asyncio
    async def test_externally_issued_refund_recorded(
        self, refund_service, paid_vehicle_order, db
    ) -> None:
        """A refund made from the gateway dashboard still draws on the budget."""
        # Arrange
        order, payment_order, payment_id = await paid_vehicle_order()

        # Act
        recorded = await refund_service.record_refund_processed(
            {
                "id": "rfnd_dashboard",
                "payment_id": payment_id,
                "amount": 500000,
                "notes": {"reason": "Goodwill"},
            }
        )

        # Assert
        assert recorded is True
        refund = db.refunds["rfnd_dashboard"]
        assert refund.amount == Decimal("5000.00")
        assert refund.reason == "Goodwill"
        assert refund.reference_id == order.id
        assert order.payment_status == PaymentStatus.PARTIAL_REFUND
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("5000.00")

    @pytest.mark.asyncio
    async def test_external_refund_over_budget_not_recorded(
        self, refund_service, paid_ride, db
    ) -> None:
        _, _, payment_id = await paid_ride()

        recorded = await refund_service.record_refund_processed(
            {"id": "rfnd_big", "payment_id": payment_id, "amount": 300000}
        )

        assert recorded is False
        assert "rfnd_big" not in db.refunds

    @pytest.mark.asyncio
    async def test_external_refund_for_unknown_payment(self, refund_service) -> None:
        recorded = await refund_service.record_refund_processed(
            {"id": "rfnd_x", "payment_id": "pay_elsewhere", "amount": 100}
        )

        assert recorded is False

    @pytest.mark.asyncio
    async def test_processed_notice_during_gateway_call(
        self, refund_service, paid_ride, admin, razorpay_api, db, monkeypatch
    ) -> None:
        """refund.processed lands before initiation has written its row."""
        # Arrange
        booking, payment_order, payment_id = await paid_ride()
        razorpay_api.refund_status = "pending"
        create_refund = refund_service.gateway.create_refund
        notices = []

        async def create_and_notify(*args, **kwargs):
            remote = await create_refund(*args, **kwargs)
            notices.append(
                await refund_service.record_refund_processed(
                    {"id": remote.id, "payment_id": payment_id, "amount": 200000}
                )
            )
            return remote

        monkeypatch.setattr(refund_service.gateway, "create_refund", create_and_notify)

        # Act
        result = await refund_service.initiate_refund(admin, payment_id)

        # Assert
        assert notices == [True]
        assert result["status"] == "processed"
        refund = db.refunds[result["refund_id"]]
        assert refund.status == RefundStatus.PROCESSED
        assert refund.budget_claimed is True
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("2000.00")
        assert booking.payment_status == PaymentStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_partial_refund_notice_during_gateway_call_counted_once(
        self, refund_service, paid_ride, admin, db, monkeypatch
    ) -> None:
        """With budget to spare the notice claims first and initiation steps back."""
        booking, payment_order, payment_id = await paid_ride()
        create_refund = refund_service.gateway.create_refund

        async def create_and_notify(*args, **kwargs):
            remote = await create_refund(*args, **kwargs)
            await refund_service.record_refund_processed(
                {"id": remote.id, "payment_id": payment_id, "amount": 50000}
            )
            return remote

        monkeypatch.setattr(refund_service.gateway, "create_refund", create_and_notify)

        result = await refund_service.initiate_refund(admin, payment_id, amount=Decimal("500"))

        assert result["status"] == "processed"
        assert db.refunds[result["refund_id"]].budget_claimed is True
        assert db.payment_orders[payment_order.id].refunded_amount == Decimal("500.00")
        assert booking.payment_status == PaymentStatus.PARTIAL_REFUND
