"""
Refund service.

The refundable budget of a payment is claimed on the payment order row before
the gateway is called and handed back if the call fails, so concurrent
refunds against one payment can never exceed what was captured. The linked
booking or order mirrors the outcome as ``partial_refund`` or ``refunded``.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from evmarket.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from evmarket.core.identity import AuthenticatedUser
from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.payment import PaymentOrder
from evmarket.database.repository import DuplicateRecordError
from evmarket.services.catalog.repository import DealerRepository
from evmarket.services.notifications.sink import NotificationSink, NotificationType
from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.orders.pricing import format_money, quantize
from evmarket.services.orders.repository import OrderRepository
from evmarket.services.payments.enums import EntityType, RefundStatus
from evmarket.services.payments.razorpay_client import RazorpayClient, from_subunits
from evmarket.services.payments.repository import (
    PaymentOrderRepository,
    RefundRepository,
)
from evmarket.services.test_rides.repository import BookingRepository

logger = get_logger(__name__)

DEFAULT_REFUND_REASON = "Refund requested"


class RefundService:
    """
    Issues refunds and reconciles their gateway outcome.

    Attributes:
        gateway: Razorpay adapter
        payment_orders: Holds the captured/refunded budget per payment
        refunds: Refund records keyed by gateway refund id
    """

    def __init__(
        self,
        gateway: RazorpayClient,
        payment_orders: PaymentOrderRepository,
        refunds: RefundRepository,
        bookings: BookingRepository,
        orders: OrderRepository,
        dealers: DealerRepository,
        notifier: NotificationSink,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.gateway = gateway
        self.payment_orders = payment_orders
        self.refunds = refunds
        self.bookings = bookings
        self.orders = orders
        self.dealers = dealers
        self.notifier = notifier
        self._clock = clock

        self._loaders = {
            EntityType.TEST_RIDE: self.bookings.get_by_id,
            EntityType.VEHICLE_ORDER: self.orders.get_by_id,
        }

    async def initiate_refund(
        self,
        actor: AuthenticatedUser,
        payment_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        reference_type: Optional[EntityType] = None,
        reference_id: Optional[uuid.UUID] = None,
    ) -> dict[str, Any]:
        """
        Refund part or all of a captured payment.

        Args:
            actor: Administrator, or the dealer the booking/order belongs to
            payment_id: Gateway payment id
            amount: Amount to refund; defaults to everything still refundable
            reason: Free text kept on the refund record
            reference_type: Expected entity type of the payment, if given
            reference_id: Expected entity id of the payment, if given

        Raises:
            NotFoundError: Unknown payment
            ConflictError: Payment not captured, or amount beyond what remains
            ValidationError: Non-positive amount or mismatched reference
            PermissionDeniedError: Actor may not refund this payment
            GatewayError: Gateway refused or could not be reached
        """
        payment_order = await self.payment_orders.get_by_payment_id(payment_id)
        if payment_order is None:
            raise NotFoundError("Payment", payment_id)
        if payment_order.captured_at is None:
            raise ConflictError(
                "Payment has not been captured",
                code="PAYMENT_NOT_CAPTURED",
                payment_id=payment_id,
            )

        if (reference_type is not None and reference_type != payment_order.entity_type) or (
            reference_id is not None and reference_id != payment_order.entity_id
        ):
            raise ValidationError(
                "Payment does not belong to the referenced entity",
                field="reference_id",
            )

        entity = await self._loaders[payment_order.entity_type](payment_order.entity_id)
        if entity is None:
            raise NotFoundError(payment_order.entity_type.value, payment_order.entity_id)
        await self._authorize(actor, entity)

        refundable = payment_order.refundable_amount
        refund_amount = quantize(amount) if amount is not None else refundable
        if refund_amount <= 0:
            if refundable <= 0:
                raise ConflictError(
                    "Payment has already been fully refunded",
                    code="REFUND_EXCEEDS_CAPTURED",
                    refundable=format_money(refundable),
                )
            raise ValidationError("Refund amount must be positive", field="amount")
        if refund_amount > refundable:
            raise ConflictError(
                f"Only {format_money(refundable)} can still be refunded",
                code="REFUND_EXCEEDS_CAPTURED",
                refundable=format_money(refundable),
                requested=format_money(refund_amount),
            )

        if not await self.payment_orders.reserve_refund_amount(payment_order.id, refund_amount):
            raise ConflictError(
                "Refund would exceed the captured amount",
                code="REFUND_EXCEEDS_CAPTURED",
            )

        refund_reason = reason or DEFAULT_REFUND_REASON
        try:
            remote = await self.gateway.create_refund(
                payment_id,
                refund_amount,
                notes={
                    "reason": refund_reason,
                    "reference_type": payment_order.entity_type.value,
                    "reference_id": str(payment_order.entity_id),
                },
            )
        except GatewayError as e:
            await self.payment_orders.release_refund_amount(payment_order.id, refund_amount)
            logger.warning(
                "Gateway refund failed, budget released",
                payment_id=payment_id,
                amount=str(refund_amount),
                code=e.code,
                transient=e.transient,
            )
            raise

        status = RefundStatus.PROCESSED if remote.status == "processed" else RefundStatus.PROCESSING
        try:
            await self.refunds.create(
                id=remote.id,
                payment_id=payment_id,
                payment_order_id=payment_order.id,
                amount=refund_amount,
                reason=refund_reason,
                status=status,
                reference_type=payment_order.entity_type,
                reference_id=payment_order.entity_id,
                initiated_by=actor.id,
                processed_at=self._clock() if status == RefundStatus.PROCESSED else None,
                budget_claimed=True,
            )
        except DuplicateRecordError:
            # refund.processed arrived while the gateway call was in flight.
            if await self.refunds.adopt_budget(remote.id):
                logger.info("Refund recorded by webhook now holds our claim", refund_id=remote.id)
            else:
                await self.payment_orders.release_refund_amount(payment_order.id, refund_amount)
                logger.info("Refund already recorded by webhook", refund_id=remote.id)
            recorded = await self.refunds.get_by_id(remote.id)
            if recorded is not None:
                status = recorded.status

        payment_order = await self.payment_orders.get_by_id(payment_order.id)
        entity_status = await self._sync_entity(payment_order)

        logger.info(
            "Refund initiated",
            refund_id=remote.id,
            payment_id=payment_id,
            amount=str(refund_amount),
            entity_type=payment_order.entity_type.value,
            entity_id=str(payment_order.entity_id),
            actor_id=str(actor.id),
        )
        self.notifier.notify(
            entity.user_id,
            "Refund initiated",
            f"A refund of {format_money(refund_amount)} {payment_order.currency} "
            "has been initiated.",
            NotificationType.REFUND_INITIATED,
            {
                "refund_id": remote.id,
                "amount": format_money(refund_amount),
                "reference_type": payment_order.entity_type.value,
                "reference_id": payment_order.entity_id,
            },
        )
        return {
            "refund_id": remote.id,
            "payment_id": payment_id,
            "amount": format_money(refund_amount),
            "status": status.value,
            "refundable_remaining": format_money(payment_order.refundable_amount),
            "reference_type": payment_order.entity_type.value,
            "reference_id": str(payment_order.entity_id),
            "entity_payment_status": entity_status.value,
        }

    async def _authorize(self, actor: AuthenticatedUser, entity: Any) -> None:
        if actor.is_admin:
            return
        if actor.is_dealer:
            dealer = await self.dealers.get_by_user_id(actor.id)
            if dealer is not None and entity.dealer_id == dealer.id:
                return
        raise PermissionDeniedError(
            "Only administrators or the assigned dealer can issue refunds",
            role=actor.role.value,
        )

    async def _sync_entity(self, payment_order: PaymentOrder) -> PaymentStatus:
        """Mirror the payment's refunded total onto its booking or order."""
        refunded = payment_order.refunded_amount
        if refunded <= 0:
            status = PaymentStatus.PAID
        elif refunded >= payment_order.captured_amount:
            status = PaymentStatus.REFUNDED
        else:
            status = PaymentStatus.PARTIAL_REFUND

        if payment_order.entity_type == EntityType.TEST_RIDE:
            await self.bookings.set_refund_state(payment_order.entity_id, status)
        else:
            await self.orders.set_refund_state(payment_order.entity_id, status, refunded)
        return status

    async def record_refund_processed(self, refund_entity: dict[str, Any]) -> bool:
        """
        Apply a ``refund.processed`` notification.

        A refund issued outside this service (gateway dashboard) is recorded
        here, claiming its amount from the budget like any other refund.

        Returns:
            True if the refund record changed
        """
        refund_id = refund_entity["id"]
        refund = await self.refunds.get_by_id(refund_id)
        if refund is not None:
            updated = await self.refunds.update_status_if(
                refund_id,
                RefundStatus.PROCESSING,
                status=RefundStatus.PROCESSED,
                processed_at=self._clock(),
            )
            logger.info("Refund processed", refund_id=refund_id, updated=updated)
            return updated

        payment_id = refund_entity.get("payment_id")
        payment_order = await self.payment_orders.get_by_payment_id(payment_id)
        if payment_order is None:
            logger.warning(
                "Processed refund for unknown payment",
                refund_id=refund_id,
                payment_id=payment_id,
            )
            return False

        amount = from_subunits(refund_entity.get("amount", 0))
        if not await self.payment_orders.reserve_refund_amount(payment_order.id, amount):
            return await self._record_in_flight_refund(refund_entity, payment_order.id, amount)

        try:
            await self.refunds.create(
                id=refund_id,
                payment_id=payment_id,
                payment_order_id=payment_order.id,
                amount=amount,
                reason=(refund_entity.get("notes") or {}).get("reason"),
                status=RefundStatus.PROCESSED,
                reference_type=payment_order.entity_type,
                reference_id=payment_order.entity_id,
                processed_at=self._clock(),
                budget_claimed=True,
            )
        except DuplicateRecordError:
            # Initiation recorded it concurrently with its own budget claim.
            await self.payment_orders.release_refund_amount(payment_order.id, amount)
            return await self.refunds.update_status_if(
                refund_id,
                RefundStatus.PROCESSING,
                status=RefundStatus.PROCESSED,
                processed_at=self._clock(),
            )

        await self._sync_entity(await self.payment_orders.get_by_id(payment_order.id))
        logger.info(
            "Externally issued refund recorded",
            refund_id=refund_id,
            payment_id=payment_id,
            amount=str(amount),
        )
        return True

    async def _record_in_flight_refund(
        self,
        refund_entity: dict[str, Any],
        payment_order_id: str,
        amount: Decimal,
    ) -> bool:
        """
        Record a processed refund whose amount is already claimed.

        The budget has no room left, which is expected when ``initiate_refund``
        claimed this very amount and is still waiting on the gateway. The row
        is written without a claim of its own; the initiation adopts it.
        Without such an unrecorded claim the refund exceeds what was captured.
        """
        refund_id = refund_entity["id"]
        payment_order = await self.payment_orders.get_by_id(payment_order_id)
        unrecorded = payment_order.refunded_amount - await self.refunds.claimed_total(
            payment_order_id
        )
        if unrecorded < amount:
            logger.error(
                "Processed refund exceeds captured amount",
                refund_id=refund_id,
                payment_id=payment_order.razorpay_payment_id,
                amount=str(amount),
            )
            return False

        try:
            await self.refunds.create(
                id=refund_id,
                payment_id=payment_order.razorpay_payment_id,
                payment_order_id=payment_order.id,
                amount=amount,
                reason=(refund_entity.get("notes") or {}).get("reason"),
                status=RefundStatus.PROCESSED,
                reference_type=payment_order.entity_type,
                reference_id=payment_order.entity_id,
                processed_at=self._clock(),
                budget_claimed=False,
            )
        except DuplicateRecordError:
            return await self.refunds.update_status_if(
                refund_id,
                RefundStatus.PROCESSING,
                status=RefundStatus.PROCESSED,
                processed_at=self._clock(),
            )

        await self._sync_entity(payment_order)
        logger.info(
            "Processed refund recorded ahead of its initiation",
            refund_id=refund_id,
            payment_id=payment_order.razorpay_payment_id,
            amount=str(amount),
        )
        return True

    async def record_refund_failed(self, refund_entity: dict[str, Any]) -> bool:
        """
        Apply a ``refund.failed`` notification and hand the amount back.

        Returns:
            True if the refund moved to ``failed``
        """
        refund_id = refund_entity["id"]
        refund = await self.refunds.get_by_id(refund_id)
        if refund is None:
            logger.warning("Failed refund is unknown", refund_id=refund_id)
            return False

        failed = await self.refunds.update_status_if(
            refund_id, RefundStatus.PROCESSING, status=RefundStatus.FAILED
        )
        if not failed:
            return False

        payment_order = None
        if refund.payment_order_id:
            payment_order = await self.payment_orders.get_by_id(refund.payment_order_id)
        if payment_order is None:
            payment_order = await self.payment_orders.get_by_payment_id(refund.payment_id)
        if payment_order is None:
            logger.error("Failed refund has no payment order", refund_id=refund_id)
            return True

        await self.payment_orders.release_refund_amount(payment_order.id, refund.amount)
        await self._sync_entity(await self.payment_orders.get_by_id(payment_order.id))
        logger.warning(
            "Refund failed, amount returned to refundable budget",
            refund_id=refund_id,
            payment_id=refund.payment_id,
            amount=str(refund.amount),
        )
        return True
