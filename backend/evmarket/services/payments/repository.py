"""
Payment order, refund and webhook audit data access.

The refund budget of a payment order (``captured_amount - refunded_amount``)
is only changed by ``reserve_refund_amount`` and ``release_refund_amount``,
each a single conditional UPDATE, so concurrent refunds can never push the
refunded total past the captured amount.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from evmarket.core.logging import get_logger
from evmarket.database.models.payment import PaymentOrder, Refund
from evmarket.database.models.webhook_event import WebhookEvent
from evmarket.database.repository import BaseRepository, RepositoryError
from evmarket.services.payments.enums import PaymentOrderStatus, RefundStatus

logger = get_logger(__name__)


class PaymentOrderRepository(BaseRepository):
    """Gateway orders keyed by the gateway's own order id."""

    model = PaymentOrder

    async def create(self, **fields: Any) -> PaymentOrder:
        payment_order = PaymentOrder(
            status=PaymentOrderStatus.CREATED,
            captured_amount=Decimal("0.00"),
            amount_paid=Decimal("0.00"),
            amount_due=fields.get("amount", Decimal("0.00")),
            refunded_amount=Decimal("0.00"),
            **fields,
        )
        return await self._add(
            payment_order,
            "create_payment_order",
            payment_order_id=payment_order.id,
        )

    async def get_by_payment_id(self, payment_id: str) -> Optional[PaymentOrder]:
        try:
            result = await self.session.execute(
                select(PaymentOrder).where(PaymentOrder.razorpay_payment_id == payment_id)
            )
        except SQLAlchemyError as e:
            logger.error("Failed to load payment order by payment id", error=str(e))
            raise RepositoryError("get_by_payment_id failed") from e
        return result.scalars().first()

    async def record_capture_if_new(
        self,
        order_id: str,
        payment_id: str,
        amount: Decimal,
        method: Optional[str],
        captured_at: datetime,
    ) -> bool:
        """First capture wins; replays of the same capture match nothing."""
        return await self.update_if(
            order_id,
            {"captured_at": None},
            status=PaymentOrderStatus.CAPTURED,
            razorpay_payment_id=payment_id,
            payment_method=method,
            captured_amount=amount,
            captured_at=captured_at,
            failure_reason=None,
        )

    async def mark_failed_if_uncaptured(
        self,
        order_id: str,
        payment_id: str,
        reason: str,
    ) -> bool:
        return await self.update_if(
            order_id,
            {"captured_at": None},
            status=PaymentOrderStatus.FAILED,
            razorpay_payment_id=payment_id,
            failure_reason=reason,
        )

    async def update_amounts(
        self,
        order_id: str,
        amount_paid: Decimal,
        amount_due: Decimal,
    ) -> bool:
        """
        Record the aggregate paid/due amounts reported by the gateway.

        The order is ``completed`` only once nothing is due; until then it is
        ``partial``. A completed order is never moved back.
        """
        if amount_due <= 0:
            return await self.update(
                order_id,
                amount_paid=amount_paid,
                amount_due=Decimal("0.00"),
                status=PaymentOrderStatus.COMPLETED,
            )
        return await self.update_if(
            order_id,
            {"status": (
                PaymentOrderStatus.CREATED,
                PaymentOrderStatus.CAPTURED,
                PaymentOrderStatus.PARTIAL,
                PaymentOrderStatus.FAILED,
            )},
            amount_paid=amount_paid,
            amount_due=amount_due,
            status=PaymentOrderStatus.PARTIAL,
        )

    async def reserve_refund_amount(self, order_id: str, amount: Decimal) -> bool:
        """
        Claim ``amount`` of the refundable budget.

        Returns:
            False if the claim would exceed the captured amount
        """
        stmt = (
            update(PaymentOrder)
            .where(
                PaymentOrder.id == order_id,
                PaymentOrder.refunded_amount + amount <= PaymentOrder.captured_amount,
            )
            .values(refunded_amount=PaymentOrder.refunded_amount + amount)
            .execution_options(synchronize_session=False)
        )
        reserved = await self._execute_write(
            stmt, "reserve_refund_amount", payment_order_id=order_id
        ) == 1
        logger.info(
            "Refund budget reservation attempted",
            payment_order_id=order_id,
            amount=str(amount),
            reserved=reserved,
        )
        return reserved

    async def release_refund_amount(self, order_id: str, amount: Decimal) -> bool:
        stmt = (
            update(PaymentOrder)
            .where(
                PaymentOrder.id == order_id,
                PaymentOrder.refunded_amount >= amount,
            )
            .values(refunded_amount=PaymentOrder.refunded_amount - amount)
            .execution_options(synchronize_session=False)
        )
        released = await self._execute_write(
            stmt, "release_refund_amount", payment_order_id=order_id
        ) == 1
        logger.info(
            "Refund budget released",
            payment_order_id=order_id,
            amount=str(amount),
            released=released,
        )
        return released


class RefundRepository(BaseRepository):
    model = Refund

    async def create(self, **fields: Any) -> Refund:
        refund = Refund(**fields)
        return await self._add(refund, "create_refund", refund_id=refund.id)

    async def update_status_if(
        self,
        refund_id: str,
        expected_status: RefundStatus,
        **changes: Any,
    ) -> bool:
        return await self.update_if(refund_id, {"status": expected_status}, **changes)

    async def adopt_budget(self, refund_id: str) -> bool:
        """Make a row recorded without a budget claim the owner of one."""
        return await self.update_if(
            refund_id, {"budget_claimed": False}, budget_claimed=True
        )

    async def claimed_total(self, payment_order_id: str) -> Decimal:
        """Sum of live refunds whose amount the payment order already counts."""
        stmt = select(func.coalesce(func.sum(Refund.amount), 0)).where(
            Refund.payment_order_id == payment_order_id,
            Refund.status != RefundStatus.FAILED,
            Refund.budget_claimed.is_(True),
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to total refunds", error=str(e))
            raise RepositoryError("claimed_total failed") from e
        return Decimal(result.scalar_one())


class WebhookEventRepository(BaseRepository):
    """Append-only audit of webhook deliveries."""

    model = WebhookEvent

    async def create(self, **fields: Any) -> WebhookEvent:
        event = WebhookEvent(id=uuid.uuid4(), **fields)
        return await self._add(
            event,
            "record_webhook_event",
            event_type=event.event_type,
        )
