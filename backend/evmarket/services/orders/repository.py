"""
Vehicle order data access.

Status changes go through ``update_status_if`` and ``mark_paid_if_pending``,
both single conditional statements, so the client verification call, the
webhook and staff updates can race without any of them overwriting a state
another one already moved past.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from evmarket.core.logging import get_logger
from evmarket.database.models.order import VehicleOrder
from evmarket.database.repository import BaseRepository
from evmarket.services.orders.enums import OrderStatus, PaymentStatus

logger = get_logger(__name__)

UNPAID_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class OrderRepository(BaseRepository):
    """
    Repository for vehicle order data access operations.

    Attributes:
        session: Async database session
    """

    model = VehicleOrder

    async def create(self, **fields: Any) -> VehicleOrder:
        """
        Insert a new order in ``pending``/``pending`` state.

        Args:
            **fields: Column values (pricing, delivery and contact details)

        Returns:
            Persisted order
        """
        order = VehicleOrder(
            id=fields.pop("id", None) or uuid.uuid4(),
            order_status=OrderStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            amount_paid=Decimal("0.00"),
            refund_amount=Decimal("0.00"),
            stock_committed=False,
            **fields,
        )
        logger.info(
            "Creating vehicle order",
            order_id=str(order.id),
            user_id=str(order.user_id),
            vehicle_id=str(order.vehicle_id),
            quantity=order.quantity,
        )
        return await self._add(order, "create_order", order_id=str(order.id))

    async def update_status_if(
        self,
        order_id: uuid.UUID,
        expected_status: OrderStatus,
        **changes: Any,
    ) -> bool:
        """Apply a status change only if nobody moved the order meanwhile."""
        return await self.update_if(
            order_id, {"order_status": expected_status}, **changes
        )

    async def mark_paid_if_pending(
        self,
        order_id: uuid.UUID,
        payment_id: str,
        amount_paid: Decimal,
        paid_at: datetime,
    ) -> bool:
        """
        Record a capture and confirm the order in one statement.

        Matches only an order that is still ``pending`` and unpaid, so replays
        of the same capture (webhook or client) match at most once.
        """
        return await self.update_if(
            order_id,
            {"order_status": OrderStatus.PENDING, "payment_status": UNPAID_STATUSES},
            order_status=OrderStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            razorpay_payment_id=payment_id,
            amount_paid=amount_paid,
            paid_at=paid_at,
            confirmed_at=paid_at,
        )

    async def mark_stock_committed(self, order_id: uuid.UUID) -> bool:
        """Flag that capture took the ordered units off the stock counter."""
        return await self.update_if(
            order_id, {"stock_committed": False}, stock_committed=True
        )

    async def mark_payment_failed_if_pending(
        self,
        order_id: uuid.UUID,
        reason: str,
        cancelled_at: datetime,
    ) -> bool:
        return await self.update_if(
            order_id,
            {"order_status": OrderStatus.PENDING, "payment_status": PaymentStatus.PENDING},
            order_status=OrderStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
            cancellation_reason=reason,
            cancelled_at=cancelled_at,
        )

    async def mark_paid_if_unpaid(
        self,
        order_id: uuid.UUID,
        payment_id: str,
        amount_paid: Decimal,
        paid_at: datetime,
    ) -> bool:
        """Record a capture without touching fulfilment status."""
        return await self.update_if(
            order_id,
            {"payment_status": UNPAID_STATUSES},
            payment_status=PaymentStatus.PAID,
            razorpay_payment_id=payment_id,
            amount_paid=amount_paid,
            paid_at=paid_at,
        )

    async def set_refund_state(
        self,
        order_id: uuid.UUID,
        payment_status: PaymentStatus,
        refund_amount: Decimal,
    ) -> bool:
        return await self.update_if(
            order_id,
            {"payment_status": (
                PaymentStatus.PAID,
                PaymentStatus.PARTIAL_REFUND,
                PaymentStatus.REFUNDED,
            )},
            payment_status=payment_status,
            refund_amount=refund_amount,
        )
