"""
Applying gateway payment outcomes to bookings and orders.

Both the client verification call and the webhook end up here. Every step is
a conditional update keyed on the current state, so whichever path arrives
first performs the transition and the other is a no-op. Entity specific work
is resolved through dispatch tables keyed by ``EntityType``.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.payment import PaymentOrder
from evmarket.services.catalog.repository import DealerRepository
from evmarket.services.inventory.reservations import InventoryReservationManager
from evmarket.services.notifications.sink import NotificationSink, NotificationType
from evmarket.services.orders.enums import OrderStatus
from evmarket.services.orders.pricing import format_money
from evmarket.services.orders.repository import OrderRepository
from evmarket.services.orders.serializers import serialize_order
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.queue import RefundQueue
from evmarket.services.payments.repository import PaymentOrderRepository
from evmarket.services.test_rides.enums import BookingStatus
from evmarket.services.test_rides.repository import BookingRepository
from evmarket.services.test_rides.serializers import serialize_booking

logger = get_logger(__name__)

LATE_CAPTURE_REFUND_REASON = "Payment captured after cancellation"

SERIALIZERS: Dict[EntityType, Callable[[Any], dict[str, Any]]] = {
    EntityType.TEST_RIDE: serialize_booking,
    EntityType.VEHICLE_ORDER: serialize_order,
}


def serialize_entity(entity_type: EntityType, entity: Any) -> Optional[dict[str, Any]]:
    if entity is None:
        return None
    return SERIALIZERS[entity_type](entity)


@dataclass
class SettlementOutcome:
    entity_type: EntityType
    entity: Any
    newly_settled: bool


class PaymentSettlement:
    """
    Moves bookings and orders to their paid or failed state.

    Attributes:
        payment_orders: Gateway order records
        bookings: Test ride bookings
        orders: Vehicle orders
        inventory: Converts order reservations into stock decrements
        refund_queue: Receives refunds owed for captures on cancelled entities
    """

    def __init__(
        self,
        payment_orders: PaymentOrderRepository,
        bookings: BookingRepository,
        orders: OrderRepository,
        dealers: DealerRepository,
        inventory: InventoryReservationManager,
        notifier: NotificationSink,
        refund_queue: RefundQueue,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.payment_orders = payment_orders
        self.bookings = bookings
        self.orders = orders
        self.dealers = dealers
        self.inventory = inventory
        self.notifier = notifier
        self.refund_queue = refund_queue
        self._clock = clock

        self._loaders: Dict[EntityType, Callable[[uuid.UUID], Awaitable[Any]]] = {
            EntityType.TEST_RIDE: self.bookings.get_by_id,
            EntityType.VEHICLE_ORDER: self.orders.get_by_id,
        }
        self._capture_handlers = {
            EntityType.TEST_RIDE: self._capture_booking,
            EntityType.VEHICLE_ORDER: self._capture_order,
        }
        self._failure_handlers = {
            EntityType.TEST_RIDE: self._fail_booking,
            EntityType.VEHICLE_ORDER: self._fail_order,
        }

    async def load_entity(self, entity_type: EntityType, entity_id: uuid.UUID) -> Any:
        return await self._loaders[entity_type](entity_id)

    async def settle_capture(
        self,
        payment_order: PaymentOrder,
        payment_id: str,
        amount: Optional[Decimal] = None,
        method: Optional[str] = None,
    ) -> SettlementOutcome:
        """
        Record a captured payment and settle the linked entity.

        Safe to call any number of times for the same capture: the payment
        order records the first capture only, and the entity moves to paid
        only from its unpaid pending state.
        """
        now = self._clock()
        captured_amount = amount if amount is not None else payment_order.amount
        recorded = await self.payment_orders.record_capture_if_new(
            payment_order.id,
            payment_id,
            captured_amount,
            method,
            now,
        )
        outcome = await self._capture_handlers[payment_order.entity_type](
            payment_order, payment_id, captured_amount, now
        )
        logger.info(
            "Payment capture settled",
            razorpay_order_id=payment_order.id,
            payment_id=payment_id,
            entity_type=payment_order.entity_type.value,
            entity_id=str(payment_order.entity_id),
            capture_recorded=recorded,
            newly_settled=outcome.newly_settled,
        )
        return outcome

    async def _capture_booking(
        self,
        payment_order: PaymentOrder,
        payment_id: str,
        amount: Decimal,
        now: datetime,
    ) -> SettlementOutcome:
        booking = await self.bookings.get_by_id(payment_order.entity_id)
        if booking is None:
            logger.error(
                "Captured payment references a missing booking",
                razorpay_order_id=payment_order.id,
                booking_id=str(payment_order.entity_id),
            )
            return SettlementOutcome(EntityType.TEST_RIDE, None, False)

        settled = await self.bookings.mark_paid_and_confirm_if_pending(
            booking.id,
            payment_id,
            paid_at=now,
            confirmed_date=booking.confirmed_date or booking.preferred_date,
            confirmed_time=booking.confirmed_time or booking.preferred_time,
        )
        if not settled and booking.status == BookingStatus.CANCELLED:
            if await self.bookings.mark_paid_if_unpaid(booking.id, payment_id, now):
                self._refund_late_capture(EntityType.TEST_RIDE, booking.id, payment_id)

        booking = await self.bookings.get_by_id(booking.id)
        if settled:
            await self._notify_booking_paid(booking)
        return SettlementOutcome(EntityType.TEST_RIDE, booking, settled)

    async def _capture_order(
        self,
        payment_order: PaymentOrder,
        payment_id: str,
        amount: Decimal,
        now: datetime,
    ) -> SettlementOutcome:
        order = await self.orders.get_by_id(payment_order.entity_id)
        if order is None:
            logger.error(
                "Captured payment references a missing order",
                razorpay_order_id=payment_order.id,
                order_id=str(payment_order.entity_id),
            )
            return SettlementOutcome(EntityType.VEHICLE_ORDER, None, False)

        settled = await self.orders.mark_paid_if_pending(order.id, payment_id, amount, now)
        if settled:
            committed = await self.inventory.commit_stock(
                order.id, order.vehicle_id, order.quantity
            )
            if committed:
                await self.orders.mark_stock_committed(order.id)
        elif order.order_status == OrderStatus.CANCELLED:
            if await self.orders.mark_paid_if_unpaid(order.id, payment_id, amount, now):
                self._refund_late_capture(EntityType.VEHICLE_ORDER, order.id, payment_id)

        order = await self.orders.get_by_id(order.id)
        if settled:
            self.notifier.notify(
                order.user_id,
                "Order confirmed",
                "Payment received. Your order is confirmed.",
                NotificationType.ORDER_CONFIRMED,
                {"order_id": order.id, "amount_paid": format_money(order.amount_paid)},
            )
        return SettlementOutcome(EntityType.VEHICLE_ORDER, order, settled)

    def _refund_late_capture(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        payment_id: str,
    ) -> None:
        logger.warning(
            "Payment captured for a cancelled entity, refunding",
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            payment_id=payment_id,
        )
        self.refund_queue.enqueue_refund(
            payment_id=payment_id,
            reason=LATE_CAPTURE_REFUND_REASON,
            reference_type=entity_type,
            reference_id=entity_id,
        )

    async def _notify_booking_paid(self, booking: Any) -> None:
        payload = {
            "booking_id": booking.id,
            "confirmation_code": booking.confirmation_code,
            "date": booking.confirmed_date,
            "time": booking.confirmed_time,
        }
        self.notifier.notify(
            booking.user_id,
            "Test ride confirmed",
            f"Payment received. Test ride {booking.confirmation_code} is confirmed.",
            NotificationType.BOOKING_CONFIRMED,
            payload,
        )
        if booking.dealer_id is None:
            return
        dealer = await self.dealers.get_by_id(booking.dealer_id)
        if dealer is not None:
            self.notifier.notify(
                dealer.user_id,
                "New paid test ride",
                f"Test ride {booking.confirmation_code} has been paid and confirmed.",
                NotificationType.BOOKING_PAID,
                payload,
            )

    async def settle_failure(
        self,
        payment_order: PaymentOrder,
        payment_id: str,
        reason: Optional[str],
    ) -> SettlementOutcome:
        """
        Record a failed payment attempt and cancel the still-unpaid entity.

        An entity that was paid or moved on meanwhile is left untouched.
        """
        description = reason or "Payment failed"
        await self.payment_orders.mark_failed_if_uncaptured(
            payment_order.id, payment_id, description
        )
        outcome = await self._failure_handlers[payment_order.entity_type](
            payment_order, f"Payment failed: {description}", self._clock()
        )
        logger.info(
            "Payment failure settled",
            razorpay_order_id=payment_order.id,
            payment_id=payment_id,
            entity_type=payment_order.entity_type.value,
            entity_id=str(payment_order.entity_id),
            cancelled=outcome.newly_settled,
        )
        return outcome

    async def _fail_booking(
        self, payment_order: PaymentOrder, reason: str, now: datetime
    ) -> SettlementOutcome:
        cancelled = await self.bookings.mark_payment_failed_if_pending(
            payment_order.entity_id, reason, now
        )
        booking = await self.bookings.get_by_id(payment_order.entity_id)
        if cancelled and booking is not None:
            self.notifier.notify(
                booking.user_id,
                "Test ride payment failed",
                "Your deposit payment failed and the booking was cancelled.",
                NotificationType.BOOKING_CANCELLED,
                {"booking_id": booking.id, "reason": reason},
            )
        return SettlementOutcome(EntityType.TEST_RIDE, booking, cancelled)

    async def _fail_order(
        self, payment_order: PaymentOrder, reason: str, now: datetime
    ) -> SettlementOutcome:
        cancelled = await self.orders.mark_payment_failed_if_pending(
            payment_order.entity_id, reason, now
        )
        if cancelled:
            await self.inventory.release(payment_order.entity_id)
        order = await self.orders.get_by_id(payment_order.entity_id)
        if cancelled and order is not None:
            self.notifier.notify(
                order.user_id,
                "Order payment failed",
                "Your payment failed and the order was cancelled.",
                NotificationType.ORDER_STATUS_CHANGED,
                {"order_id": order.id, "status": OrderStatus.CANCELLED.value},
            )
        return SettlementOutcome(EntityType.VEHICLE_ORDER, order, cancelled)
