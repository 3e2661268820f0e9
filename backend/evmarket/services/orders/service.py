"""
Order service orchestrating checkout and fulfilment status changes.

Checkout runs validate -> create pending order -> create gateway order ->
attach gateway id -> reserve stock. The steps are individually durable, not
atomic: if the gateway call fails the order stays ``pending`` with no gateway
id and is left for reconciliation. Payment capture is handled by the payment
settlement, not here.
"""

import uuid
from datetime import datetime
from typing import Any, Callable, Optional

from evmarket.core.config import Settings
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
from evmarket.database.models.order import VehicleOrder
from evmarket.schemas.orders import CheckoutRequest, OrderStatusUpdateRequest
from evmarket.services.catalog.repository import (
    DealerRepository,
    PromoCodeRepository,
    VehicleRepository,
)
from evmarket.services.idempotency.guard import IdempotencyGuard
from evmarket.services.inventory.reservations import InventoryReservationManager
from evmarket.services.notifications.sink import NotificationSink, NotificationType
from evmarket.services.orders.enums import OrderStatus
from evmarket.services.orders.pricing import (
    calculate_pricing,
    format_money,
    resolve_payment_amount,
)
from evmarket.services.orders.repository import OrderRepository
from evmarket.services.orders.serializers import serialize_order
from evmarket.services.orders.state_machine import OrderStateMachine
from evmarket.services.payments.checkout import GatewayCheckout, Prefill
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.queue import RefundQueue

logger = get_logger(__name__)

CHECKOUT_SCOPE = "checkout"

STATUS_MESSAGES = {
    OrderStatus.CONFIRMED: "Your order has been confirmed.",
    OrderStatus.PROCESSING: "Your order is being prepared.",
    OrderStatus.SHIPPED: "Your order has been shipped.",
    OrderStatus.DELIVERED: "Your order has been delivered.",
    OrderStatus.CANCELLED: "Your order has been cancelled.",
}


class OrderService:
    """
    Order service orchestrating checkout and status transitions.

    Attributes:
        orders: Order repository
        inventory: Reservation manager owning stock mutations
        checkout_gateway: Opens gateway orders for new orders
        idempotency: Guard for checkouts sent with an Idempotency-Key
        state_machine: Transition validation and side-effect planning
    """

    def __init__(
        self,
        orders: OrderRepository,
        vehicles: VehicleRepository,
        dealers: DealerRepository,
        promo_codes: PromoCodeRepository,
        inventory: InventoryReservationManager,
        checkout_gateway: GatewayCheckout,
        idempotency: IdempotencyGuard,
        notifier: NotificationSink,
        refund_queue: RefundQueue,
        settings: Settings,
        state_machine: Optional[OrderStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.orders = orders
        self.vehicles = vehicles
        self.dealers = dealers
        self.promo_codes = promo_codes
        self.inventory = inventory
        self.checkout_gateway = checkout_gateway
        self.idempotency = idempotency
        self.notifier = notifier
        self.refund_queue = refund_queue
        self.settings = settings
        self.state_machine = state_machine or OrderStateMachine(clock=clock)
        self._clock = clock

    async def checkout(
        self,
        actor: AuthenticatedUser,
        request: CheckoutRequest,
        idempotency_key: Optional[str] = None,
    ) -> tuple[dict[str, Any], bool]:
        """
        Create a pending order and its gateway order.

        Args:
            actor: Purchasing user
            request: Validated checkout payload
            idempotency_key: Optional client supplied Idempotency-Key header

        Returns:
            (response, replayed) where ``replayed`` is True for a stored
            response returned to a duplicate request

        Raises:
            ValidationError: Quantity, colour or partial amount out of range
            NotFoundError: Vehicle or dealer missing or inactive
            ConflictError: Not enough stock
            GatewayError: Gateway order could not be created
        """
        key: Optional[str] = None
        if idempotency_key:
            key = self.idempotency.derive_key(
                actor.id,
                {
                    "idempotency_key": idempotency_key,
                    **request.model_dump(mode="json"),
                },
            )
            check = await self.idempotency.check(key)
            if check.is_duplicate:
                return check.prior_response, True

        if request.quantity > self.settings.max_order_quantity:
            raise ValidationError(
                f"Maximum {self.settings.max_order_quantity} units per order",
                field="quantity",
            )

        vehicle = await self.vehicles.get_by_id(request.vehicle_id)
        if vehicle is None or not vehicle.is_active:
            raise NotFoundError("Vehicle", request.vehicle_id)

        if not vehicle.offers_color(request.color):
            raise ValidationError(
                f"Colour {request.color} is not available for {vehicle.name}",
                field="color",
                available=list(vehicle.colors),
            )

        available = await self.inventory.check_available(vehicle.id)
        if available < request.quantity:
            raise ConflictError(
                f"Only {available} units available",
                code="INSUFFICIENT_STOCK",
                available=available,
                requested=request.quantity,
            )

        if request.dealer_id is not None:
            dealer = await self.dealers.get_by_id(request.dealer_id)
            if dealer is None or not dealer.is_active:
                raise NotFoundError("Dealer", request.dealer_id)

        now = self._clock()
        promo = None
        if request.promo_code:
            promo = await self.promo_codes.get_by_code(request.promo_code)
            if promo is None or not promo.is_valid_at(now):
                logger.info(
                    "Promo code ignored",
                    promo_code=request.promo_code,
                    reason="unknown" if promo is None else "inactive_or_expired",
                )
                promo = None

        pricing = calculate_pricing(
            vehicle.price,
            request.quantity,
            self.settings.tax_rate,
            promo=promo,
            now=now,
        )
        payment_amount = resolve_payment_amount(
            pricing,
            request.payment_type,
            request.partial_amount,
            self.settings.min_partial_payment,
        )

        order = await self.orders.create(
            user_id=actor.id,
            vehicle_id=vehicle.id,
            dealer_id=request.dealer_id,
            quantity=request.quantity,
            color=request.color,
            unit_price=pricing.unit_price,
            subtotal=pricing.subtotal,
            discount=pricing.discount,
            taxes=pricing.taxes,
            total_amount=pricing.total,
            promo_code=pricing.promo_code,
            payment_type=request.payment_type,
            payment_amount=payment_amount,
            delivery_address=request.delivery_address.model_dump(),
            billing_address=(
                request.billing_address.model_dump() if request.billing_address else None
            ),
            contact_number=request.contact_number,
            alternate_contact_number=request.alternate_contact_number,
            special_instructions=request.special_instructions,
        )

        try:
            payment_order, handoff = await self.checkout_gateway.open_order(
                entity_type=EntityType.VEHICLE_ORDER,
                entity_id=order.id,
                user_id=actor.id,
                amount=payment_amount,
                currency=self.settings.currency,
                receipt=f"order_{order.id.hex[:24]}",
                description=f"{vehicle.name} x {request.quantity}",
                notes={
                    "order_id": str(order.id),
                    "user_id": str(actor.id),
                    "vehicle_id": str(vehicle.id),
                    "quantity": request.quantity,
                    "payment_type": request.payment_type.value,
                    "contact": request.contact_number,
                },
                prefill=Prefill(
                    name=request.customer_name or actor.name,
                    email=request.customer_email or actor.email,
                    contact=request.contact_number,
                ),
            )
        except GatewayError as e:
            logger.warning(
                "Gateway order creation failed, order left pending",
                order_id=str(order.id),
                code=e.code,
                transient=e.transient,
            )
            raise

        await self.orders.update(order.id, razorpay_order_id=payment_order.id)
        order.razorpay_order_id = payment_order.id
        await self.inventory.reserve(vehicle.id, request.quantity, order.id)

        response: dict[str, Any] = {
            "order": serialize_order(order),
            "payment": handoff,
        }
        if key is not None:
            response = await self.idempotency.store(key, actor.id, CHECKOUT_SCOPE, response)

        logger.info(
            "Checkout completed",
            order_id=str(order.id),
            razorpay_order_id=payment_order.id,
            total=format_money(pricing.total),
            payment_amount=format_money(payment_amount),
        )
        self.notifier.notify(
            actor.id,
            "Order placed",
            f"Your order for {vehicle.name} has been placed. Complete the payment to confirm it.",
            NotificationType.ORDER_PLACED,
            {"order_id": order.id, "total": format_money(pricing.total)},
        )
        return response, False

    async def update_status(
        self,
        actor: AuthenticatedUser,
        order_id: uuid.UUID,
        request: OrderStatusUpdateRequest,
    ) -> dict[str, Any]:
        """
        Move an order along its lifecycle.

        Raises:
            NotFoundError: If the order does not exist
            PermissionDeniedError: Customer actor, dealer outside its scope,
                or dealer driving a status reserved to operators
            InvalidTransition: Target not reachable from the current status
            ConflictError: The order changed concurrently
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)

        if actor.is_dealer:
            await self._ensure_dealer_scope(actor, order)

        transition = self.state_machine.plan(
            order,
            request.status,
            actor.role,
            tracking_number=request.tracking_number,
            notes=request.notes,
            reason=request.reason,
        )

        applied = await self.orders.update_status_if(
            order.id, transition.current, **transition.changes
        )
        if not applied:
            logger.warning(
                "Order status changed concurrently",
                order_id=str(order_id),
                expected=transition.current.value,
                target=transition.target.value,
            )
            raise ConflictError(
                "Order was modified by another request, reload and retry",
                code="CONCURRENT_MODIFICATION",
            )

        if transition.release_reservation:
            await self.inventory.release(order.id)
        if transition.restore_stock:
            await self.inventory.restore_stock(order.vehicle_id, order.quantity)
        if transition.refund_due:
            self._queue_refund(order, transition.changes.get("cancellation_reason"))

        updated = await self.orders.get_by_id(order_id)
        logger.info(
            "Order status updated",
            order_id=str(order_id),
            transition=f"{transition.current.value}->{transition.target.value}",
            actor_id=str(actor.id),
        )
        self.notifier.notify(
            updated.user_id,
            "Order update",
            STATUS_MESSAGES.get(transition.target, "Your order status changed."),
            NotificationType.ORDER_STATUS_CHANGED,
            {"order_id": updated.id, "status": transition.target.value},
        )
        return serialize_order(updated)

    async def _ensure_dealer_scope(
        self, actor: AuthenticatedUser, order: VehicleOrder
    ) -> None:
        dealer = await self.dealers.get_by_user_id(actor.id)
        if dealer is None or order.dealer_id != dealer.id:
            raise PermissionDeniedError(
                "Order is not assigned to your dealership",
                order_id=str(order.id),
            )

    def _queue_refund(self, order: VehicleOrder, reason: Optional[str]) -> None:
        if not order.razorpay_payment_id:
            logger.error(
                "Paid order cancelled without a payment id, manual refund required",
                order_id=str(order.id),
            )
            return
        self.refund_queue.enqueue_refund(
            payment_id=order.razorpay_payment_id,
            reason=reason or "Order cancelled",
            reference_type=EntityType.VEHICLE_ORDER,
            reference_id=order.id,
        )
