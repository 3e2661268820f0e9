"""
Client-side payment verification.

After the checkout widget reports success the client posts the gateway's
order id, payment id and signature. The signature is checked before anything
is read or written; a match settles the linked booking or order through the
same conditional path the webhook uses, so the two can arrive in any order.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional

from evmarket.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    SignatureError,
    ValidationError,
)
from evmarket.core.identity import AuthenticatedUser
from evmarket.core.logging import get_logger, log_security_event
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.razorpay_client import RazorpayClient
from evmarket.services.payments.repository import PaymentOrderRepository
from evmarket.services.payments.settlement import PaymentSettlement, serialize_entity

logger = get_logger(__name__)

VERIFIED_MESSAGES = {
    EntityType.TEST_RIDE: "Payment verified. Your test ride is confirmed.",
    EntityType.VEHICLE_ORDER: "Payment verified. Your order is confirmed.",
}
ALREADY_VERIFIED_MESSAGE = "Payment already verified"


class PaymentService:
    """
    Verifies checkout signatures and settles the paid entity.

    Attributes:
        gateway: Razorpay adapter used for the signature check and payment fetch
        payment_orders: Local gateway order records
        settlement: Applies the capture to the booking or order
    """

    def __init__(
        self,
        gateway: RazorpayClient,
        payment_orders: PaymentOrderRepository,
        settlement: PaymentSettlement,
    ):
        self.gateway = gateway
        self.payment_orders = payment_orders
        self.settlement = settlement

    async def verify_payment(
        self,
        actor: AuthenticatedUser,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        razorpay_order_id: str,
        payment_id: str,
        signature: str,
    ) -> dict[str, Any]:
        """
        Verify a checkout signature and confirm the paid entity.

        Args:
            actor: Caller; must own the payment or be staff
            entity_type: Booking or order the payment is for
            entity_id: Identifier of that booking or order
            razorpay_order_id: Gateway order id from the widget
            payment_id: Gateway payment id from the widget
            signature: Gateway signature from the widget

        Returns:
            ``{"status", "message", "entity_type", "entity"}`` where status is
            ``verified`` the first time and ``already_verified`` afterwards

        Raises:
            SignatureError: The signature does not match; nothing is changed
            NotFoundError: Unknown gateway order or entity
            ValidationError: Gateway order belongs to a different entity
            PermissionDeniedError: Caller does not own the payment
            ConflictError: The entity was cancelled before payment landed
        """
        if not self.gateway.verify_payment_signature(razorpay_order_id, payment_id, signature):
            log_security_event(
                logger,
                "Payment signature mismatch",
                razorpay_order_id=razorpay_order_id,
                payment_id=payment_id,
                user_id=str(actor.id),
                entity_type=entity_type.value,
            )
            raise SignatureError("Invalid payment signature")

        payment_order = await self.payment_orders.get_by_id(razorpay_order_id)
        if payment_order is None:
            raise NotFoundError("Payment order", razorpay_order_id)

        if payment_order.entity_type != entity_type or payment_order.entity_id != entity_id:
            raise ValidationError(
                "Payment does not belong to this "
                + ("booking" if entity_type == EntityType.TEST_RIDE else "order"),
                field="razorpay_order_id",
            )

        if payment_order.user_id != actor.id and not actor.role.is_staff:
            raise PermissionDeniedError(
                "You can only verify your own payments",
                razorpay_order_id=razorpay_order_id,
            )

        amount: Optional[Decimal] = None
        method: Optional[str] = None
        try:
            remote = await self.gateway.fetch_payment(payment_id)
            amount, method = remote.amount, remote.method
        except GatewayError as e:
            # Signature already proves the payment; details can wait for the webhook.
            logger.warning(
                "Payment fetch failed during verification",
                payment_id=payment_id,
                code=e.code,
                transient=e.transient,
            )

        outcome = await self.settlement.settle_capture(
            payment_order, payment_id, amount=amount, method=method
        )
        if outcome.entity is None:
            raise NotFoundError(entity_type.value, entity_id)

        if outcome.newly_settled:
            status, message = "verified", VERIFIED_MESSAGES[entity_type]
        elif outcome.entity.razorpay_payment_id == payment_id and self._is_confirmed(outcome):
            status, message = "already_verified", ALREADY_VERIFIED_MESSAGE
        else:
            raise ConflictError(
                "This "
                + ("booking" if entity_type == EntityType.TEST_RIDE else "order")
                + " was cancelled before the payment completed. The payment will be refunded.",
                code="ENTITY_CANCELLED",
            )

        logger.info(
            "Payment verification completed",
            razorpay_order_id=razorpay_order_id,
            payment_id=payment_id,
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            status=status,
        )
        return {
            "status": status,
            "message": message,
            "entity_type": entity_type.value,
            "entity": serialize_entity(entity_type, outcome.entity),
        }

    @staticmethod
    def _is_confirmed(outcome) -> bool:
        entity = outcome.entity
        status = (
            entity.status
            if outcome.entity_type == EntityType.TEST_RIDE
            else entity.order_status
        )
        return status.value != "cancelled" and entity.payment_status.is_settled()
