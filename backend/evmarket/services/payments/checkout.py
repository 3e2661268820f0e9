"""
Opening gateway orders for business entities.

Both the vehicle checkout and the test ride booking create a remote order,
record it locally keyed by the gateway's order id, and hand the checkout
widget what it needs. The local ``payment_orders`` row carries the entity
type and id so a bare webhook can always find its booking or order again.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

from evmarket.core.logging import get_logger
from evmarket.database.models.payment import PaymentOrder
from evmarket.services.orders.pricing import format_money
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.razorpay_client import RazorpayClient, to_subunits
from evmarket.services.payments.repository import PaymentOrderRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class Prefill:
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class GatewayCheckout:
    """
    Creates remote orders and the matching local payment order rows.

    Attributes:
        gateway: Razorpay adapter
        payment_orders: Local payment order repository
        display_name: Merchant name shown in the checkout widget
    """

    def __init__(
        self,
        gateway: RazorpayClient,
        payment_orders: PaymentOrderRepository,
        display_name: str,
    ):
        self.gateway = gateway
        self.payment_orders = payment_orders
        self.display_name = display_name

    async def open_order(
        self,
        entity_type: EntityType,
        entity_id: uuid.UUID,
        user_id: uuid.UUID,
        amount: Decimal,
        currency: str,
        receipt: str,
        description: str,
        notes: dict[str, Any],
        prefill: Prefill,
    ) -> tuple[PaymentOrder, dict[str, Any]]:
        """
        Create the remote order and its local record.

        Raises:
            GatewayError: If the gateway call fails; nothing is written locally

        Returns:
            The payment order row and the checkout handoff payload
        """
        gateway_notes = {"type": entity_type.value, **notes}
        remote = await self.gateway.create_order(
            amount=amount,
            currency=currency,
            receipt=receipt,
            notes=gateway_notes,
        )
        payment_order = await self.payment_orders.create(
            id=remote.id,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            amount=remote.amount,
            currency=remote.currency,
            receipt=remote.receipt,
            notes={k: str(v) for k, v in gateway_notes.items() if v is not None},
        )
        logger.info(
            "Payment order opened",
            razorpay_order_id=remote.id,
            entity_type=entity_type.value,
            entity_id=str(entity_id),
            amount=str(remote.amount),
        )

        handoff = {
            "key": self.gateway.key_id,
            "razorpay_order_id": remote.id,
            "amount": format_money(remote.amount),
            "amount_subunits": to_subunits(remote.amount),
            "currency": remote.currency,
            "name": self.display_name,
            "description": description,
            "prefill": {
                "name": prefill.name,
                "email": prefill.email,
                "contact": prefill.contact,
            },
            "notes": payment_order.notes,
        }
        return payment_order, handoff
