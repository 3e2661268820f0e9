"""
Razorpay webhook reconciliation.

Once the signature over the raw body checks out, the delivery is always
acknowledged: handler failures are logged and stored on the audit row instead
of being returned to the gateway, whose retries would otherwise pile up
behind an application bug. Every verified delivery is persisted.
"""

import json
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from evmarket.core.errors import SignatureError
from evmarket.core.logging import get_logger, log_security_event
from evmarket.database.models.payment import PaymentOrder
from evmarket.database.repository import RepositoryError
from evmarket.services.payments.razorpay_client import RazorpayClient, from_subunits
from evmarket.services.payments.refunds import RefundService
from evmarket.services.payments.repository import (
    PaymentOrderRepository,
    WebhookEventRepository,
)
from evmarket.services.payments.settlement import PaymentSettlement

logger = get_logger(__name__)

WEBHOOK_SOURCE = "razorpay"
UNPARSEABLE_EVENT = "unparseable"
ACKNOWLEDGEMENT = {"status": "ok"}


def _entity(payload: dict[str, Any], name: str) -> Optional[dict[str, Any]]:
    """``payload.<name>.entity`` of a Razorpay event, if present."""
    section = (payload.get("payload") or {}).get(name) or {}
    return section.get("entity")


class WebhookReconciler:
    """
    Verifies, dispatches and audits gateway webhook deliveries.

    Attributes:
        gateway: Supplies the webhook signature check
        payment_orders: Resolves gateway order ids back to business entities
        settlement: Applies captures and failures
        refund_service: Applies refund outcomes
        events: Audit log
    """

    def __init__(
        self,
        gateway: RazorpayClient,
        payment_orders: PaymentOrderRepository,
        settlement: PaymentSettlement,
        refund_service: RefundService,
        events: WebhookEventRepository,
    ):
        self.gateway = gateway
        self.payment_orders = payment_orders
        self.settlement = settlement
        self.refund_service = refund_service
        self.events = events

        self._handlers: Dict[str, Callable[[dict[str, Any]], Awaitable[bool]]] = {
            "payment.captured": self._handle_payment_captured,
            "payment.failed": self._handle_payment_failed,
            "order.paid": self._handle_order_paid,
            "refund.processed": self._handle_refund_processed,
            "refund.failed": self._handle_refund_failed,
        }

    async def handle(
        self,
        raw_body: bytes,
        signature: Optional[str],
        event_id: Optional[str] = None,
    ) -> dict[str, str]:
        """
        Process one delivery.

        Raises:
            SignatureError: The signature does not match the raw body; the
                delivery is neither handled nor stored
        """
        if not self.gateway.verify_webhook_signature(raw_body, signature):
            log_security_event(
                logger,
                "Webhook signature mismatch",
                event_id=event_id,
                has_signature=bool(signature),
            )
            raise SignatureError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
            if not isinstance(payload, dict):
                raise ValueError("Webhook body is not a JSON object")
        except ValueError as e:
            logger.error("Unparseable webhook body", event_id=event_id, error=str(e))
            await self._record(
                event_id,
                UNPARSEABLE_EVENT,
                payload=None,
                raw_body=raw_body.decode("utf-8", errors="replace"),
                handled=False,
                error=str(e),
            )
            return ACKNOWLEDGEMENT

        event_type = str(payload.get("event") or "unknown")
        handler = self._handlers.get(event_type)
        handled = False
        error: Optional[str] = None

        if handler is None:
            logger.info("Unhandled webhook event type", event_type=event_type, event_id=event_id)
        else:
            try:
                handled = await handler(payload)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                logger.error(
                    "Webhook handler failed",
                    event_type=event_type,
                    event_id=event_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )

        await self._record(event_id, event_type, payload=payload, handled=handled, error=error)
        logger.info(
            "Webhook processed",
            event_type=event_type,
            event_id=event_id,
            handled=handled,
            failed=error is not None,
        )
        return ACKNOWLEDGEMENT

    async def _record(self, event_id: Optional[str], event_type: str, **fields: Any) -> None:
        try:
            await self.events.create(
                source=WEBHOOK_SOURCE,
                event_id=event_id,
                event_type=event_type,
                **fields,
            )
        except RepositoryError as e:
            logger.error(
                "Failed to persist webhook event",
                event_type=event_type,
                event_id=event_id,
                error=str(e),
            )

    async def _payment_order_for(self, payment: dict[str, Any]) -> Optional[PaymentOrder]:
        order_id = payment.get("order_id")
        payment_order = await self.payment_orders.get_by_id(order_id) if order_id else None
        if payment_order is None:
            logger.warning(
                "Webhook payment has no known gateway order",
                payment_id=payment.get("id"),
                razorpay_order_id=order_id,
                notes=payment.get("notes"),
            )
        return payment_order

    async def _handle_payment_captured(self, payload: dict[str, Any]) -> bool:
        payment = _entity(payload, "payment")
        if not payment:
            return False
        payment_order = await self._payment_order_for(payment)
        if payment_order is None:
            return False
        await self.settlement.settle_capture(
            payment_order,
            payment["id"],
            amount=from_subunits(payment["amount"]) if "amount" in payment else None,
            method=payment.get("method"),
        )
        return True

    async def _handle_payment_failed(self, payload: dict[str, Any]) -> bool:
        payment = _entity(payload, "payment")
        if not payment:
            return False
        payment_order = await self._payment_order_for(payment)
        if payment_order is None:
            return False
        await self.settlement.settle_failure(
            payment_order,
            payment["id"],
            payment.get("error_description"),
        )
        return True

    async def _handle_order_paid(self, payload: dict[str, Any]) -> bool:
        order = _entity(payload, "order")
        if not order:
            return False
        payment_order = await self.payment_orders.get_by_id(order.get("id"))
        if payment_order is None:
            logger.warning("order.paid for unknown gateway order", razorpay_order_id=order.get("id"))
            return False

        amount_paid = from_subunits(order.get("amount_paid", 0))
        amount_due = from_subunits(order.get("amount_due", 0))
        await self.payment_orders.update_amounts(payment_order.id, amount_paid, amount_due)

        payment = _entity(payload, "payment")
        if payment and payment.get("status") == "captured" and amount_due <= Decimal("0"):
            await self.settlement.settle_capture(
                payment_order,
                payment["id"],
                amount=from_subunits(payment["amount"]) if "amount" in payment else None,
                method=payment.get("method"),
            )
        return True

    async def _handle_refund_processed(self, payload: dict[str, Any]) -> bool:
        refund = _entity(payload, "refund")
        if not refund:
            return False
        return await self.refund_service.record_refund_processed(refund)

    async def _handle_refund_failed(self, payload: dict[str, Any]) -> bool:
        refund = _entity(payload, "refund")
        if not refund:
            return False
        return await self.refund_service.record_refund_failed(refund)
