"""
Refund queue: the hand-off between a cancellation and the refund it owes.

Cancelling a paid order (or a capture landing on an already cancelled
booking/order) must never fail because the refund could not be issued right
now, so the refund is published as a Celery task and retried there. The
publish itself runs off the event loop.
"""

import uuid
from decimal import Decimal
from typing import Any, Optional, Protocol

from celery import Celery

from evmarket.core.logging import get_logger
from evmarket.services.payments.enums import EntityType
from evmarket.worker import REFUND_PAYMENT_TASK, celery_app, publish_in_background

logger = get_logger(__name__)


class RefundQueue(Protocol):
    def enqueue_refund(
        self,
        payment_id: str,
        reason: str,
        reference_type: EntityType,
        reference_id: uuid.UUID,
        amount: Optional[Decimal] = None,
    ) -> None:
        ...


class CeleryRefundQueue:
    """Publishes ``payments.refund_payment`` tasks."""

    def __init__(self, app: Optional[Celery] = None):
        self.app = app or celery_app

    def enqueue_refund(
        self,
        payment_id: str,
        reason: str,
        reference_type: EntityType,
        reference_id: uuid.UUID,
        amount: Optional[Decimal] = None,
    ) -> None:
        kwargs = {
            "payment_id": payment_id,
            "reason": reason,
            "reference_type": reference_type.value,
            "reference_id": str(reference_id),
            "amount": str(amount) if amount is not None else None,
        }
        publish_in_background(lambda: self._publish(kwargs))

    def _publish(self, kwargs: dict[str, Any]) -> None:
        try:
            self.app.send_task(REFUND_PAYMENT_TASK, kwargs=kwargs)
            logger.info(
                "Refund queued",
                payment_id=kwargs["payment_id"],
                reference_type=kwargs["reference_type"],
                reference_id=kwargs["reference_id"],
            )
        except Exception as e:
            logger.error(
                "Failed to queue refund, manual refund required",
                payment_id=kwargs["payment_id"],
                reference_type=kwargs["reference_type"],
                reference_id=kwargs["reference_id"],
                error=str(e),
                error_type=type(e).__name__,
            )
