"""
Celery tasks for refunds owed by cancellations.

Cancelling a paid booking or order publishes ``payments.refund_payment``;
the worker issues the refund as the system actor. Transient gateway and
database failures are retried with backoff; business rejections (already
refunded, nothing captured) are logged and dropped.
"""

from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from celery import Task, shared_task

from evmarket.core.config import get_settings
from evmarket.core.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from evmarket.core.identity import SYSTEM_USER
from evmarket.core.logging import get_logger
from evmarket.database.connection import get_session
from evmarket.database.repository import ConstraintViolationError, RepositoryError
from evmarket.services.factory import build_refund_service
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.razorpay_client import create_razorpay_client
from evmarket.worker import REFUND_PAYMENT_TASK, run_async

logger = get_logger(__name__)


class RefundTask(Task):
    """Base task for refunds: retries store failures and logs task state."""

    autoretry_for = (RepositoryError,)
    dont_autoretry_for = (ConstraintViolationError,)
    retry_kwargs = {"max_retries": 5}
    retry_backoff = True
    retry_backoff_max = 1800
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Refund task failed, manual refund required",
            task_id=task_id,
            exception=str(exc),
            payment_id=kwargs.get("payment_id"),
            reference_type=kwargs.get("reference_type"),
            reference_id=kwargs.get("reference_id"),
            exc_info=einfo,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Refund task retrying",
            task_id=task_id,
            exception=str(exc),
            payment_id=kwargs.get("payment_id"),
            retry_count=self.request.retries,
        )


async def process_refund(
    payment_id: str,
    reason: str,
    reference_type: EntityType,
    reference_id: UUID,
    amount: Optional[Decimal] = None,
) -> dict[str, Any]:
    async with create_razorpay_client() as gateway:
        async with get_session() as session:
            service = build_refund_service(session, gateway)
            return await service.initiate_refund(
                SYSTEM_USER,
                payment_id,
                amount=amount,
                reason=reason,
                reference_type=reference_type,
                reference_id=reference_id,
            )


@shared_task(
    bind=True,
    base=RefundTask,
    name=REFUND_PAYMENT_TASK,
    time_limit=120,
    soft_time_limit=100,
)
def refund_payment_task(
    self: Task,
    payment_id: str,
    reason: str,
    reference_type: str,
    reference_id: str,
    amount: Optional[str] = None,
) -> dict[str, Any]:
    """
    Refund a captured payment on behalf of the system.

    Args:
        self: Task instance
        payment_id: Gateway payment id
        reason: Cancellation reason stored on the refund
        reference_type: ``test_ride`` or ``vehicle_order``
        reference_id: Booking or order id
        amount: Decimal string; omitted means the full refundable amount

    Returns:
        The refund summary, or a ``skipped``/``rejected`` status
    """
    logger.info(
        "Processing refund task",
        task_id=self.request.id,
        payment_id=payment_id,
        reference_type=reference_type,
        reference_id=reference_id,
    )
    try:
        return run_async(
            lambda: process_refund(
                payment_id=payment_id,
                reason=reason,
                reference_type=EntityType.from_string(reference_type),
                reference_id=UUID(reference_id),
                amount=Decimal(amount) if amount else None,
            )
        )
    except GatewayError as e:
        if e.transient:
            countdown = get_settings().gateway_max_backoff * (2 ** self.request.retries)
            raise self.retry(exc=e, countdown=countdown, max_retries=5)
        logger.error(
            "Gateway rejected refund",
            payment_id=payment_id,
            code=e.code,
            error=e.message,
        )
        return {"status": "rejected", "payment_id": payment_id, "error": e.message}
    except (ConflictError, NotFoundError, ValidationError) as e:
        logger.warning(
            "Refund skipped",
            payment_id=payment_id,
            code=e.code,
            reason=e.message,
        )
        return {"status": "skipped", "payment_id": payment_id, "reason": e.message}
