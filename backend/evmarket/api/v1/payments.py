"""
Payment API endpoints: generic verification and refunds.
"""

from fastapi import APIRouter, status

from evmarket.api.deps import (
    CurrentUser,
    PaymentServiceDep,
    RefundServiceDep,
    StaffUser,
)
from evmarket.core.logging import get_logger
from evmarket.schemas.payments import (
    PaymentVerificationRequest,
    PaymentVerificationResponse,
    RefundRequest,
    RefundResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post(
    "/verify",
    response_model=PaymentVerificationResponse,
    summary="Verify a checkout payment for a booking or order",
)
async def verify_payment(
    payload: PaymentVerificationRequest,
    current_user: CurrentUser,
    service: PaymentServiceDep,
) -> dict:
    return await service.verify_payment(
        current_user,
        payload.entity_type,
        payload.entity_id,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )


@router.post(
    "/refund",
    response_model=RefundResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Refund a captured payment",
)
async def refund_payment(
    payload: RefundRequest,
    current_user: StaffUser,
    service: RefundServiceDep,
) -> dict:
    """
    Refund part or all of a captured payment.

    Omitting ``amount`` refunds everything that has not been refunded yet.
    """
    logger.info(
        "Refund requested",
        payment_id=payload.payment_id,
        amount=str(payload.amount) if payload.amount is not None else None,
        user_id=str(current_user.id),
    )
    return await service.initiate_refund(
        current_user,
        payload.payment_id,
        amount=payload.amount,
        reason=payload.reason,
        reference_type=payload.reference_type,
        reference_id=payload.reference_id,
    )
