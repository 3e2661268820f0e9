"""
Vehicle order API endpoints: checkout, payment verification and fulfilment.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Header, status
from fastapi.responses import JSONResponse

from evmarket.api.deps import (
    CurrentUser,
    OrderServiceDep,
    PaymentServiceDep,
    StaffUser,
)
from evmarket.core.logging import get_logger
from evmarket.schemas.orders import (
    CheckoutRequest,
    CheckoutResponse,
    OrderResponse,
    OrderStatusUpdateRequest,
)
from evmarket.schemas.payments import (
    OrderPaymentVerificationRequest,
    PaymentVerificationResponse,
)
from evmarket.services.payments.enums import EntityType

logger = get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place a vehicle order",
    responses={200: {"description": "Replay for a repeated Idempotency-Key"}},
)
async def checkout(
    payload: CheckoutRequest,
    current_user: CurrentUser,
    service: OrderServiceDep,
    idempotency_key: Annotated[
        Optional[str], Header(alias="Idempotency-Key", max_length=255)
    ] = None,
) -> JSONResponse:
    """
    Price the order, create it in ``pending`` state and open its gateway order.

    Stock is held for the reservation window; it is only decremented once
    the payment is captured.
    """
    logger.info(
        "Checkout requested",
        user_id=str(current_user.id),
        vehicle_id=str(payload.vehicle_id),
        quantity=payload.quantity,
        has_idempotency_key=idempotency_key is not None,
    )
    response, replayed = await service.checkout(current_user, payload, idempotency_key)
    return JSONResponse(
        content=response,
        status_code=status.HTTP_200_OK if replayed else status.HTTP_201_CREATED,
    )


@router.post(
    "/verify-payment",
    response_model=PaymentVerificationResponse,
    summary="Verify an order payment",
)
async def verify_order_payment(
    payload: OrderPaymentVerificationRequest,
    current_user: CurrentUser,
    service: PaymentServiceDep,
) -> dict:
    return await service.verify_payment(
        current_user,
        EntityType.VEHICLE_ORDER,
        payload.order_id,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )


@router.put(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Move an order along its lifecycle",
)
async def update_order_status(
    order_id: UUID,
    payload: OrderStatusUpdateRequest,
    current_user: StaffUser,
    service: OrderServiceDep,
) -> dict:
    """
    Dealers may move their orders to processing, shipped or delivered;
    administrators may drive any allowed transition, including cancellation.
    """
    return await service.update_status(current_user, order_id, payload)
