"""
Test ride booking API endpoints.

Booking returns the pending booking plus the data the client needs to open
the gateway checkout for the deposit. Repeating an identical booking request
returns the stored response with 200 instead of 201.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Request, status
from fastapi.responses import JSONResponse

from evmarket.api.deps import (
    CurrentUser,
    PaymentServiceDep,
    StaffUser,
    TestRideServiceDep,
)
from evmarket.api.rate_limit import booking_rate_limit, limiter
from evmarket.core.logging import get_logger
from evmarket.schemas.payments import (
    PaymentVerificationResponse,
    TestRidePaymentVerificationRequest,
)
from evmarket.schemas.test_rides import (
    BookingCancelRequest,
    BookingCreatedResponse,
    BookingResponse,
    BookingStatusUpdateRequest,
    TestRideBookingRequest,
)
from evmarket.services.payments.enums import EntityType

logger = get_logger(__name__)

router = APIRouter(prefix="/test-rides", tags=["Test Rides"])


@router.post(
    "/book",
    response_model=BookingCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book a test ride",
    responses={200: {"description": "Replay of an identical earlier booking"}},
)
@limiter.limit(booking_rate_limit)
async def book_test_ride(
    request: Request,
    payload: TestRideBookingRequest,
    current_user: CurrentUser,
    service: TestRideServiceDep,
) -> JSONResponse:
    """
    Create a pending test ride booking and its deposit gateway order.

    Staff may pass ``skip_payment`` for assisted or free bookings; the flag
    is ignored for customers.
    """
    logger.info(
        "Booking test ride",
        user_id=str(current_user.id),
        vehicle_id=str(payload.vehicle_id),
        preferred_date=payload.preferred_date.isoformat(),
    )
    response, replayed = await service.book(current_user, payload)
    return JSONResponse(
        content=response,
        status_code=status.HTTP_200_OK if replayed else status.HTTP_201_CREATED,
    )


@router.post(
    "/verify-payment",
    response_model=PaymentVerificationResponse,
    summary="Verify a test ride deposit payment",
)
async def verify_test_ride_payment(
    payload: TestRidePaymentVerificationRequest,
    current_user: CurrentUser,
    service: PaymentServiceDep,
) -> dict:
    return await service.verify_payment(
        current_user,
        EntityType.TEST_RIDE,
        payload.booking_id,
        payload.razorpay_order_id,
        payload.razorpay_payment_id,
        payload.razorpay_signature,
    )


@router.put(
    "/{booking_id}/status",
    response_model=BookingResponse,
    summary="Confirm, cancel or complete a test ride",
)
async def update_test_ride_status(
    booking_id: UUID,
    payload: BookingStatusUpdateRequest,
    current_user: StaffUser,
    service: TestRideServiceDep,
) -> dict:
    """Dealer or administrator decision on a booking."""
    return await service.update_status(current_user, booking_id, payload)


@router.post(
    "/{booking_id}/cancel",
    response_model=BookingResponse,
    summary="Cancel your own test ride",
)
async def cancel_test_ride(
    booking_id: UUID,
    current_user: CurrentUser,
    service: TestRideServiceDep,
    payload: Optional[BookingCancelRequest] = Body(None),
) -> dict:
    """Customer cancellation; only allowed well ahead of the ride."""
    return await service.cancel(
        current_user,
        booking_id,
        reason=payload.reason if payload else None,
    )
