"""Test ride booking data access."""

import uuid
from datetime import date, datetime, time
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from evmarket.core.logging import get_logger
from evmarket.database.models.test_ride import TestRideBooking
from evmarket.database.repository import BaseRepository, RepositoryError
from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.test_rides.enums import ACTIVE_BOOKING_STATUSES, BookingStatus

logger = get_logger(__name__)

UNPAID_STATUSES = (PaymentStatus.PENDING, PaymentStatus.FAILED)


class BookingRepository(BaseRepository):
    """
    Repository for test ride bookings.

    The partial unique index on active slots makes ``create`` raise
    ``DuplicateRecordError`` for a second pending/confirmed booking of the
    same (user, vehicle, date, time).
    """

    model = TestRideBooking

    async def create(self, **fields: Any) -> TestRideBooking:
        booking = TestRideBooking(
            id=fields.pop("id", None) or uuid.uuid4(),
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            **fields,
        )
        return await self._add(
            booking,
            "create_booking",
            booking_id=str(booking.id),
            user_id=str(booking.user_id),
        )

    async def find_active_for_slot(
        self,
        user_id: uuid.UUID,
        vehicle_id: uuid.UUID,
        preferred_date: date,
        preferred_time: time,
    ) -> Optional[TestRideBooking]:
        stmt = select(TestRideBooking).where(
            TestRideBooking.user_id == user_id,
            TestRideBooking.vehicle_id == vehicle_id,
            TestRideBooking.preferred_date == preferred_date,
            TestRideBooking.preferred_time == preferred_time,
            TestRideBooking.status.in_(list(ACTIVE_BOOKING_STATUSES)),
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to look up booking slot", user_id=str(user_id), error=str(e))
            raise RepositoryError("find_active_for_slot failed") from e
        return result.scalars().first()

    async def count_created_since(self, user_id: uuid.UUID, since: datetime) -> int:
        """Bookings the user created at or after ``since``, in any status."""
        stmt = select(func.count(TestRideBooking.id)).where(
            TestRideBooking.user_id == user_id,
            TestRideBooking.created_at >= since,
        )
        try:
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to count bookings", user_id=str(user_id), error=str(e))
            raise RepositoryError("count_created_since failed") from e
        return result.scalar_one()

    async def update_status_if(
        self,
        booking_id: uuid.UUID,
        expected_status: BookingStatus,
        expected_dealer_id: Any = ...,
        **changes: Any,
    ) -> bool:
        """
        Apply a status change only if the booking is still in
        ``expected_status`` (and, when given, still assigned to
        ``expected_dealer_id``; ``None`` means still unassigned).
        """
        conditions: dict[str, Any] = {"status": expected_status}
        if expected_dealer_id is not ...:
            conditions["dealer_id"] = expected_dealer_id
        return await self.update_if(booking_id, conditions, **changes)

    async def mark_paid_and_confirm_if_pending(
        self,
        booking_id: uuid.UUID,
        payment_id: str,
        paid_at: datetime,
        confirmed_date: date,
        confirmed_time: time,
    ) -> bool:
        return await self.update_if(
            booking_id,
            {"status": BookingStatus.PENDING, "payment_status": UNPAID_STATUSES},
            status=BookingStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            razorpay_payment_id=payment_id,
            paid_at=paid_at,
            confirmed_at=paid_at,
            confirmed_date=confirmed_date,
            confirmed_time=confirmed_time,
        )

    async def mark_payment_failed_if_pending(
        self,
        booking_id: uuid.UUID,
        reason: str,
        cancelled_at: datetime,
    ) -> bool:
        return await self.update_if(
            booking_id,
            {"status": BookingStatus.PENDING, "payment_status": PaymentStatus.PENDING},
            status=BookingStatus.CANCELLED,
            payment_status=PaymentStatus.FAILED,
            cancellation_reason=reason,
            cancelled_at=cancelled_at,
        )

    async def mark_paid_if_unpaid(
        self,
        booking_id: uuid.UUID,
        payment_id: str,
        paid_at: datetime,
    ) -> bool:
        return await self.update_if(
            booking_id,
            {"payment_status": UNPAID_STATUSES},
            payment_status=PaymentStatus.PAID,
            razorpay_payment_id=payment_id,
            paid_at=paid_at,
        )

    async def set_refund_state(
        self,
        booking_id: uuid.UUID,
        payment_status: PaymentStatus,
    ) -> bool:
        return await self.update_if(
            booking_id,
            {"payment_status": (
                PaymentStatus.PAID,
                PaymentStatus.PARTIAL_REFUND,
                PaymentStatus.REFUNDED,
            )},
            payment_status=payment_status,
        )
