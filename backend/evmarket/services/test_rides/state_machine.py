"""Test ride booking state machine.

pending -> confirmed | cancelled; confirmed -> completed | cancelled.
Dealers and operators drive every transition except the customer's own
cancellation, which ``TestRideService.cancel`` handles with its notice rule.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Any, Callable, Dict, Optional

from evmarket.core.errors import (
    ConflictError,
    InvalidTransition,
    PermissionDeniedError,
    ValidationError,
)
from evmarket.core.identity import UserRole
from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.test_ride import TestRideBooking
from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.test_rides.enums import (
    BOOKING_STATUS_TRANSITIONS,
    BookingStatus,
    get_allowed_booking_transitions,
)

logger = get_logger(__name__)

DEFAULT_REJECTION_REASON = "Rejected by dealer"


@dataclass
class BookingTransition:
    current: BookingStatus
    target: BookingStatus
    changes: Dict[str, Any] = field(default_factory=dict)
    refund_due: bool = False


class TestRideStateMachine:
    """Validates booking transitions and computes their column changes."""

    __test__ = False  # not a pytest test class

    def __init__(self, clock: Callable[[], datetime] = utc_now):
        self._clock = clock

    def validate_transition(self, current: BookingStatus, target: BookingStatus) -> None:
        if target not in BOOKING_STATUS_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                current.value,
                target.value,
                allowed=[s.value for s in get_allowed_booking_transitions(current)],
            )

    def plan(
        self,
        booking: TestRideBooking,
        target: BookingStatus,
        actor_role: UserRole,
        confirmed_date: Optional[date] = None,
        confirmed_time: Optional[time] = None,
        dealer_notes: Optional[str] = None,
        rejection_reason: Optional[str] = None,
    ) -> BookingTransition:
        """
        Validate a dealer/operator transition.

        Raises:
            PermissionDeniedError: If a customer attempts a staff transition
            InvalidTransition: If ``target`` is not reachable
            ValidationError: If confirming without a confirmed slot
            ConflictError: If confirming a booking whose deposit is unpaid
                and not waived
        """
        if not actor_role.is_staff:
            raise PermissionDeniedError(
                "Only dealers and administrators can update test ride status",
                role=actor_role.value,
            )

        current = booking.status
        self.validate_transition(current, target)

        now = self._clock()
        transition = BookingTransition(
            current=current,
            target=target,
            changes={"status": target},
        )
        if dealer_notes:
            transition.changes["dealer_notes"] = dealer_notes

        if target == BookingStatus.CONFIRMED:
            if confirmed_date is None:
                raise ValidationError(
                    "Confirmed date is required to confirm a test ride",
                    field="confirmed_date",
                )
            if confirmed_time is None:
                raise ValidationError(
                    "Confirmed time is required to confirm a test ride",
                    field="confirmed_time",
                )
            if booking.payment_status != PaymentStatus.PAID and not booking.payment_waived:
                raise ConflictError(
                    "Test ride deposit has not been paid",
                    code="PAYMENT_REQUIRED",
                    payment_status=booking.payment_status.value,
                )
            transition.changes.update(
                confirmed_date=confirmed_date,
                confirmed_time=confirmed_time,
                confirmed_at=now,
            )
        elif target == BookingStatus.CANCELLED:
            transition.changes.update(
                cancellation_reason=rejection_reason or DEFAULT_REJECTION_REASON,
                cancelled_at=now,
            )
            transition.refund_due = booking.payment_status.can_refund()
        elif target == BookingStatus.COMPLETED:
            transition.changes["completed_at"] = now

        logger.info(
            "Booking transition planned",
            booking_id=str(booking.id),
            transition=f"{current.value}->{target.value}",
            role=actor_role.value,
        )
        return transition
