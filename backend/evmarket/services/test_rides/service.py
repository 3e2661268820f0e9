"""
Test ride booking service.

Booking runs: idempotency check -> validation -> slot and quota guards ->
create pending booking -> create gateway order for the deposit -> attach the
gateway id -> store the response for replay. A retry of a booking whose
earlier attempt died before the gateway step resumes that pending row
instead of being rejected as a duplicate.
"""

import re
import secrets
import string
import uuid
from datetime import datetime, time, timedelta
from typing import Any, Callable, Optional

from evmarket.core.config import Settings
from evmarket.core.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from evmarket.core.identity import AuthenticatedUser
from evmarket.core.logging import get_logger
from evmarket.database.base import utc_now
from evmarket.database.models.test_ride import TestRideBooking
from evmarket.database.repository import DuplicateRecordError
from evmarket.schemas.test_rides import (
    BookingStatusUpdateRequest,
    TestRideBookingRequest,
)
from evmarket.services.catalog.repository import DealerRepository, VehicleRepository
from evmarket.services.idempotency.guard import IdempotencyGuard
from evmarket.services.notifications.sink import NotificationSink, NotificationType
from evmarket.services.orders.pricing import format_money
from evmarket.services.payments.checkout import GatewayCheckout, Prefill
from evmarket.services.payments.enums import EntityType
from evmarket.services.payments.queue import RefundQueue
from evmarket.services.test_rides.enums import BookingStatus
from evmarket.services.test_rides.repository import BookingRepository
from evmarket.services.test_rides.serializers import serialize_booking
from evmarket.services.test_rides.state_machine import TestRideStateMachine

logger = get_logger(__name__)

BOOKING_SCOPE = "test_ride_booking"
CONFIRMATION_ALPHABET = string.ascii_uppercase + string.digits
PHONE_PATTERN = re.compile(r"^\+?\d{10,15}$")
DEFAULT_CUSTOMER_CANCEL_REASON = "Cancelled by customer"

STATUS_NOTIFICATIONS = {
    BookingStatus.CONFIRMED: (
        "Test ride confirmed",
        "Your test ride is confirmed.",
        NotificationType.BOOKING_CONFIRMED,
    ),
    BookingStatus.CANCELLED: (
        "Test ride cancelled",
        "Your test ride has been cancelled.",
        NotificationType.BOOKING_CANCELLED,
    ),
    BookingStatus.COMPLETED: (
        "Test ride completed",
        "Thanks for riding with us. We hope you enjoyed it.",
        NotificationType.BOOKING_COMPLETED,
    ),
}


def generate_confirmation_code() -> str:
    """``TR-`` followed by eight upper-case alphanumerics."""
    return "TR-" + "".join(secrets.choice(CONFIRMATION_ALPHABET) for _ in range(8))


class TestRideService:
    """
    Orchestrates test ride booking, staff decisions and customer cancellation.

    Attributes:
        bookings: Booking repository
        checkout_gateway: Opens the deposit gateway order
        idempotency: Guard against duplicate booking submissions
        state_machine: Staff transition validation
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        bookings: BookingRepository,
        vehicles: VehicleRepository,
        dealers: DealerRepository,
        checkout_gateway: GatewayCheckout,
        idempotency: IdempotencyGuard,
        notifier: NotificationSink,
        refund_queue: RefundQueue,
        settings: Settings,
        state_machine: Optional[TestRideStateMachine] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.bookings = bookings
        self.vehicles = vehicles
        self.dealers = dealers
        self.checkout_gateway = checkout_gateway
        self.idempotency = idempotency
        self.notifier = notifier
        self.refund_queue = refund_queue
        self.settings = settings
        self.state_machine = state_machine or TestRideStateMachine(clock=clock)
        self._clock = clock

    def _slot_start(self, booking_date, booking_time: time) -> datetime:
        return datetime.combine(booking_date, booking_time, tzinfo=self.settings.tz)

    def _start_of_today(self) -> datetime:
        local_now = self._clock().astimezone(self.settings.tz)
        return local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    async def book(
        self,
        actor: AuthenticatedUser,
        request: TestRideBookingRequest,
    ) -> tuple[dict[str, Any], bool]:
        """
        Create (or replay) a test ride booking.

        Returns:
            (response, replayed) where ``replayed`` is True when an identical
            earlier request's stored response is returned

        Raises:
            ValidationError: Bad phone number or slot in the past
            NotFoundError: Vehicle or dealer missing or inactive
            ConflictError: Slot already booked or daily limit reached
            GatewayError: Deposit order could not be created
        """
        key = self.idempotency.derive_key(
            actor.id,
            {
                "vehicle_id": request.vehicle_id,
                "preferred_date": request.preferred_date,
                "preferred_time": request.preferred_time,
                "dealer_id": request.dealer_id,
            },
        )
        check = await self.idempotency.check(key)
        if check.is_duplicate:
            return check.prior_response, True

        phone = self._normalize_phone(request.customer_phone or actor.phone)

        vehicle = await self.vehicles.get_by_id(request.vehicle_id)
        if vehicle is None or not vehicle.is_active:
            raise NotFoundError("Vehicle", request.vehicle_id)

        if request.dealer_id is not None:
            dealer = await self.dealers.get_by_id(request.dealer_id)
            if dealer is None or not dealer.is_active:
                raise NotFoundError("Dealer", request.dealer_id)

        if self._slot_start(request.preferred_date, request.preferred_time) <= self._clock():
            raise ValidationError(
                "Test ride date and time must be in the future",
                field="preferred_date",
            )

        skip_payment = request.skip_payment and actor.role.is_staff
        if request.skip_payment and not skip_payment:
            logger.warning(
                "skip_payment ignored for non-staff actor",
                user_id=str(actor.id),
                role=actor.role.value,
            )

        booking = await self._resume_or_create(actor, request, phone, skip_payment)
        if isinstance(booking, dict):
            # Lost a creation race to an identical request that already stored.
            return booking, True

        handoff: Optional[dict[str, Any]] = None
        if not skip_payment:
            try:
                payment_order, handoff = await self.checkout_gateway.open_order(
                    entity_type=EntityType.TEST_RIDE,
                    entity_id=booking.id,
                    user_id=actor.id,
                    amount=booking.deposit_amount,
                    currency=self.settings.currency,
                    receipt=booking.confirmation_code,
                    description=f"Test ride deposit - {vehicle.name}",
                    notes={
                        "booking_id": str(booking.id),
                        "user_id": str(actor.id),
                        "vehicle_id": str(vehicle.id),
                        "dealer_id": str(request.dealer_id) if request.dealer_id else None,
                        "date": request.preferred_date.isoformat(),
                        "time": request.preferred_time.isoformat(timespec="minutes"),
                        "contact": phone,
                    },
                    prefill=Prefill(
                        name=request.customer_name or actor.name,
                        email=request.customer_email or actor.email,
                        contact=phone,
                    ),
                )
            except GatewayError as e:
                logger.warning(
                    "Deposit order creation failed, booking left pending",
                    booking_id=str(booking.id),
                    code=e.code,
                    transient=e.transient,
                )
                raise
            await self.bookings.update(booking.id, razorpay_order_id=payment_order.id)
            booking.razorpay_order_id = payment_order.id

        response = await self.idempotency.store(
            key,
            actor.id,
            BOOKING_SCOPE,
            {"booking": serialize_booking(booking), "payment": handoff},
        )

        logger.info(
            "Test ride booked",
            booking_id=str(booking.id),
            confirmation_code=booking.confirmation_code,
            payment_waived=booking.payment_waived,
        )
        self.notifier.notify(
            actor.id,
            "Test ride booked",
            f"Your test ride booking {booking.confirmation_code} has been received.",
            NotificationType.BOOKING_CREATED,
            {"booking_id": booking.id, "confirmation_code": booking.confirmation_code},
        )
        return response, False

    async def _resume_or_create(
        self,
        actor: AuthenticatedUser,
        request: TestRideBookingRequest,
        phone: Optional[str],
        skip_payment: bool,
    ) -> Any:
        existing = await self.bookings.find_active_for_slot(
            actor.id,
            request.vehicle_id,
            request.preferred_date,
            request.preferred_time,
        )
        if existing is not None:
            if self._is_abandoned(existing) and not skip_payment:
                logger.info(
                    "Resuming pending booking without gateway order",
                    booking_id=str(existing.id),
                )
                return existing
            raise self._duplicate_slot_error()

        created_today = await self.bookings.count_created_since(
            actor.id, self._start_of_today()
        )
        if created_today >= self.settings.daily_booking_limit:
            raise ConflictError(
                "Daily booking limit reached. Please try again tomorrow.",
                code="DAILY_LIMIT_REACHED",
                limit=self.settings.daily_booking_limit,
            )

        fields = dict(
            user_id=actor.id,
            vehicle_id=request.vehicle_id,
            dealer_id=request.dealer_id,
            preferred_date=request.preferred_date,
            preferred_time=request.preferred_time,
            deposit_amount=self.settings.test_ride_deposit,
            payment_waived=skip_payment,
            customer_name=request.customer_name or actor.name,
            customer_email=request.customer_email or actor.email,
            customer_phone=phone,
            notes=request.notes,
        )
        for _ in range(2):
            try:
                return await self.bookings.create(
                    confirmation_code=generate_confirmation_code(), **fields
                )
            except DuplicateRecordError:
                racing = await self.bookings.find_active_for_slot(
                    actor.id,
                    request.vehicle_id,
                    request.preferred_date,
                    request.preferred_time,
                )
                if racing is None:
                    # Confirmation code collision; draw another.
                    continue
                key = self.idempotency.derive_key(
                    actor.id,
                    {
                        "vehicle_id": request.vehicle_id,
                        "preferred_date": request.preferred_date,
                        "preferred_time": request.preferred_time,
                        "dealer_id": request.dealer_id,
                    },
                )
                check = await self.idempotency.check(key)
                if check.is_duplicate:
                    return check.prior_response
                raise self._duplicate_slot_error()
        raise ConflictError(
            "Could not allocate a confirmation code, please retry",
            code="CONFIRMATION_CODE_EXHAUSTED",
        )

    @staticmethod
    def _is_abandoned(booking: TestRideBooking) -> bool:
        return (
            booking.status == BookingStatus.PENDING
            and booking.razorpay_order_id is None
            and not booking.payment_waived
        )

    @staticmethod
    def _duplicate_slot_error() -> ConflictError:
        return ConflictError(
            "You already have a test ride booked for this vehicle at this time. "
            "Please choose another time.",
            code="DUPLICATE_BOOKING",
        )

    @staticmethod
    def _normalize_phone(phone: Optional[str]) -> Optional[str]:
        if not phone:
            return None
        compact = re.sub(r"[\s\-()]", "", phone)
        if not PHONE_PATTERN.match(compact):
            raise ValidationError(
                "Phone number must contain 10 to 15 digits",
                field="customer_phone",
            )
        return compact

    async def update_status(
        self,
        actor: AuthenticatedUser,
        booking_id: uuid.UUID,
        request: BookingStatusUpdateRequest,
    ) -> dict[str, Any]:
        """
        Dealer/operator decision on a booking: confirm, cancel or complete.

        A dealer may act on bookings of its own dealership, or on unassigned
        bookings, which it claims in the same update.

        Raises:
            NotFoundError: Unknown booking
            PermissionDeniedError: Outside the dealer's scope
            InvalidTransition: Target not reachable
            ConflictError: The booking changed concurrently
        """
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Test ride booking", booking_id)

        expected_dealer: Any = ...
        claim: dict[str, Any] = {}
        if actor.is_dealer:
            dealer = await self.dealers.get_by_user_id(actor.id)
            if dealer is None:
                raise PermissionDeniedError("No dealership is linked to this account")
            if booking.dealer_id is None:
                expected_dealer = None
                claim["dealer_id"] = dealer.id
            elif booking.dealer_id == dealer.id:
                expected_dealer = dealer.id
            else:
                raise PermissionDeniedError(
                    "Booking is assigned to another dealership",
                    booking_id=str(booking_id),
                )

        transition = self.state_machine.plan(
            booking,
            request.status,
            actor.role,
            confirmed_date=request.confirmed_date,
            confirmed_time=request.confirmed_time,
            dealer_notes=request.dealer_notes,
            rejection_reason=request.rejection_reason,
        )

        applied = await self.bookings.update_status_if(
            booking.id,
            transition.current,
            expected_dealer_id=expected_dealer,
            **transition.changes,
            **claim,
        )
        if not applied:
            raise ConflictError(
                "Booking was modified by another request, reload and retry",
                code="CONCURRENT_MODIFICATION",
            )

        if transition.refund_due:
            self._queue_deposit_refund(booking, transition.changes["cancellation_reason"])

        updated = await self.bookings.get_by_id(booking_id)
        logger.info(
            "Booking status updated",
            booking_id=str(booking_id),
            transition=f"{transition.current.value}->{transition.target.value}",
            actor_id=str(actor.id),
            claimed=bool(claim),
        )
        self._notify_status(updated)
        return serialize_booking(updated)

    async def cancel(
        self,
        actor: AuthenticatedUser,
        booking_id: uuid.UUID,
        reason: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Customer cancellation of their own booking.

        Raises:
            PermissionDeniedError: Booking belongs to someone else
            InvalidTransition: Booking already cancelled or completed
            ConflictError: Less than the required notice before the ride
        """
        booking = await self.bookings.get_by_id(booking_id)
        if booking is None:
            raise NotFoundError("Test ride booking", booking_id)
        if booking.user_id != actor.id:
            raise PermissionDeniedError(
                "You can only cancel your own test rides",
                booking_id=str(booking_id),
            )

        self.state_machine.validate_transition(booking.status, BookingStatus.CANCELLED)

        now = self._clock()
        notice = timedelta(hours=self.settings.cancellation_notice_hours)
        starts_at = self._slot_start(booking.scheduled_date, booking.scheduled_time)
        if starts_at - now < notice:
            raise ConflictError(
                f"Test rides can only be cancelled at least "
                f"{self.settings.cancellation_notice_hours} hours in advance",
                code="CANCELLATION_WINDOW_CLOSED",
                starts_at=starts_at.isoformat(),
            )

        cancellation_reason = reason or DEFAULT_CUSTOMER_CANCEL_REASON
        applied = await self.bookings.update_status_if(
            booking.id,
            booking.status,
            status=BookingStatus.CANCELLED,
            cancellation_reason=cancellation_reason,
            cancelled_at=now,
        )
        if not applied:
            raise ConflictError(
                "Booking was modified by another request, reload and retry",
                code="CONCURRENT_MODIFICATION",
            )

        if booking.payment_status.can_refund():
            self._queue_deposit_refund(booking, cancellation_reason)

        updated = await self.bookings.get_by_id(booking_id)
        logger.info("Booking cancelled by customer", booking_id=str(booking_id))
        self._notify_status(updated)
        return serialize_booking(updated)

    def _queue_deposit_refund(self, booking: TestRideBooking, reason: str) -> None:
        if not booking.razorpay_payment_id:
            logger.error(
                "Paid booking cancelled without a payment id, manual refund required",
                booking_id=str(booking.id),
            )
            return
        self.refund_queue.enqueue_refund(
            payment_id=booking.razorpay_payment_id,
            reason=reason,
            reference_type=EntityType.TEST_RIDE,
            reference_id=booking.id,
        )

    def _notify_status(self, booking: TestRideBooking) -> None:
        entry = STATUS_NOTIFICATIONS.get(booking.status)
        if entry is None:
            return
        title, message, notification_type = entry
        self.notifier.notify(
            booking.user_id,
            title,
            message,
            notification_type,
            {
                "booking_id": booking.id,
                "confirmation_code": booking.confirmation_code,
                "deposit_amount": format_money(booking.deposit_amount),
            },
        )
