"""JSON-native views of test ride bookings."""

from typing import Any

from evmarket.database.base import to_json_value
from evmarket.database.models.test_ride import TestRideBooking
from evmarket.services.orders.pricing import format_money

BOOKING_FIELDS = (
    "id",
    "confirmation_code",
    "user_id",
    "vehicle_id",
    "dealer_id",
    "preferred_date",
    "preferred_time",
    "confirmed_date",
    "confirmed_time",
    "status",
    "payment_status",
    "payment_waived",
    "customer_name",
    "customer_email",
    "customer_phone",
    "notes",
    "dealer_notes",
    "cancellation_reason",
    "razorpay_order_id",
    "razorpay_payment_id",
    "created_at",
    "paid_at",
    "confirmed_at",
    "cancelled_at",
    "completed_at",
)


def serialize_booking(booking: TestRideBooking) -> dict[str, Any]:
    data = {name: to_json_value(getattr(booking, name)) for name in BOOKING_FIELDS}
    data["deposit_amount"] = format_money(booking.deposit_amount)
    return data
