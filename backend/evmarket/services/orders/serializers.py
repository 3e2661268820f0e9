"""JSON-native views of vehicle orders."""

from typing import Any

from evmarket.database.base import to_json_value
from evmarket.database.models.order import VehicleOrder
from evmarket.services.orders.pricing import format_money

MONEY_FIELDS = (
    "unit_price",
    "subtotal",
    "discount",
    "taxes",
    "total_amount",
    "payment_amount",
    "amount_paid",
    "refund_amount",
)

PLAIN_FIELDS = (
    "id",
    "user_id",
    "vehicle_id",
    "dealer_id",
    "quantity",
    "color",
    "promo_code",
    "payment_type",
    "order_status",
    "payment_status",
    "razorpay_order_id",
    "razorpay_payment_id",
    "delivery_address",
    "contact_number",
    "tracking_number",
    "status_notes",
    "cancellation_reason",
    "created_at",
    "updated_at",
    "paid_at",
    "confirmed_at",
    "processing_at",
    "shipped_at",
    "delivered_at",
    "cancelled_at",
)


def serialize_order(order: VehicleOrder) -> dict[str, Any]:
    data = {name: to_json_value(getattr(order, name)) for name in PLAIN_FIELDS}
    data.update({name: format_money(getattr(order, name)) for name in MONEY_FIELDS})
    return data
