"""Order and payment status enums with state machine transition rules.

Vehicle orders move along a single fulfilment line and may be cancelled at
any point before delivery. Payment status is tracked separately because money
can move (capture, refund) independently of fulfilment.
"""

from enum import Enum
from typing import Dict, Set


class OrderStatus(str, Enum):
    """Vehicle order lifecycle status.

    Valid transitions:
    - PENDING -> CONFIRMED, CANCELLED
    - CONFIRMED -> PROCESSING, CANCELLED
    - PROCESSING -> SHIPPED, CANCELLED
    - SHIPPED -> DELIVERED, CANCELLED
    - DELIVERED -> (terminal state)
    - CANCELLED -> (terminal state)
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"

    @classmethod
    def from_string(cls, value: str) -> "OrderStatus":
        """Convert string to OrderStatus enum.

        Raises:
            ValueError: If value is not a valid status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid order status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_terminal(self) -> bool:
        """Check if status is a terminal state."""
        return self in {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    @property
    def timestamp_field(self) -> str:
        """Name of the column stamped when the order enters this status."""
        return f"{self.value}_at"


class PaymentStatus(str, Enum):
    """Payment status shared by vehicle orders and test-ride bookings.

    Valid transitions:
    - PENDING -> PAID, FAILED
    - FAILED -> PAID (a later attempt on the same gateway order succeeded)
    - PAID -> PARTIAL_REFUND, REFUNDED
    - PARTIAL_REFUND -> PARTIAL_REFUND, REFUNDED
    - REFUNDED -> (terminal state)
    """

    PENDING = "pending"
    PAID = "paid"
    PARTIAL_REFUND = "partial_refund"
    REFUNDED = "refunded"
    FAILED = "failed"

    @classmethod
    def from_string(cls, value: str) -> "PaymentStatus":
        """Convert string to PaymentStatus enum.

        Raises:
            ValueError: If value is not a valid payment status
        """
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid payment status: {value}. "
                f"Valid values are: {valid_values}"
            )

    def is_settled(self) -> bool:
        """Money was captured at some point (possibly refunded since)."""
        return self in {
            PaymentStatus.PAID,
            PaymentStatus.PARTIAL_REFUND,
            PaymentStatus.REFUNDED,
        }

    def can_refund(self) -> bool:
        """Check if payment can still be refunded."""
        return self in {PaymentStatus.PAID, PaymentStatus.PARTIAL_REFUND}


class PaymentType(str, Enum):
    """How much of the order total the customer pays at checkout."""

    FULL = "full"
    PARTIAL = "partial"


class DiscountType(str, Enum):
    """Promo code discount kinds."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


ORDER_STATUS_TRANSITIONS: Dict[OrderStatus, Set[OrderStatus]] = {
    OrderStatus.PENDING: {
        OrderStatus.CONFIRMED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.CONFIRMED: {
        OrderStatus.PROCESSING,
        OrderStatus.CANCELLED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.SHIPPED: {
        OrderStatus.DELIVERED,
        OrderStatus.CANCELLED,
    },
    OrderStatus.DELIVERED: set(),  # Terminal
    OrderStatus.CANCELLED: set(),  # Terminal
}

# Statuses a dealer-scoped actor may drive an order into.
DEALER_ORDER_STATUSES: Set[OrderStatus] = {
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
}


def validate_order_status_transition(
    current: OrderStatus,
    new: OrderStatus
) -> bool:
    """Validate if order status transition is allowed."""
    return new in ORDER_STATUS_TRANSITIONS.get(current, set())


def get_allowed_order_transitions(
    current: OrderStatus
) -> Set[OrderStatus]:
    """Get all allowed transitions from current order status.

    Returns:
        Copy of the allowed next statuses
    """
    return ORDER_STATUS_TRANSITIONS.get(current, set()).copy()
