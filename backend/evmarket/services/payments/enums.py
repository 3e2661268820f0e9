"""Payment gateway order and refund enums, plus the polymorphic entity tag."""

from enum import Enum


class EntityType(str, Enum):
    """Business entity a gateway order pays for.

    Stored on the payment order and echoed in the gateway notes so a bare
    webhook payload can be resolved back to the booking or order.
    """

    TEST_RIDE = "test_ride"
    VEHICLE_ORDER = "vehicle_order"

    @classmethod
    def from_string(cls, value: str) -> "EntityType":
        try:
            return cls(value.lower())
        except ValueError:
            valid_values = ", ".join([s.value for s in cls])
            raise ValueError(
                f"Invalid entity type: {value}. Valid values are: {valid_values}"
            )


class PaymentOrderStatus(str, Enum):
    """Status of an order created on the gateway.

    - CREATED: awaiting payment
    - CAPTURED: a payment against the order was captured
    - PARTIAL: the aggregate order is partly paid
    - COMPLETED: the aggregate order is fully paid (amount due reached zero)
    - FAILED: the last payment attempt failed
    """

    CREATED = "created"
    CAPTURED = "captured"
    PARTIAL = "partial"
    COMPLETED = "completed"
    FAILED = "failed"


class RefundStatus(str, Enum):
    """Refund lifecycle as reported by the gateway."""

    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
