"""
Payment Pydantic schemas: checkout handoff, verification and refunds.
"""

from decimal import Decimal
from typing import Any, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from evmarket.services.payments.enums import EntityType, RefundStatus


class PaymentPrefill(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    contact: Optional[str] = None


class PaymentHandoff(BaseModel):
    """Data the client passes to the gateway checkout widget."""

    key: str = Field(..., description="Public gateway key id")
    razorpay_order_id: str
    amount: str = Field(..., description="Amount in currency units")
    amount_subunits: int = Field(..., description="Amount in paise")
    currency: str
    name: str
    description: str
    prefill: PaymentPrefill
    notes: dict[str, Any] = Field(default_factory=dict)


class GatewaySignature(BaseModel):
    """Values returned by the checkout widget after a successful payment."""

    model_config = ConfigDict(str_strip_whitespace=True)

    razorpay_order_id: str = Field(..., min_length=1, max_length=64)
    razorpay_payment_id: str = Field(..., min_length=1, max_length=64)
    razorpay_signature: str = Field(..., min_length=1, max_length=256)


class PaymentVerificationRequest(GatewaySignature):
    """Generic verification naming the business entity explicitly."""

    entity_type: EntityType
    entity_id: UUID


class TestRidePaymentVerificationRequest(GatewaySignature):
    __test__ = False  # not a pytest test class

    booking_id: UUID


class OrderPaymentVerificationRequest(GatewaySignature):
    order_id: UUID


class PaymentVerificationResponse(BaseModel):
    status: Literal["verified", "already_verified"]
    message: str
    entity_type: EntityType
    entity: dict[str, Any]


class RefundRequest(BaseModel):
    """Refund against a captured payment."""

    model_config = ConfigDict(str_strip_whitespace=True)

    payment_id: str = Field(..., min_length=1, max_length=64)
    amount: Optional[Decimal] = Field(
        None,
        gt=0,
        decimal_places=2,
        description="Defaults to the whole remaining refundable amount",
    )
    reason: Optional[str] = Field(None, max_length=500)
    reference_type: Optional[EntityType] = None
    reference_id: Optional[UUID] = None


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    amount: str
    status: RefundStatus
    refundable_remaining: str
    reference_type: EntityType
    reference_id: UUID
    entity_payment_status: str
