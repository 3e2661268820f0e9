"""
Vehicle order Pydantic schemas for API request/response validation.

Field-level shape is validated here (422 on failure); business limits that
depend on configuration or stored data (maximum quantity, offered colours,
partial payment bounds) are enforced by the order service.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from evmarket.schemas.payments import PaymentHandoff
from evmarket.services.orders.enums import OrderStatus, PaymentStatus, PaymentType


class DeliveryAddressRequest(BaseModel):
    """Delivery or billing address."""

    model_config = ConfigDict(str_strip_whitespace=True)

    line1: str = Field(..., min_length=1, max_length=255, description="Street address")
    line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=2, max_length=100)
    postal_code: str = Field(..., min_length=4, max_length=10, description="PIN code")
    country: str = Field(default="IN", min_length=2, max_length=2)

    @field_validator("country")
    @classmethod
    def validate_country_code(cls, v: str) -> str:
        return v.upper()


class CheckoutRequest(BaseModel):
    """Checkout of a single vehicle model in a given quantity and colour."""

    model_config = ConfigDict(str_strip_whitespace=True)

    vehicle_id: UUID = Field(..., description="Vehicle to purchase")
    quantity: int = Field(default=1, ge=1, description="Units to purchase")
    color: str = Field(..., min_length=1, max_length=50)
    dealer_id: Optional[UUID] = Field(None, description="Dealer handling fulfilment")
    delivery_address: DeliveryAddressRequest
    billing_address: Optional[DeliveryAddressRequest] = None
    contact_number: str = Field(..., min_length=10, max_length=20)
    alternate_contact_number: Optional[str] = Field(None, max_length=20)
    special_instructions: Optional[str] = Field(None, max_length=1000)
    promo_code: Optional[str] = Field(None, max_length=50)
    payment_type: PaymentType = Field(default=PaymentType.FULL)
    partial_amount: Optional[Decimal] = Field(None, gt=0, decimal_places=2)
    customer_name: Optional[str] = Field(None, max_length=255)
    customer_email: Optional[str] = Field(None, max_length=255)

    @field_validator("promo_code")
    @classmethod
    def normalize_promo_code(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else None

    @model_validator(mode="after")
    def validate_partial_amount(self) -> "CheckoutRequest":
        if self.payment_type == PaymentType.FULL and self.partial_amount is not None:
            raise ValueError("partial_amount is only accepted for partial payments")
        return self


class OrderStatusUpdateRequest(BaseModel):
    """Dealer/admin status change."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: OrderStatus
    tracking_number: Optional[str] = Field(None, max_length=100)
    notes: Optional[str] = Field(None, max_length=1000)
    reason: Optional[str] = Field(None, max_length=500, description="Cancellation reason")


class OrderResponse(BaseModel):
    """Serialized vehicle order. Money values are two-decimal strings."""

    id: UUID
    user_id: UUID
    vehicle_id: UUID
    dealer_id: Optional[UUID] = None
    quantity: int
    color: str
    unit_price: str
    subtotal: str
    discount: str
    taxes: str
    total_amount: str
    payment_amount: str
    amount_paid: str
    refund_amount: str
    promo_code: Optional[str] = None
    payment_type: PaymentType
    order_status: OrderStatus
    payment_status: PaymentStatus
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    delivery_address: dict[str, Any]
    contact_number: str
    tracking_number: Optional[str] = None
    status_notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    confirmed_at: Optional[datetime] = None
    processing_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class CheckoutResponse(BaseModel):
    """Pending order plus what the checkout widget needs to collect payment."""

    order: OrderResponse
    payment: PaymentHandoff
