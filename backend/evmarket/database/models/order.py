"""
Vehicle order model.

Holds the priced order, both status axes (fulfilment and payment), the gateway
references the webhook uses to find the order again, and one timestamp per
status entry point.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel, str_enum
from evmarket.services.orders.enums import OrderStatus, PaymentStatus, PaymentType


class VehicleOrder(BaseModel):
    """Customer purchase of one vehicle model in a given quantity and colour."""

    __tablename__ = "vehicle_orders"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        comment="Owning customer",
    )
    vehicle_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("vehicles.id", ondelete="RESTRICT"),
        nullable=False,
    )
    dealer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("dealers.id", ondelete="SET NULL"),
        nullable=True,
        comment="Dealer responsible for fulfilment",
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[str] = mapped_column(String(50), nullable=False)

    # Pricing
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    discount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    taxes: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    promo_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payment_type: Mapped[PaymentType] = mapped_column(
        str_enum(PaymentType, "payment_type"),
        nullable=False,
        default=PaymentType.FULL,
    )
    payment_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Amount requested from the gateway at checkout",
    )
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    refund_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    stock_committed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Units were taken off the vehicle stock at capture",
    )

    # Status
    order_status: Mapped[OrderStatus] = mapped_column(
        str_enum(OrderStatus, "order_status"),
        nullable=False,
        default=OrderStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        str_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    # Gateway references
    razorpay_order_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )

    # Delivery and contact
    delivery_address: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    billing_address: Mapped[Optional[dict[str, Any]]] = mapped_column(
        JSONB, nullable=True
    )
    contact_number: Mapped[str] = mapped_column(String(20), nullable=False)
    alternate_contact_number: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True
    )
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    status_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Status entry timestamps
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    processing_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    shipped_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_vehicle_orders_quantity_positive"),
        CheckConstraint("total_amount >= 0", name="ck_vehicle_orders_total_non_negative"),
        CheckConstraint(
            "payment_amount <= total_amount",
            name="ck_vehicle_orders_payment_within_total",
        ),
        Index("ix_vehicle_orders_user_id", "user_id"),
        Index("ix_vehicle_orders_dealer_status", "dealer_id", "order_status"),
        {"comment": "Vehicle purchase orders"},
    )
