"""
Gateway payment order and refund models.

A ``PaymentOrder`` row is keyed by the gateway's own order id so that a bare
webhook payload, which only carries gateway ids, always resolves back to the
business entity through ``entity_type``/``entity_id``. ``refunded_amount``
tracks refunds in flight plus processed ones and is bounded by the captured
amount at the database level.
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
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import Base, TimestampMixin, str_enum
from evmarket.services.payments.enums import (
    EntityType,
    PaymentOrderStatus,
    RefundStatus,
)


class PaymentOrder(Base, TimestampMixin):
    """Order created on the payment gateway for a booking deposit or purchase."""

    __tablename__ = "payment_orders"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Gateway order id",
    )
    entity_type: Mapped[EntityType] = mapped_column(
        str_enum(EntityType, "payment_entity_type"),
        nullable=False,
    )
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    receipt: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[PaymentOrderStatus] = mapped_column(
        str_enum(PaymentOrderStatus, "payment_order_status"),
        nullable=False,
        default=PaymentOrderStatus.CREATED,
    )
    notes: Mapped[dict[str, Any]] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        comment="Context echoed by the gateway in webhook payloads",
    )

    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(String(64))
    payment_method: Mapped[Optional[str]] = mapped_column(String(50))
    captured_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    amount_paid: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    amount_due: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    refunded_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0.00")
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text)
    captured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_orders_amount_positive"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= captured_amount",
            name="ck_payment_orders_refund_bound",
        ),
        Index("ix_payment_orders_entity", "entity_type", "entity_id"),
        Index("ix_payment_orders_razorpay_payment_id", "razorpay_payment_id"),
        {"comment": "Orders created on the payment gateway"},
    )

    @property
    def refundable_amount(self) -> Decimal:
        return self.captured_amount - self.refunded_amount


class Refund(Base, TimestampMixin):
    """Refund issued against a captured payment."""

    __tablename__ = "refunds"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Gateway refund id",
    )
    payment_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        comment="Gateway payment id the refund draws from",
    )
    payment_order_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("payment_orders.id", ondelete="SET NULL"),
        nullable=True,
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[RefundStatus] = mapped_column(
        str_enum(RefundStatus, "refund_status"),
        nullable=False,
        default=RefundStatus.PROCESSING,
    )
    reference_type: Mapped[Optional[EntityType]] = mapped_column(
        str_enum(EntityType, "payment_entity_type"),
        nullable=True,
    )
    reference_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    initiated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    budget_claimed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="The amount is counted in the payment order's refunded_amount "
        "on behalf of this row",
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
        Index("ix_refunds_payment_id", "payment_id"),
    )
