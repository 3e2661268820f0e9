"""
Test ride booking model.

The partial unique index on (user, vehicle, date, time) over active statuses
backs the "one active booking per slot" rule at the store level, so two racing
requests cannot both insert.
"""

import uuid
from datetime import date, datetime, time
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    Time,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel, str_enum
from evmarket.services.orders.enums import PaymentStatus
from evmarket.services.test_rides.enums import BookingStatus


class TestRideBooking(BaseModel):
    """Customer request to test ride a vehicle at a dealership."""

    __tablename__ = "test_ride_bookings"
    __test__ = False  # not a pytest test class

    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    vehicle_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("vehicles.id", ondelete="RESTRICT"),
        nullable=False,
    )
    dealer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("dealers.id", ondelete="SET NULL"),
        nullable=True,
    )

    preferred_date: Mapped[date] = mapped_column(Date, nullable=False)
    preferred_time: Mapped[time] = mapped_column(Time, nullable=False)
    confirmed_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    confirmed_time: Mapped[Optional[time]] = mapped_column(Time, nullable=True)

    status: Mapped[BookingStatus] = mapped_column(
        str_enum(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        str_enum(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_waived: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Staff-assisted or free booking; may confirm without payment",
    )
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    confirmation_code: Mapped[str] = mapped_column(
        String(16), nullable=False, unique=True
    )

    customer_name: Mapped[Optional[str]] = mapped_column(String(255))
    customer_email: Mapped[Optional[str]] = mapped_column(String(255))
    customer_phone: Mapped[Optional[str]] = mapped_column(String(20))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    dealer_notes: Mapped[Optional[str]] = mapped_column(Text)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text)

    razorpay_order_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True, unique=True
    )
    razorpay_payment_id: Mapped[Optional[str]] = mapped_column(String(64))

    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index(
            "uq_test_ride_bookings_active_slot",
            "user_id",
            "vehicle_id",
            "preferred_date",
            "preferred_time",
            unique=True,
            postgresql_where=text("status IN ('pending', 'confirmed')"),
        ),
        Index("ix_test_ride_bookings_user_created", "user_id", "created_at"),
        Index("ix_test_ride_bookings_dealer_status", "dealer_id", "status"),
        {"comment": "Test ride bookings with optional deposit payment"},
    )

    @property
    def scheduled_date(self) -> date:
        return self.confirmed_date or self.preferred_date

    @property
    def scheduled_time(self) -> time:
        return self.confirmed_time or self.preferred_time
