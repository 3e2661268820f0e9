"""
Promotional code model applied at checkout.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel, str_enum
from evmarket.services.orders.enums import DiscountType


class PromoCode(BaseModel):
    """Discount code with a validity window."""

    __tablename__ = "promo_codes"

    code: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        unique=True,
        comment="Upper-case code entered by customers",
    )
    discount_type: Mapped[DiscountType] = mapped_column(
        str_enum(DiscountType, "discount_type"),
        nullable=False,
    )
    discount_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Percentage (0-100) or fixed amount",
    )
    max_discount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2),
        nullable=True,
        comment="Cap for percentage discounts",
    )
    valid_from: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    valid_until: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )

    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_promo_codes_value_positive"),
        CheckConstraint("valid_until > valid_from", name="ck_promo_codes_window"),
    )

    def is_valid_at(self, moment: datetime) -> bool:
        return self.is_active and self.valid_from <= moment <= self.valid_until
