"""
Vehicle catalogue model.

Only the fields the ordering core needs live here: price, offered colours,
activation flag and the authoritative stock counter. The stock counter is the
single shared mutable resource of the system and is only ever changed through
conditional UPDATE statements (see ``VehicleRepository``).
"""

from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel


class Vehicle(BaseModel):
    """Electric vehicle offered for sale and for test rides."""

    __tablename__ = "vehicles"

    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Display name",
    )
    slug: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        unique=True,
        comment="URL slug",
    )
    price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2),
        nullable=False,
        comment="Unit price in settlement currency",
    )
    stock_quantity: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Authoritative units in stock",
    )
    colors: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="Offered colour names",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
        comment="Whether the vehicle can be ordered or booked",
    )

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_vehicles_stock_non_negative"),
        CheckConstraint("price > 0", name="ck_vehicles_price_positive"),
        Index("ix_vehicles_is_active", "is_active"),
        {"comment": "Vehicle catalogue with authoritative stock"},
    )

    def offers_color(self, color: str) -> bool:
        """A vehicle without a colour list accepts any colour."""
        if not self.colors:
            return True
        return color.strip().lower() in {c.lower() for c in self.colors}
