"""
Soft stock reservation model.

Reservations are advisory: they never lock the vehicle row and never change
``vehicles.stock_quantity``. A row whose ``reserved_until`` has passed is
treated as non-binding wherever it is read, and the periodic sweep deletes it.
"""

import uuid
from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel


class StockReservation(BaseModel):
    """Units held for a pending vehicle order."""

    __tablename__ = "stock_reservations"

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("vehicle_orders.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    vehicle_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("vehicles.id", ondelete="CASCADE"),
        nullable=False,
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_until: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_stock_reservations_quantity"),
        Index("ix_stock_reservations_reserved_until", "reserved_until"),
        Index("ix_stock_reservations_vehicle_id", "vehicle_id"),
    )

    def is_expired(self, now: datetime) -> bool:
        return self.reserved_until <= now
