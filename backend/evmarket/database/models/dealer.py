"""
Dealer model linking a dealer-role user to the showroom they operate.
"""

import uuid
from typing import Optional

from sqlalchemy import Boolean, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel


class Dealer(BaseModel):
    """Approved dealership."""

    __tablename__ = "dealers"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
        comment="Auth user operating this dealership",
    )
    business_name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Registered business name",
    )
    city: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
        comment="Inactive dealers cannot receive bookings",
    )
