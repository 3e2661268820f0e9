"""
Idempotency record model.

The key is the primary key, so a second insert for the same key fails with a
uniqueness violation; that is how racing duplicate requests are detected.
Records are written once and never updated.
"""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import Base, utc_now


class IdempotencyRecord(Base):
    """Stored success response for a side-effecting request."""

    __tablename__ = "idempotency_records"

    key: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="SHA-256 of user id and relevant request fields",
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    scope: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        comment="Operation the key belongs to (test_ride_booking, checkout)",
    )
    response: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_idempotency_records_created_at", "created_at"),)
