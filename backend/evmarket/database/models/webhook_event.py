"""
Audit log of inbound gateway webhook deliveries.

Every verified delivery is stored, whether or not its handler succeeded, so
operators can replay or reconcile from the raw payload.
"""

from typing import Any, Optional

from sqlalchemy import Boolean, Index, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from evmarket.database.base import BaseModel


class WebhookEvent(BaseModel):
    """One webhook delivery."""

    __tablename__ = "webhook_events"

    source: Mapped[str] = mapped_column(String(50), nullable=False)
    event_id: Mapped[Optional[str]] = mapped_column(
        String(100),
        nullable=True,
        comment="Gateway event id (x-razorpay-event-id), repeated on redelivery",
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)
    raw_body: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Raw body kept only when it could not be parsed as JSON",
    )
    handled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_webhook_events_event_id", "event_id"),
        Index("ix_webhook_events_type_created", "event_type", "created_at"),
    )
