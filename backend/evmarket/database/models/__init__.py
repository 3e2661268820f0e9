"""
Database models package initialization.

Models are imported here so they are registered with ``Base.metadata`` for
Alembic and for relationship resolution.
"""

from evmarket.database.base import Base, BaseModel, TimestampMixin, UUIDMixin
from evmarket.database.models.dealer import Dealer
from evmarket.database.models.idempotency import IdempotencyRecord
from evmarket.database.models.notification import Notification
from evmarket.database.models.order import VehicleOrder
from evmarket.database.models.payment import PaymentOrder, Refund
from evmarket.database.models.promo_code import PromoCode
from evmarket.database.models.reservation import StockReservation
from evmarket.database.models.test_ride import TestRideBooking
from evmarket.database.models.vehicle import Vehicle
from evmarket.database.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "UUIDMixin",
    "Dealer",
    "IdempotencyRecord",
    "Notification",
    "PaymentOrder",
    "PromoCode",
    "Refund",
    "StockReservation",
    "TestRideBooking",
    "Vehicle",
    "VehicleOrder",
    "WebhookEvent",
]
