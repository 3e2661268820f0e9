"""
Fire-and-forget notification dispatch.

Services depend on the ``NotificationSink`` protocol; the Celery-backed
implementation hands the broker publish to a worker thread and returns
immediately. Publishing problems are logged and never reach the caller, so a
notification can not fail or delay the operation that triggered it.
"""

import uuid
from typing import Any, Optional, Protocol

from celery import Celery

from evmarket.core.logging import get_logger
from evmarket.database.base import to_json_value
from evmarket.worker import SEND_NOTIFICATION_TASK, celery_app, publish_in_background

logger = get_logger(__name__)


class NotificationType:
    """Notification ``type`` values stored on the notification row."""

    BOOKING_CREATED = "test_ride_booked"
    BOOKING_CONFIRMED = "test_ride_confirmed"
    BOOKING_CANCELLED = "test_ride_cancelled"
    BOOKING_COMPLETED = "test_ride_completed"
    BOOKING_PAID = "test_ride_payment_received"
    ORDER_PLACED = "order_placed"
    ORDER_CONFIRMED = "order_confirmed"
    ORDER_STATUS_CHANGED = "order_status_changed"
    REFUND_INITIATED = "refund_initiated"


class NotificationSink(Protocol):
    def notify(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        notification_type: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        ...


class CeleryNotificationSink:
    """Publishes ``notifications.send_notification`` tasks."""

    def __init__(self, app: Optional[Celery] = None):
        self.app = app or celery_app

    def notify(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        notification_type: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        kwargs = {
            "user_id": str(user_id),
            "title": title,
            "message": message,
            "notification_type": notification_type,
            "payload": {k: to_json_value(v) for k, v in (payload or {}).items()},
        }
        publish_in_background(lambda: self._publish(kwargs))

    def _publish(self, kwargs: dict[str, Any]) -> None:
        try:
            self.app.send_task(SEND_NOTIFICATION_TASK, kwargs=kwargs)
            logger.debug(
                "Notification queued",
                user_id=kwargs["user_id"],
                notification_type=kwargs["notification_type"],
            )
        except Exception as e:
            logger.error(
                "Failed to queue notification",
                user_id=kwargs["user_id"],
                notification_type=kwargs["notification_type"],
                error=str(e),
                error_type=type(e).__name__,
            )
