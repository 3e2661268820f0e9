"""In-app notification data access."""

import uuid
from typing import Any, Optional

from evmarket.database.models.notification import Notification
from evmarket.database.repository import BaseRepository


class NotificationRepository(BaseRepository):
    model = Notification

    async def create(
        self,
        user_id: uuid.UUID,
        title: str,
        message: str,
        notification_type: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(
            id=uuid.uuid4(),
            user_id=user_id,
            title=title,
            message=message,
            type=notification_type,
            payload=payload or {},
            is_read=False,
        )
        return await self._add(
            notification,
            "create_notification",
            user_id=str(user_id),
            notification_type=notification_type,
        )
