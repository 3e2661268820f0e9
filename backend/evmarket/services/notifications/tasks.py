"""
Celery tasks for background notification processing.

The API publishes ``notifications.send_notification`` through the
notification sink; the worker persists the in-app notification row. Database
failures are retried with exponential backoff.
"""

from typing import Any, Optional
from uuid import UUID

from celery import Task, shared_task

from evmarket.core.logging import get_logger
from evmarket.database.connection import get_session
from evmarket.database.repository import ConstraintViolationError, RepositoryError
from evmarket.services.notifications.repository import NotificationRepository
from evmarket.worker import SEND_NOTIFICATION_TASK, run_async

logger = get_logger(__name__)


class NotificationTask(Task):
    """
    Base task class for notification tasks with retry logic.

    Provides automatic retries on repository errors and logs task state
    changes.
    """

    autoretry_for = (RepositoryError,)
    dont_autoretry_for = (ConstraintViolationError,)
    retry_kwargs = {"max_retries": 3}
    retry_backoff = True
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.error(
            "Notification task failed",
            task_id=task_id,
            exception=str(exc),
            notification_type=kwargs.get("notification_type"),
            exc_info=einfo,
        )

    def on_retry(
        self,
        exc: Exception,
        task_id: str,
        args: tuple,
        kwargs: dict,
        einfo: Any,
    ) -> None:
        logger.warning(
            "Notification task retrying",
            task_id=task_id,
            exception=str(exc),
            retry_count=self.request.retries,
            max_retries=self.max_retries,
        )

    def on_success(
        self,
        retval: Any,
        task_id: str,
        args: tuple,
        kwargs: dict,
    ) -> None:
        logger.info(
            "Notification task completed successfully",
            task_id=task_id,
            result=retval,
        )


async def persist_notification(
    user_id: UUID,
    title: str,
    message: str,
    notification_type: str,
    payload: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    async with get_session() as session:
        notification = await NotificationRepository(session).create(
            user_id=user_id,
            title=title,
            message=message,
            notification_type=notification_type,
            payload=payload,
        )
    return {"notification_id": str(notification.id)}


@shared_task(
    bind=True,
    base=NotificationTask,
    name=SEND_NOTIFICATION_TASK,
    time_limit=60,
    soft_time_limit=45,
)
def send_notification_task(
    self: Task,
    user_id: str,
    title: str,
    message: str,
    notification_type: str,
    payload: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """
    Persist an in-app notification for a user.

    Args:
        self: Task instance
        user_id: Recipient user id
        title: Short title
        message: Body text
        notification_type: Notification type tag
        payload: JSON context (ids, amounts, codes)

    Returns:
        Dictionary with the created notification id
    """
    logger.info(
        "Processing notification task",
        task_id=self.request.id,
        user_id=user_id,
        notification_type=notification_type,
    )

    return run_async(
        lambda: persist_notification(
            user_id=UUID(user_id),
            title=title,
            message=message,
            notification_type=notification_type,
            payload=payload,
        )
    )
