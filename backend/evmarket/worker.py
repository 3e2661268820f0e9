"""
Celery application for background notification and refund tasks.

Run a worker with::

    celery -A evmarket.worker worker --loglevel=INFO
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from celery import Celery

from evmarket.core.config import get_settings
from evmarket.core.logging import configure_logging
from evmarket.database.connection import close_database_connections

settings = get_settings()

SEND_NOTIFICATION_TASK = "notifications.send_notification"
REFUND_PAYMENT_TASK = "payments.refund_payment"

T = TypeVar("T")

celery_app = Celery(
    "evmarket",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "evmarket.services.notifications.tasks",
        "evmarket.services.payments.tasks",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Bounds how long a publish worker thread waits on an unreachable broker.
    task_publish_retry=False,
    broker_connection_timeout=2,
    task_always_eager=False,
)

configure_logging()


def run_async(factory: Callable[[], Awaitable[T]]) -> T:
    """
    Run a coroutine from a synchronous task body.

    Each task gets its own event loop, so the engine created inside it is
    disposed before the loop closes.
    """

    async def runner() -> Any:
        try:
            return await factory()
        finally:
            await close_database_connections()

    return asyncio.run(runner())


# Publishes handed to the default executor and not finished yet.
_pending_publishes: Set["asyncio.Future[None]"] = set()


def publish_in_background(publish: Callable[[], None]) -> Optional["asyncio.Future[None]"]:
    """
    Run a blocking ``send_task`` call without holding up the event loop.

    Inside a running loop the call goes to the default thread pool and the
    caller continues at once; ``publish`` must handle its own errors. Outside
    a loop (Celery tasks, scripts) it simply runs inline.

    Returns:
        The executor future, or None when ``publish`` ran inline
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        publish()
        return None

    future = loop.run_in_executor(None, publish)
    _pending_publishes.add(future)
    future.add_done_callback(_pending_publishes.discard)
    return future


async def drain_publishes() -> None:
    """Wait for publishes still in flight, e.g. before shutting down."""
    if _pending_publishes:
        await asyncio.gather(*list(_pending_publishes), return_exceptions=True)
