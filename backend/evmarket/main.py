"""
FastAPI application entry point with health endpoints and service routing.

The lifespan opens the shared gateway client and runs the maintenance loops
(expired reservation sweep, idempotency purge) as background tasks.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from evmarket.api.errors import register_exception_handlers
from evmarket.api.rate_limit import limiter
from evmarket.api.v1 import orders_router, payments_router, test_rides_router, webhooks_router
from evmarket.core.config import get_settings
from evmarket.core.logging import (
    clear_context,
    configure_logging,
    get_logger,
    log_performance,
    set_request_id,
)
from evmarket.database.connection import (
    check_database_health,
    close_database_connections,
    get_session,
)
from evmarket.services.factory import build_idempotency_guard, build_inventory
from evmarket.services.payments.razorpay_client import create_razorpay_client
from evmarket.worker import drain_publishes

configure_logging()
logger = get_logger(__name__)


async def sweep_expired_reservations() -> None:
    """Delete stock reservations whose TTL has passed."""
    async with get_session() as session:
        await build_inventory(session, get_settings()).sweep_expired()


async def purge_idempotency_records() -> None:
    """Delete idempotency records past their retention."""
    settings = get_settings()
    async with get_session() as session:
        await build_idempotency_guard(session, settings).purge(
            settings.idempotency_retention_days
        )


async def run_periodically(
    name: str,
    interval_seconds: int,
    job: Callable[[], Awaitable[None]],
) -> None:
    """Run ``job`` every ``interval_seconds``; a failing run is logged and skipped."""
    while True:
        try:
            await job()
        except Exception as e:
            logger.error(
                "Background job failed",
                job=name,
                error=str(e),
                error_type=type(e).__name__,
            )
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan: open shared resources, start maintenance loops.

    Args:
        app: FastAPI application instance

    Yields:
        None during application runtime
    """
    settings = get_settings()
    logger.info(
        "Application starting",
        environment=settings.environment,
        debug=settings.debug,
        version=settings.app_version,
    )

    app.state.gateway = create_razorpay_client()

    jobs = [
        ("reservation_sweep", settings.reservation_sweep_interval_seconds, sweep_expired_reservations),
        ("idempotency_purge", settings.idempotency_purge_interval_seconds, purge_idempotency_records),
    ]
    tasks = [
        asyncio.create_task(run_periodically(name, interval, job))
        for name, interval, job in jobs
        if interval > 0
    ]
    logger.info("Background tasks started", jobs=[name for name, interval, _ in jobs if interval > 0])

    yield

    logger.info("Application shutting down")
    with log_performance(logger, "application_shutdown"):
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await drain_publishes()
        await app.state.gateway.aclose()
        await close_database_connections()
        logger.info("Resources cleaned up successfully")


settings = get_settings()
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="EV marketplace orders, payments and test ride bookings",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
    debug=settings.debug,
)

app.state.limiter = limiter
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Set the request id for correlation, log the request and its duration.

    Returns:
        HTTP response with X-Request-ID header
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))

    logger.info(
        "Request received",
        method=request.method,
        path=request.url.path,
        client_host=request.client.host if request.client else None,
    )

    try:
        with log_performance(
            logger,
            "request_processing",
            method=request.method,
            path=request.url.path,
        ):
            response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "Request completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response
    finally:
        clear_context()


@app.get("/health", tags=["Health"], summary="Health check endpoint")
async def health_check() -> dict[str, str]:
    """Always 200 while the process is up."""
    return {
        "status": "healthy",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment,
    }


@app.get("/ready", tags=["Health"], summary="Readiness check endpoint")
async def readiness_check():
    """
    Readiness check for orchestration.

    Returns 503 while the database is unreachable.
    """
    if not await check_database_health(max_retries=1):
        logger.warning("Readiness check failed", database="unhealthy")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "not_ready",
                "service": settings.app_name,
                "database": "unhealthy",
            },
        )
    return {
        "status": "ready",
        "service": settings.app_name,
        "version": settings.app_version,
        "database": "healthy",
    }


@app.get("/live", tags=["Health"], summary="Liveness check endpoint")
async def liveness_check() -> dict[str, str]:
    return {
        "status": "alive",
        "service": settings.app_name,
        "version": settings.app_version,
    }


for router in (test_rides_router, orders_router, payments_router, webhooks_router):
    app.include_router(router, prefix=settings.api_v1_prefix)
