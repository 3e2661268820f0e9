"""
Mapping of domain errors to HTTP responses.

Every error body has the shape ``{error, message, details, request_id}``.
Unexpected exceptions are logged with their traceback and answered with a
generic 500 so internals never leak to clients.
"""

from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from evmarket.core.errors import (
    ConflictError,
    DomainError,
    GatewayError,
    InvalidTransition,
    NotFoundError,
    PermissionDeniedError,
    SignatureError,
    ValidationError,
)
from evmarket.core.logging import get_logger, get_request_id

logger = get_logger(__name__)

STATUS_BY_ERROR: dict[type[DomainError], int] = {
    ValidationError: status.HTTP_400_BAD_REQUEST,
    SignatureError: status.HTTP_400_BAD_REQUEST,
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidTransition: status.HTTP_409_CONFLICT,
    PermissionDeniedError: status.HTTP_403_FORBIDDEN,
}


def error_body(error: str, message: str, details: Any = None) -> dict[str, Any]:
    return {
        "error": error,
        "message": message,
        "details": details or {},
        "request_id": get_request_id(),
    }


def status_for(exc: DomainError) -> int:
    if isinstance(exc, GatewayError):
        return (
            status.HTTP_503_SERVICE_UNAVAILABLE
            if exc.transient
            else status.HTTP_502_BAD_GATEWAY
        )
    for error_type in type(exc).__mro__:
        if error_type in STATUS_BY_ERROR:
            return STATUS_BY_ERROR[error_type]
    return status.HTTP_400_BAD_REQUEST


async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
    status_code = status_for(exc)
    details = dict(exc.context)
    if isinstance(exc, GatewayError):
        details["retryable"] = exc.transient
        if exc.error:
            details["gateway_error"] = exc.error

    log = logger.warning if status_code >= 500 else logger.info
    log(
        "Request rejected",
        method=request.method,
        path=request.url.path,
        status_code=status_code,
        code=exc.code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=status_code,
        content=error_body(exc.code, exc.message, details),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    logger.warning(
        "Request validation failed",
        method=request.method,
        path=request.url.path,
        errors=exc.errors(),
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=error_body(
            "REQUEST_VALIDATION_ERROR",
            "Request validation failed",
            {"errors": jsonable_errors(exc)},
        ),
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {
            "field": ".".join(str(part) for part in err.get("loc", ())[1:]) or None,
            "message": err.get("msg"),
            "type": err.get("type"),
        }
        for err in exc.errors()
    ]


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled exception",
        method=request.method,
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=True,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_body("INTERNAL_ERROR", "An unexpected error occurred"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, global_exception_handler)
