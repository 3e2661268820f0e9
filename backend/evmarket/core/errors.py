"""
Domain error taxonomy shared by every service.

Services raise these; the API layer maps them to HTTP responses in one place
(see ``evmarket.api.errors``). Each error carries a machine readable ``code``
and free-form ``context`` that ends up in the response ``details``.
"""

from typing import Any, Iterable, Optional


class DomainError(Exception):
    """Base exception for business rule failures."""

    default_code = "DOMAIN_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context


class ValidationError(DomainError):
    """Missing or malformed input. Never retried automatically."""

    default_code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, code=code, field=field, **context)
        self.field = field


class NotFoundError(DomainError):
    """Referenced record is absent or inactive."""

    default_code = "NOT_FOUND"

    def __init__(
        self,
        resource: str,
        identifier: Any,
        message: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(
            message or f"{resource} not found",
            resource=resource,
            identifier=str(identifier),
            **context,
        )
        self.resource = resource
        self.identifier = identifier


class ConflictError(DomainError):
    """Request is well formed but collides with current state."""

    default_code = "CONFLICT"


class InvalidTransition(DomainError):
    """Requested status is not reachable from the current status."""

    default_code = "INVALID_TRANSITION"

    def __init__(
        self,
        current: str,
        target: str,
        allowed: Iterable[str] = (),
        message: Optional[str] = None,
        **context: Any,
    ):
        allowed_list = sorted(allowed)
        super().__init__(
            message or f"Cannot change status from {current} to {target}",
            current=current,
            target=target,
            allowed=allowed_list,
            **context,
        )
        self.current = current
        self.target = target
        self.allowed = allowed_list


class PermissionDeniedError(DomainError):
    """Actor role or ownership does not permit the operation."""

    default_code = "PERMISSION_DENIED"


class SignatureError(DomainError):
    """Payment or webhook signature did not match."""

    default_code = "INVALID_SIGNATURE"


class GatewayError(DomainError):
    """
    Failure reported by, or while talking to, the payment gateway.

    ``transient`` separates network failures, rate limits and 5xx responses
    (safe to retry) from structured bad-request responses, whose gateway
    description is surfaced verbatim.
    """

    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        transient: bool,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        error: Optional[dict[str, Any]] = None,
        **context: Any,
    ):
        super().__init__(
            message,
            code=code,
            transient=transient,
            status_code=status_code,
            **context,
        )
        self.transient = transient
        self.status_code = status_code
        self.error = error or {}
