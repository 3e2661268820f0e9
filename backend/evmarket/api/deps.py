"""
FastAPI dependencies for authentication, authorization and service wiring.

Access tokens are issued by the external auth provider; this module only
verifies them and turns the claims into an ``AuthenticatedUser``. Services
are built per request from the request's session and the application wide
gateway client, so tests can override any of them through
``app.dependency_overrides``.
"""

from typing import Annotated, Optional
from uuid import UUID

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from evmarket.core.config import Settings, get_settings
from evmarket.core.identity import AuthenticatedUser, UserRole
from evmarket.core.logging import get_logger, log_security_event, set_user_id
from evmarket.database.connection import get_db
from evmarket.services import factory
from evmarket.services.orders.service import OrderService
from evmarket.services.payments.razorpay_client import RazorpayClient
from evmarket.services.payments.refunds import RefundService
from evmarket.services.payments.service import PaymentService
from evmarket.services.payments.webhooks import WebhookReconciler
from evmarket.services.test_rides.service import TestRideService

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)

SettingsDep = Annotated[Settings, Depends(get_settings)]
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]


async def get_current_user(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
    settings: SettingsDep,
) -> AuthenticatedUser:
    """
    Validate the bearer token and return the acting user.

    Raises:
        HTTPException: 401 if the token is missing or invalid, 403 if its
            role claim is not an application role
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if credentials is None:
        logger.warning("Authentication failed: No credentials provided")
        raise credentials_exception

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except JWTError as e:
        logger.warning(
            "Authentication failed: JWT validation error",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise credentials_exception

    user_id_str: Optional[str] = payload.get("sub")
    if user_id_str is None:
        logger.warning("Authentication failed: Token missing 'sub' claim")
        raise credentials_exception
    try:
        user_id = UUID(user_id_str)
    except ValueError:
        logger.warning("Authentication failed: Invalid user ID format", user_id=user_id_str)
        raise credentials_exception

    try:
        role = UserRole.from_string(str(payload.get(settings.jwt_role_claim, UserRole.CUSTOMER.value)))
    except ValueError:
        log_security_event(
            logger,
            "Unknown role claim",
            user_id=user_id_str,
            role=payload.get(settings.jwt_role_claim),
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Unknown user role",
        )

    set_user_id(str(user_id))
    return AuthenticatedUser(
        id=user_id,
        role=role,
        email=payload.get("email"),
        phone=payload.get("phone"),
        name=payload.get("name"),
    )


def require_role(*allowed_roles: UserRole):
    """
    Create a dependency that requires one of ``allowed_roles``.

    Example:
        @router.get("/admin", dependencies=[Depends(require_role(UserRole.ADMIN))])
        async def admin_endpoint():
            ...
    """

    async def role_checker(
        current_user: Annotated[AuthenticatedUser, Depends(get_current_user)],
    ) -> AuthenticatedUser:
        if current_user.role not in allowed_roles:
            log_security_event(
                logger,
                "Access denied: Insufficient permissions",
                user_id=str(current_user.id),
                user_role=current_user.role.value,
                required_roles=[r.value for r in allowed_roles],
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return current_user

    return role_checker


CurrentUser = Annotated[AuthenticatedUser, Depends(get_current_user)]
StaffUser = Annotated[
    AuthenticatedUser, Depends(require_role(UserRole.DEALER, UserRole.ADMIN))
]
AdminUser = Annotated[AuthenticatedUser, Depends(require_role(UserRole.ADMIN))]


def get_gateway(request: Request) -> RazorpayClient:
    """The gateway client opened in the application lifespan."""
    return request.app.state.gateway


Gateway = Annotated[RazorpayClient, Depends(get_gateway)]


def get_order_service(db: DatabaseSession, gateway: Gateway, settings: SettingsDep) -> OrderService:
    return factory.build_order_service(db, gateway, settings)


def get_test_ride_service(
    db: DatabaseSession, gateway: Gateway, settings: SettingsDep
) -> TestRideService:
    return factory.build_test_ride_service(db, gateway, settings)


def get_payment_service(
    db: DatabaseSession, gateway: Gateway, settings: SettingsDep
) -> PaymentService:
    return factory.build_payment_service(db, gateway, settings)


def get_refund_service(db: DatabaseSession, gateway: Gateway) -> RefundService:
    return factory.build_refund_service(db, gateway)


def get_webhook_reconciler(
    db: DatabaseSession, gateway: Gateway, settings: SettingsDep
) -> WebhookReconciler:
    return factory.build_webhook_reconciler(db, gateway, settings)


OrderServiceDep = Annotated[OrderService, Depends(get_order_service)]
TestRideServiceDep = Annotated[TestRideService, Depends(get_test_ride_service)]
PaymentServiceDep = Annotated[PaymentService, Depends(get_payment_service)]
RefundServiceDep = Annotated[RefundService, Depends(get_refund_service)]
WebhookReconcilerDep = Annotated[WebhookReconciler, Depends(get_webhook_reconciler)]
