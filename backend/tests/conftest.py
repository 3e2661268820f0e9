"""
Pytest configuration and shared test fixtures.

Services are wired exactly as ``evmarket.services.factory`` wires them, but
over in-memory repositories, a frozen clock and a mock Razorpay transport, so
every flow (booking, checkout, capture, refund, webhook) runs end to end
without a database, a broker or the network.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Callable, Optional

import httpx
import pytest
from jose import jwt

from evmarket.core.config import Settings
from evmarket.core.identity import AuthenticatedUser, UserRole
from evmarket.services.idempotency.guard import IdempotencyGuard
from evmarket.services.inventory.reservations import InventoryReservationManager
from evmarket.services.orders.service import OrderService
from evmarket.services.payments.checkout import GatewayCheckout
from evmarket.services.payments.razorpay_client import RazorpayClient
from evmarket.services.payments.refunds import RefundService
from evmarket.services.payments.service import PaymentService
from evmarket.services.payments.settlement import PaymentSettlement
from evmarket.services.payments.webhooks import WebhookReconciler
from evmarket.services.test_rides.service import TestRideService

from fakes import (
    FIXED_NOW,
    KEY_ID,
    KEY_SECRET,
    WEBHOOK_SECRET,
    FakeRazorpayAPI,
    FrozenClock,
    InMemoryDatabase,
    RecordingNotifier,
    RecordingRefundQueue,
    make_gateway,
    make_user,
)

TEST_JWT_SECRET = "test-jwt-secret-with-at-least-32-chars!"


# ============================================================================
# Configuration and infrastructure
# ============================================================================


@pytest.fixture
def settings() -> Settings:
    """Settings with deterministic business rules and gateway credentials."""
    return Settings(
        environment="test",
        razorpay_key_id=KEY_ID,
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        jwt_secret_key=TEST_JWT_SECRET,
        business_timezone="Asia/Kolkata",
        daily_booking_limit=3,
        cancellation_notice_hours=24,
        reservation_sweep_interval_seconds=0,
        idempotency_purge_interval_seconds=0,
    )


@pytest.fixture
def clock() -> FrozenClock:
    """2025-06-02 12:00 in Asia/Kolkata."""
    return FrozenClock(FIXED_NOW)


@pytest.fixture
def db(clock: FrozenClock) -> InMemoryDatabase:
    return InMemoryDatabase(clock=clock)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def refund_queue() -> RecordingRefundQueue:
    return RecordingRefundQueue()


@pytest.fixture
def razorpay_api() -> FakeRazorpayAPI:
    return FakeRazorpayAPI()


@pytest.fixture
async def gateway(razorpay_api: FakeRazorpayAPI) -> AsyncGenerator[RazorpayClient, None]:
    client = make_gateway(razorpay_api)
    yield client
    await client.aclose()


# ============================================================================
# Actors
# ============================================================================


@pytest.fixture
def customer() -> AuthenticatedUser:
    return make_user(UserRole.CUSTOMER)


@pytest.fixture
def other_customer() -> AuthenticatedUser:
    return make_user(UserRole.CUSTOMER, email="other@example.com", name="Ravi Other")


@pytest.fixture
def admin() -> AuthenticatedUser:
    return make_user(UserRole.ADMIN, email="ops@example.com", name="Ops Admin")


@pytest.fixture
def dealer_user() -> AuthenticatedUser:
    return make_user(UserRole.DEALER, email="dealer@example.com", name="City Motors")


@pytest.fixture
def dealer(db: InMemoryDatabase, dealer_user: AuthenticatedUser):
    """Dealership operated by ``dealer_user``."""
    return db.add_dealer(user_id=dealer_user.id)


@pytest.fixture
def vehicle(db: InMemoryDatabase):
    return db.add_vehicle()


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def inventory(db: InMemoryDatabase, settings: Settings, clock: FrozenClock) -> InventoryReservationManager:
    return InventoryReservationManager(
        db.vehicle_repo(),
        db.reservation_repo(),
        ttl_minutes=settings.reservation_ttl_minutes,
        clock=clock,
    )


@pytest.fixture
def idempotency_guard(db: InMemoryDatabase, settings: Settings, clock: FrozenClock) -> IdempotencyGuard:
    return IdempotencyGuard(
        db.idempotency_repo(),
        window_hours=settings.idempotency_window_hours,
        clock=clock,
    )


@pytest.fixture
def checkout_gateway(db: InMemoryDatabase, gateway: RazorpayClient, settings: Settings) -> GatewayCheckout:
    return GatewayCheckout(gateway, db.payment_order_repo(), settings.app_name)


@pytest.fixture
def order_service(
    db: InMemoryDatabase,
    inventory: InventoryReservationManager,
    checkout_gateway: GatewayCheckout,
    idempotency_guard: IdempotencyGuard,
    notifier: RecordingNotifier,
    refund_queue: RecordingRefundQueue,
    settings: Settings,
    clock: FrozenClock,
) -> OrderService:
    return OrderService(
        orders=db.order_repo(),
        vehicles=db.vehicle_repo(),
        dealers=db.dealer_repo(),
        promo_codes=db.promo_repo(),
        inventory=inventory,
        checkout_gateway=checkout_gateway,
        idempotency=idempotency_guard,
        notifier=notifier,
        refund_queue=refund_queue,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def test_ride_service(
    db: InMemoryDatabase,
    checkout_gateway: GatewayCheckout,
    idempotency_guard: IdempotencyGuard,
    notifier: RecordingNotifier,
    refund_queue: RecordingRefundQueue,
    settings: Settings,
    clock: FrozenClock,
) -> TestRideService:
    return TestRideService(
        bookings=db.booking_repo(),
        vehicles=db.vehicle_repo(),
        dealers=db.dealer_repo(),
        checkout_gateway=checkout_gateway,
        idempotency=idempotency_guard,
        notifier=notifier,
        refund_queue=refund_queue,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def settlement(
    db: InMemoryDatabase,
    inventory: InventoryReservationManager,
    notifier: RecordingNotifier,
    refund_queue: RecordingRefundQueue,
    clock: FrozenClock,
) -> PaymentSettlement:
    return PaymentSettlement(
        payment_orders=db.payment_order_repo(),
        bookings=db.booking_repo(),
        orders=db.order_repo(),
        dealers=db.dealer_repo(),
        inventory=inventory,
        notifier=notifier,
        refund_queue=refund_queue,
        clock=clock,
    )


@pytest.fixture
def payment_service(
    db: InMemoryDatabase,
    gateway: RazorpayClient,
    settlement: PaymentSettlement,
) -> PaymentService:
    return PaymentService(gateway, db.payment_order_repo(), settlement)


@pytest.fixture
def refund_service(
    db: InMemoryDatabase,
    gateway: RazorpayClient,
    notifier: RecordingNotifier,
    clock: FrozenClock,
) -> RefundService:
    return RefundService(
        gateway=gateway,
        payment_orders=db.payment_order_repo(),
        refunds=db.refund_repo(),
        bookings=db.booking_repo(),
        orders=db.order_repo(),
        dealers=db.dealer_repo(),
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def webhook_reconciler(
    db: InMemoryDatabase,
    gateway: RazorpayClient,
    settlement: PaymentSettlement,
    refund_service: RefundService,
) -> WebhookReconciler:
    return WebhookReconciler(
        gateway=gateway,
        payment_orders=db.payment_order_repo(),
        settlement=settlement,
        refund_service=refund_service,
        events=db.webhook_event_repo(),
    )


# ============================================================================
# HTTP
# ============================================================================


@pytest.fixture
def make_token(settings: Settings) -> Callable[..., str]:
    """Mint access tokens the way the external auth provider would."""

    def _make(
        user: AuthenticatedUser,
        role_claim: Optional[str] = None,
        expires_in: timedelta = timedelta(minutes=15),
    ) -> str:
        claims = {
            "sub": str(user.id),
            settings.jwt_role_claim: role_claim or user.role.value,
            "email": user.email,
            "phone": user.phone,
            "name": user.name,
            "exp": datetime.now(timezone.utc) + expires_in,
        }
        return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)

    return _make


@pytest.fixture
async def api_client(
    settings: Settings,
    order_service: OrderService,
    test_ride_service: TestRideService,
    payment_service: PaymentService,
    refund_service: RefundService,
    webhook_reconciler: WebhookReconciler,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Async client against the real application with services overridden.

    The ASGI transport does not run the lifespan, so no gateway client or
    background job is started.
    """
    from evmarket.api import deps
    from evmarket.api.rate_limit import limiter
    from evmarket.core.config import get_settings
    from evmarket.main import app

    app.dependency_overrides.update(
        {
            get_settings: lambda: settings,
            deps.get_order_service: lambda: order_service,
            deps.get_test_ride_service: lambda: test_ride_service,
            deps.get_payment_service: lambda: payment_service,
            deps.get_refund_service: lambda: refund_service,
            deps.get_webhook_reconciler: lambda: webhook_reconciler,
        }
    )
    limiter.reset()

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Flows
# ============================================================================


@pytest.fixture
def book_ride(test_ride_service: TestRideService, customer: AuthenticatedUser, vehicle, db: InMemoryDatabase):
    """
    Book a test ride three days out and return it with its payment order.

    Returns:
        Async factory ``(actor=customer, **request_fields) -> (booking, payment_order)``
    """
    from evmarket.schemas.test_rides import TestRideBookingRequest

    async def _book(actor: Optional[AuthenticatedUser] = None, **overrides):
        fields = {
            "vehicle_id": vehicle.id,
            "preferred_date": (FIXED_NOW + timedelta(days=3)).date(),
            "preferred_time": "10:00",
        }
        fields.update(overrides)
        response, _ = await test_ride_service.book(actor or customer, TestRideBookingRequest(**fields))
        booking = db.bookings[uuid.UUID(response["booking"]["id"])]
        payment_order = db.payment_orders.get(booking.razorpay_order_id)
        return booking, payment_order

    return _book


@pytest.fixture
def place_order(order_service: OrderService, customer: AuthenticatedUser, vehicle, db: InMemoryDatabase):
    """
    Check out one unit of the default vehicle.

    Returns:
        Async factory ``(**request_fields) -> (order, payment_order)``
    """
    from evmarket.schemas.orders import CheckoutRequest

    async def _place(**overrides):
        fields = {
            "vehicle_id": vehicle.id,
            "quantity": 1,
            "color": "Black",
            "delivery_address": {
                "line1": "4 Residency Road",
                "city": "Bengaluru",
                "state": "Karnataka",
                "postal_code": "560025",
            },
            "contact_number": "+919876543210",
        }
        fields.update(overrides)
        response, _ = await order_service.checkout(customer, CheckoutRequest(**fields))
        order = db.orders[uuid.UUID(response["order"]["id"])]
        return order, db.payment_orders[order.razorpay_order_id]

    return _place
