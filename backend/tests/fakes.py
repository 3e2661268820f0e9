"""
In-memory stand-ins for the database and the outer world used by the tests.

The fake repositories subclass the real ones and only replace the storage
primitives (``get_by_id``, ``update_if``, ``_add``) plus the hand-written
queries, so the conditional transitions built on top of ``update_if``
(``mark_paid_if_pending``, ``update_status_if`` ...) run unchanged.
"""

import json
import uuid
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional

import httpx

from evmarket.core.identity import AuthenticatedUser, UserRole
from evmarket.database.models.dealer import Dealer
from evmarket.database.models.promo_code import PromoCode
from evmarket.database.models.vehicle import Vehicle
from evmarket.database.repository import DuplicateRecordError
from evmarket.services.catalog.repository import (
    DealerRepository,
    PromoCodeRepository,
    VehicleRepository,
)
from evmarket.services.idempotency.repository import IdempotencyRepository
from evmarket.services.inventory.repository import ReservationRepository
from evmarket.services.orders.enums import DiscountType
from evmarket.services.orders.repository import OrderRepository
from evmarket.services.payments.enums import EntityType, RefundStatus
from evmarket.services.payments.razorpay_client import (
    RazorpayClient,
    compute_signature,
    to_subunits,
)
from evmarket.services.payments.repository import (
    PaymentOrderRepository,
    RefundRepository,
    WebhookEventRepository,
)
from evmarket.services.test_rides.enums import ACTIVE_BOOKING_STATUSES
from evmarket.services.test_rides.repository import BookingRepository

KEY_ID = "rzp_test_key"
KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "rzp_webhook_secret"


# ============================================================================
# Clock
# ============================================================================


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


# ============================================================================
# In-memory storage
# ============================================================================


def _matches(instance: Any, conditions: Optional[Mapping[str, Any]]) -> bool:
    for column, expected in (conditions or {}).items():
        actual = getattr(instance, column)
        if expected is None:
            if actual is not None:
                return False
        elif isinstance(expected, Collection) and not isinstance(expected, str):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    return True


def _apply_defaults(instance: Any, clock: Callable[[], datetime]) -> None:
    """Fill in what the INSERT would: timestamps, then column defaults."""
    columns = instance.__table__.columns
    for name in ("created_at", "updated_at"):
        if name in columns and getattr(instance, name, None) is None:
            setattr(instance, name, clock())
    for column in columns:
        if getattr(instance, column.key) is not None or column.default is None:
            continue
        default = column.default
        if default.is_callable:
            setattr(instance, column.key, default.arg(None))
        elif default.is_scalar:
            setattr(instance, column.key, default.arg)


class InMemoryRepositoryMixin:
    """Storage primitives shared by every fake repository."""

    def __init__(self, rows: dict[Any, Any], clock: Callable[[], datetime]):
        super().__init__(session=None)
        self.rows = rows
        self.clock = clock

    async def get_by_id(self, pk: Any) -> Optional[Any]:
        return self.rows.get(pk)

    async def update_if(
        self,
        pk: Any,
        conditions: Optional[Mapping[str, Any]],
        **changes: Any,
    ) -> bool:
        instance = self.rows.get(pk)
        if instance is None or not _matches(instance, conditions):
            return False
        for column, value in changes.items():
            setattr(instance, column, value)
        if "updated_at" in instance.__table__.columns:
            instance.updated_at = self.clock()
        return True

    async def _add(self, instance: Any, operation: str, **context: Any) -> Any:
        _apply_defaults(instance, self.clock)
        pk = getattr(instance, self.pk_column)
        if pk in self.rows or self._violates_unique(instance):
            raise DuplicateRecordError(
                f"{operation} failed - duplicate or constraint violation",
                operation=operation,
                **context,
            )
        self.rows[pk] = instance
        return instance

    def _violates_unique(self, instance: Any) -> bool:
        return False


class FakeVehicleRepository(InMemoryRepositoryMixin, VehicleRepository):
    async def get_stock(self, vehicle_id: uuid.UUID) -> Optional[int]:
        vehicle = self.rows.get(vehicle_id)
        return vehicle.stock_quantity if vehicle is not None else None

    async def decrement_stock_if_available(self, vehicle_id: uuid.UUID, quantity: int) -> bool:
        vehicle = self.rows.get(vehicle_id)
        if vehicle is None or vehicle.stock_quantity < quantity:
            return False
        vehicle.stock_quantity -= quantity
        return True

    async def increment_stock(self, vehicle_id: uuid.UUID, quantity: int) -> bool:
        vehicle = self.rows.get(vehicle_id)
        if vehicle is None:
            return False
        vehicle.stock_quantity += quantity
        return True


class FakeDealerRepository(InMemoryRepositoryMixin, DealerRepository):
    async def get_by_user_id(self, user_id: uuid.UUID) -> Optional[Dealer]:
        return next((d for d in self.rows.values() if d.user_id == user_id), None)


class FakePromoCodeRepository(InMemoryRepositoryMixin, PromoCodeRepository):
    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        wanted = code.strip().upper()
        return next((p for p in self.rows.values() if p.code == wanted), None)


class FakeReservationRepository(InMemoryRepositoryMixin, ReservationRepository):
    def _violates_unique(self, instance: Any) -> bool:
        return any(r.order_id == instance.order_id for r in self.rows.values())

    async def get_by_order(self, order_id: uuid.UUID):
        return next((r for r in self.rows.values() if r.order_id == order_id), None)

    async def delete_by_order(self, order_id: uuid.UUID) -> bool:
        doomed = [pk for pk, r in self.rows.items() if r.order_id == order_id]
        for pk in doomed:
            del self.rows[pk]
        return bool(doomed)

    async def delete_expired(self, now: datetime) -> int:
        doomed = [pk for pk, r in self.rows.items() if r.reserved_until <= now]
        for pk in doomed:
            del self.rows[pk]
        return len(doomed)


class FakeIdempotencyRepository(InMemoryRepositoryMixin, IdempotencyRepository):
    async def delete(self, key: str) -> bool:
        return self.rows.pop(key, None) is not None

    async def delete_older_than(self, cutoff: datetime) -> int:
        doomed = [key for key, r in self.rows.items() if r.created_at < cutoff]
        for key in doomed:
            del self.rows[key]
        return len(doomed)


class FakeOrderRepository(InMemoryRepositoryMixin, OrderRepository):
    pass


class FakeBookingRepository(InMemoryRepositoryMixin, BookingRepository):
    def _violates_unique(self, instance: Any) -> bool:
        for booking in self.rows.values():
            if booking.confirmation_code == instance.confirmation_code:
                return True
            if (
                booking.status in ACTIVE_BOOKING_STATUSES
                and booking.user_id == instance.user_id
                and booking.vehicle_id == instance.vehicle_id
                and booking.preferred_date == instance.preferred_date
                and booking.preferred_time == instance.preferred_time
            ):
                return True
        return False

    async def find_active_for_slot(self, user_id, vehicle_id, preferred_date, preferred_time):
        return next(
            (
                b
                for b in self.rows.values()
                if b.user_id == user_id
                and b.vehicle_id == vehicle_id
                and b.preferred_date == preferred_date
                and b.preferred_time == preferred_time
                and b.status in ACTIVE_BOOKING_STATUSES
            ),
            None,
        )

    async def count_created_since(self, user_id: uuid.UUID, since: datetime) -> int:
        return sum(
            1 for b in self.rows.values() if b.user_id == user_id and b.created_at >= since
        )


class FakePaymentOrderRepository(InMemoryRepositoryMixin, PaymentOrderRepository):
    async def get_by_payment_id(self, payment_id: str):
        return next(
            (p for p in self.rows.values() if p.razorpay_payment_id == payment_id),
            None,
        )

    async def reserve_refund_amount(self, order_id: str, amount: Decimal) -> bool:
        payment_order = self.rows.get(order_id)
        if payment_order is None:
            return False
        if payment_order.refunded_amount + amount > payment_order.captured_amount:
            return False
        payment_order.refunded_amount += amount
        return True

    async def release_refund_amount(self, order_id: str, amount: Decimal) -> bool:
        payment_order = self.rows.get(order_id)
        if payment_order is None or payment_order.refunded_amount < amount:
            return False
        payment_order.refunded_amount -= amount
        return True


class FakeRefundRepository(InMemoryRepositoryMixin, RefundRepository):
    async def claimed_total(self, payment_order_id: str) -> Decimal:
        return sum(
            (
                refund.amount
                for refund in self.rows.values()
                if refund.payment_order_id == payment_order_id
                and refund.status != RefundStatus.FAILED
                and refund.budget_claimed
            ),
            Decimal("0.00"),
        )


class FakeWebhookEventRepository(InMemoryRepositoryMixin, WebhookEventRepository):
    pass


@dataclass
class InMemoryDatabase:
    """One dict per table plus a repository factory bound to them."""

    clock: FrozenClock
    vehicles: dict = field(default_factory=dict)
    dealers: dict = field(default_factory=dict)
    promo_codes: dict = field(default_factory=dict)
    reservations: dict = field(default_factory=dict)
    idempotency: dict = field(default_factory=dict)
    orders: dict = field(default_factory=dict)
    bookings: dict = field(default_factory=dict)
    payment_orders: dict = field(default_factory=dict)
    refunds: dict = field(default_factory=dict)
    webhook_events: dict = field(default_factory=dict)

    def vehicle_repo(self) -> FakeVehicleRepository:
        return FakeVehicleRepository(self.vehicles, self.clock)

    def dealer_repo(self) -> FakeDealerRepository:
        return FakeDealerRepository(self.dealers, self.clock)

    def promo_repo(self) -> FakePromoCodeRepository:
        return FakePromoCodeRepository(self.promo_codes, self.clock)

    def reservation_repo(self) -> FakeReservationRepository:
        return FakeReservationRepository(self.reservations, self.clock)

    def idempotency_repo(self) -> FakeIdempotencyRepository:
        return FakeIdempotencyRepository(self.idempotency, self.clock)

    def order_repo(self) -> FakeOrderRepository:
        return FakeOrderRepository(self.orders, self.clock)

    def booking_repo(self) -> FakeBookingRepository:
        return FakeBookingRepository(self.bookings, self.clock)

    def payment_order_repo(self) -> FakePaymentOrderRepository:
        return FakePaymentOrderRepository(self.payment_orders, self.clock)

    def refund_repo(self) -> FakeRefundRepository:
        return FakeRefundRepository(self.refunds, self.clock)

    def webhook_event_repo(self) -> FakeWebhookEventRepository:
        return FakeWebhookEventRepository(self.webhook_events, self.clock)

    def add_vehicle(self, **overrides: Any) -> Vehicle:
        fields = {
            "id": uuid.uuid4(),
            "name": "Volt S1",
            "slug": f"volt-s1-{uuid.uuid4().hex[:6]}",
            "price": Decimal("150000.00"),
            "stock_quantity": 5,
            "colors": ["Red", "Black"],
            "is_active": True,
        }
        fields.update(overrides)
        vehicle = Vehicle(**fields)
        _apply_defaults(vehicle, self.clock)
        self.vehicles[vehicle.id] = vehicle
        return vehicle

    def add_dealer(self, user_id: Optional[uuid.UUID] = None, **overrides: Any) -> Dealer:
        fields = {
            "id": uuid.uuid4(),
            "user_id": user_id or uuid.uuid4(),
            "business_name": "City Motors",
            "city": "Bengaluru",
            "is_active": True,
        }
        fields.update(overrides)
        dealer = Dealer(**fields)
        _apply_defaults(dealer, self.clock)
        self.dealers[dealer.id] = dealer
        return dealer

    def add_promo(self, code: str, **overrides: Any) -> PromoCode:
        now = self.clock()
        fields = {
            "id": uuid.uuid4(),
            "code": code,
            "discount_type": DiscountType.PERCENTAGE,
            "discount_value": Decimal("10"),
            "max_discount": None,
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
            "is_active": True,
        }
        fields.update(overrides)
        promo = PromoCode(**fields)
        _apply_defaults(promo, self.clock)
        self.promo_codes[promo.id] = promo
        return promo


# ============================================================================
# Outbound side effects
# ============================================================================


@dataclass
class SentNotification:
    user_id: uuid.UUID
    title: str
    message: str
    notification_type: str
    payload: dict[str, Any]


class RecordingNotifier:
    """Notification sink that remembers what it was asked to send."""

    def __init__(self):
        self.sent: list[SentNotification] = []

    def notify(self, user_id, title, message, notification_type, payload=None) -> None:
        self.sent.append(
            SentNotification(user_id, title, message, notification_type, payload or {})
        )

    def types_for(self, user_id: uuid.UUID) -> list[str]:
        return [n.notification_type for n in self.sent if n.user_id == user_id]


@dataclass
class QueuedRefund:
    payment_id: str
    reason: str
    reference_type: EntityType
    reference_id: uuid.UUID
    amount: Optional[Decimal] = None


class RecordingRefundQueue:
    def __init__(self):
        self.queued: list[QueuedRefund] = []

    def enqueue_refund(self, payment_id, reason, reference_type, reference_id, amount=None) -> None:
        self.queued.append(QueuedRefund(payment_id, reason, reference_type, reference_id, amount))


# ============================================================================
# Gateway
# ============================================================================


class FakeRazorpayAPI:
    """
    ``httpx.MockTransport`` handler emulating the Razorpay REST endpoints.

    Queue a canned response with ``fail_next`` to make the next call fail.
    """

    def __init__(self):
        self.orders: dict[str, dict[str, Any]] = {}
        self.payments: dict[str, dict[str, Any]] = {}
        self.refunds: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self.refund_status = "processed"
        self._failures: list[httpx.Response] = []
        self._counter = 0

    def fail_next(self, status_code: int, body: Optional[dict[str, Any]] = None) -> None:
        self._failures.append(httpx.Response(status_code, json=body or {}))

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:06d}"

    def add_payment(
        self,
        order_id: str,
        amount: Optional[Decimal] = None,
        status: str = "captured",
        method: str = "upi",
    ) -> str:
        payment_id = self._next_id("pay")
        order = self.orders.get(order_id, {})
        self.payments[payment_id] = {
            "id": payment_id,
            "entity": "payment",
            "order_id": order_id,
            "amount": to_subunits(amount) if amount is not None else order.get("amount", 0),
            "currency": "INR",
            "status": status,
            "method": method,
        }
        return payment_id

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._failures:
            return self._failures.pop(0)

        path = request.url.path.removeprefix("/v1")
        body = json.loads(request.content) if request.content else {}

        if request.method == "POST" and path == "/orders":
            order_id = self._next_id("order")
            order = {
                "id": order_id,
                "entity": "order",
                "amount": body["amount"],
                "amount_paid": 0,
                "amount_due": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
                "notes": body.get("notes", {}),
            }
            self.orders[order_id] = order
            return httpx.Response(200, json=order)

        parts = path.strip("/").split("/")
        if request.method == "GET" and len(parts) == 2 and parts[0] == "payments":
            payment = self.payments.get(parts[1])
            if payment is None:
                return _bad_request("The id provided does not exist")
            return httpx.Response(200, json=payment)

        if request.method == "POST" and len(parts) == 3 and parts[2] == "refund":
            refund_id = self._next_id("rfnd")
            refund = {
                "id": refund_id,
                "entity": "refund",
                "payment_id": parts[1],
                "amount": body["amount"],
                "status": self.refund_status,
                "notes": body.get("notes", {}),
            }
            self.refunds[refund_id] = refund
            return httpx.Response(200, json=refund)

        return httpx.Response(404, json={"error": {"code": "NOT_FOUND"}})


def _bad_request(description: str) -> httpx.Response:
    return httpx.Response(
        400,
        json={"error": {"code": "BAD_REQUEST_ERROR", "description": description}},
    )


def make_gateway(api: FakeRazorpayAPI, max_retries: int = 0) -> RazorpayClient:
    return RazorpayClient(
        key_id=KEY_ID,
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        max_retries=max_retries,
        initial_backoff=0,
        max_backoff=0,
        transport=httpx.MockTransport(api),
    )


def checkout_signature(order_id: str, payment_id: str) -> str:
    return compute_signature(KEY_SECRET, f"{order_id}|{payment_id}".encode("utf-8"))


def webhook_signature(body: bytes) -> str:
    return compute_signature(WEBHOOK_SECRET, body)


# ============================================================================
# Actors
# ============================================================================


def make_user(role: UserRole = UserRole.CUSTOMER, **overrides: Any) -> AuthenticatedUser:
    fields = {
        "id": uuid.uuid4(),
        "role": role,
        "email": "rider@example.com",
        "phone": "+919876543210",
        "name": "Asha Rider",
    }
    fields.update(overrides)
    return AuthenticatedUser(**fields)


FIXED_NOW = datetime(2025, 6, 2, 6, 30, tzinfo=timezone.utc)
