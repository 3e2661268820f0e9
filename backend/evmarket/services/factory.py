"""
Service wiring shared by the API dependencies and the Celery tasks.

Every builder takes the request (or task) scoped session and the process
wide gateway client; repositories are created per call so nothing outlives
its session.
"""

from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from evmarket.core.config import Settings
from evmarket.services.catalog.repository import (
    DealerRepository,
    PromoCodeRepository,
    VehicleRepository,
)
from evmarket.services.idempotency.guard import IdempotencyGuard
from evmarket.services.idempotency.repository import IdempotencyRepository
from evmarket.services.inventory.repository import ReservationRepository
from evmarket.services.inventory.reservations import InventoryReservationManager
from evmarket.services.notifications.sink import CeleryNotificationSink, NotificationSink
from evmarket.services.orders.repository import OrderRepository
from evmarket.services.orders.service import OrderService
from evmarket.services.payments.checkout import GatewayCheckout
from evmarket.services.payments.queue import CeleryRefundQueue, RefundQueue
from evmarket.services.payments.razorpay_client import RazorpayClient
from evmarket.services.payments.refunds import RefundService
from evmarket.services.payments.repository import (
    PaymentOrderRepository,
    RefundRepository,
    WebhookEventRepository,
)
from evmarket.services.payments.service import PaymentService
from evmarket.services.payments.settlement import PaymentSettlement
from evmarket.services.payments.webhooks import WebhookReconciler
from evmarket.services.test_rides.repository import BookingRepository
from evmarket.services.test_rides.service import TestRideService


def build_inventory(session: AsyncSession, settings: Settings) -> InventoryReservationManager:
    return InventoryReservationManager(
        VehicleRepository(session),
        ReservationRepository(session),
        ttl_minutes=settings.reservation_ttl_minutes,
    )


def build_idempotency_guard(session: AsyncSession, settings: Settings) -> IdempotencyGuard:
    return IdempotencyGuard(
        IdempotencyRepository(session),
        window_hours=settings.idempotency_window_hours,
    )


def build_checkout_gateway(
    session: AsyncSession, gateway: RazorpayClient, settings: Settings
) -> GatewayCheckout:
    return GatewayCheckout(gateway, PaymentOrderRepository(session), settings.app_name)


def build_order_service(
    session: AsyncSession,
    gateway: RazorpayClient,
    settings: Settings,
    notifier: Optional[NotificationSink] = None,
    refund_queue: Optional[RefundQueue] = None,
) -> OrderService:
    return OrderService(
        orders=OrderRepository(session),
        vehicles=VehicleRepository(session),
        dealers=DealerRepository(session),
        promo_codes=PromoCodeRepository(session),
        inventory=build_inventory(session, settings),
        checkout_gateway=build_checkout_gateway(session, gateway, settings),
        idempotency=build_idempotency_guard(session, settings),
        notifier=notifier or CeleryNotificationSink(),
        refund_queue=refund_queue or CeleryRefundQueue(),
        settings=settings,
    )


def build_test_ride_service(
    session: AsyncSession,
    gateway: RazorpayClient,
    settings: Settings,
    notifier: Optional[NotificationSink] = None,
    refund_queue: Optional[RefundQueue] = None,
) -> TestRideService:
    return TestRideService(
        bookings=BookingRepository(session),
        vehicles=VehicleRepository(session),
        dealers=DealerRepository(session),
        checkout_gateway=build_checkout_gateway(session, gateway, settings),
        idempotency=build_idempotency_guard(session, settings),
        notifier=notifier or CeleryNotificationSink(),
        refund_queue=refund_queue or CeleryRefundQueue(),
        settings=settings,
    )


def build_settlement(
    session: AsyncSession,
    settings: Settings,
    notifier: Optional[NotificationSink] = None,
    refund_queue: Optional[RefundQueue] = None,
) -> PaymentSettlement:
    return PaymentSettlement(
        payment_orders=PaymentOrderRepository(session),
        bookings=BookingRepository(session),
        orders=OrderRepository(session),
        dealers=DealerRepository(session),
        inventory=build_inventory(session, settings),
        notifier=notifier or CeleryNotificationSink(),
        refund_queue=refund_queue or CeleryRefundQueue(),
    )


def build_payment_service(
    session: AsyncSession,
    gateway: RazorpayClient,
    settings: Settings,
) -> PaymentService:
    return PaymentService(
        gateway,
        PaymentOrderRepository(session),
        build_settlement(session, settings),
    )


def build_refund_service(
    session: AsyncSession,
    gateway: RazorpayClient,
    notifier: Optional[NotificationSink] = None,
) -> RefundService:
    return RefundService(
        gateway=gateway,
        payment_orders=PaymentOrderRepository(session),
        refunds=RefundRepository(session),
        bookings=BookingRepository(session),
        orders=OrderRepository(session),
        dealers=DealerRepository(session),
        notifier=notifier or CeleryNotificationSink(),
    )


def build_webhook_reconciler(
    session: AsyncSession,
    gateway: RazorpayClient,
    settings: Settings,
) -> WebhookReconciler:
    return WebhookReconciler(
        gateway=gateway,
        payment_orders=PaymentOrderRepository(session),
        settlement=build_settlement(session, settings),
        refund_service=build_refund_service(session, gateway),
        events=WebhookEventRepository(session),
    )
