"""
API v1 package initialization.
"""

from evmarket.api.v1.orders import router as orders_router
from evmarket.api.v1.payments import router as payments_router
from evmarket.api.v1.test_rides import router as test_rides_router
from evmarket.api.v1.webhooks import router as webhooks_router

__all__ = ["orders_router", "payments_router", "test_rides_router", "webhooks_router"]
