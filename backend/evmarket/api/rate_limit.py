"""Shared slowapi limiter; keyed by client address."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from evmarket.core.config import get_settings

limiter = Limiter(key_func=get_remote_address)


def booking_rate_limit() -> str:
    return get_settings().booking_rate_limit
