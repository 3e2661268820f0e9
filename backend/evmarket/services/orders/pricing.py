"""
Checkout pricing.

subtotal = unit price x quantity; an optional promo code discounts the
subtotal; GST is charged on the discounted amount. Every figure is a Decimal
quantized to paise.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from evmarket.core.errors import ValidationError
from evmarket.core.logging import get_logger
from evmarket.database.models.promo_code import PromoCode
from evmarket.services.orders.enums import DiscountType, PaymentType

logger = get_logger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(amount: Optional[Decimal]) -> Optional[str]:
    """Money in API payloads: a fixed two-decimal string."""
    if amount is None:
        return None
    return str(quantize(amount))


@dataclass(frozen=True)
class OrderPricing:
    unit_price: Decimal
    quantity: int
    subtotal: Decimal
    discount: Decimal
    taxes: Decimal
    total: Decimal
    promo_code: Optional[str] = None


def calculate_discount(
    subtotal: Decimal,
    promo: Optional[PromoCode],
    now: datetime,
) -> Decimal:
    """
    Discount granted by ``promo`` on ``subtotal``.

    Inactive or out-of-window codes grant nothing. Percentage discounts are
    capped by ``max_discount``; no discount exceeds the subtotal.
    """
    if promo is None or not promo.is_valid_at(now):
        return ZERO

    if promo.discount_type == DiscountType.PERCENTAGE:
        discount = subtotal * promo.discount_value / Decimal("100")
        if promo.max_discount is not None:
            discount = min(discount, promo.max_discount)
    else:
        discount = promo.discount_value

    return quantize(min(discount, subtotal))


def calculate_pricing(
    unit_price: Decimal,
    quantity: int,
    tax_rate: Decimal,
    promo: Optional[PromoCode] = None,
    now: Optional[datetime] = None,
) -> OrderPricing:
    subtotal = quantize(unit_price * quantity)
    discount = calculate_discount(subtotal, promo, now) if now else ZERO
    taxes = quantize((subtotal - discount) * tax_rate)
    total = quantize(subtotal - discount + taxes)

    applied_code = promo.code if promo is not None and discount > 0 else None
    logger.debug(
        "Order priced",
        subtotal=str(subtotal),
        discount=str(discount),
        taxes=str(taxes),
        total=str(total),
        promo_code=applied_code,
    )
    return OrderPricing(
        unit_price=quantize(unit_price),
        quantity=quantity,
        subtotal=subtotal,
        discount=discount,
        taxes=taxes,
        total=total,
        promo_code=applied_code,
    )


def resolve_payment_amount(
    pricing: OrderPricing,
    payment_type: PaymentType,
    partial_amount: Optional[Decimal],
    min_partial_payment: Decimal,
) -> Decimal:
    """
    Amount requested from the gateway at checkout.

    Raises:
        ValidationError: If a partial amount is missing or out of range
    """
    if payment_type == PaymentType.FULL:
        return pricing.total

    if partial_amount is None:
        raise ValidationError(
            "Partial amount is required for partial payments",
            field="partial_amount",
        )
    amount = quantize(partial_amount)
    if amount < min_partial_payment:
        raise ValidationError(
            f"Minimum partial payment is {format_money(min_partial_payment)}",
            field="partial_amount",
            minimum=format_money(min_partial_payment),
        )
    if amount > pricing.total:
        raise ValidationError(
            "Partial amount cannot exceed the order total",
            field="partial_amount",
            total=format_money(pricing.total),
        )
    return amount
