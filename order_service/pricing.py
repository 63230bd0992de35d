"""
pricing.py — Order totals from a validated cart snapshot

Pure functions: no I/O, no side effects. The business constants come from
`config` but every one of them can be passed explicitly, which keeps unit tests
independent of the environment.
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal

from . import config
from .errors import InsufficientLoyaltyPoints
from .models import OrderItem, Pricing

WHOLE_UNIT = Decimal("1")


@dataclass(frozen=True)
class PriceQuote:
    pricing: Pricing
    loyalty_points_used: int
    loyalty_points_earned: int
    coupon_code: str | None = None


def round_currency(amount: Decimal) -> Decimal:
    """Round half up to whole currency units (GST-style)."""
    return amount.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def calculate_pricing(
    items: list[OrderItem],
    loyalty_points_requested: int = 0,
    loyalty_points_available: int = 0,
    coupon_code: str | None = None,
    *,
    tax_rate: Decimal = config.TAX_RATE,
    free_shipping_threshold: Decimal = config.FREE_SHIPPING_THRESHOLD,
    flat_shipping_fee: Decimal = config.FLAT_SHIPPING_FEE,
    loyalty_accrual_rate: Decimal = config.LOYALTY_ACCRUAL_RATE,
) -> PriceQuote:
    """
    Computes subtotal, tax, shipping, discount and total for an order.

    Args:
        items (list[OrderItem]): Validated line items with frozen unit prices.
        loyalty_points_requested (int): Points the customer wants to redeem (1 point = 1 unit).
        loyalty_points_available (int): The customer's current balance.
        coupon_code (str | None): Recorded on the order; carries no discount of its own.

    Returns:
        PriceQuote: The monetary breakdown plus the points actually used and earned.

    Raises:
        InsufficientLoyaltyPoints: If more points are requested than available.
        ValueError: On an empty item list, negative inputs or a negative total.
    """
    if not items:
        raise ValueError("Cannot price an order without items")
    if loyalty_points_requested < 0:
        raise ValueError("Loyalty points to redeem cannot be negative")
    if loyalty_points_requested > loyalty_points_available:
        raise InsufficientLoyaltyPoints(loyalty_points_requested, loyalty_points_available)

    subtotal = sum((item.price * item.quantity for item in items), Decimal("0"))
    shipping = Decimal("0") if subtotal >= free_shipping_threshold else flat_shipping_fee
    tax = round_currency(subtotal * tax_rate)
    # Points redeem whole units only, so a fractional subtotal caps the discount at its floor.
    points_used = min(loyalty_points_requested, int(subtotal.to_integral_value(rounding=ROUND_FLOOR)))
    discount = Decimal(points_used)
    total = subtotal + tax + shipping - discount
    if total < 0:
        raise ValueError(f"Order total cannot be negative: {total}")

    earned = int((total * loyalty_accrual_rate).to_integral_value(rounding=ROUND_FLOOR))

    return PriceQuote(
        pricing=Pricing(subtotal=subtotal, tax=tax, shipping=shipping, discount=discount, total=total),
        loyalty_points_used=points_used,
        loyalty_points_earned=earned,
        coupon_code=coupon_code,
    )
