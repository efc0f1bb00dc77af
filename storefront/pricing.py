"""
Checkout pricing: shipping rates, delivery estimates, discounts and tax.

Totals are computed once, at order creation, from the products' current prices.
"""
from datetime import date, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional, Tuple

from .schemas import OrderItem, ShippingMethod, Totals

CENT = Decimal("0.01")

SHIPPING_RATES: Dict[ShippingMethod, Decimal] = {
    ShippingMethod.STANDARD: Decimal("0.00"),
    ShippingMethod.EXPRESS: Decimal("9.99"),
    ShippingMethod.OVERNIGHT: Decimal("19.99"),
}

DELIVERY_DAYS: Dict[ShippingMethod, int] = {
    ShippingMethod.STANDARD: 7,
    ShippingMethod.EXPRESS: 3,
    ShippingMethod.OVERNIGHT: 1,
}


def quantize(amount: Decimal) -> Decimal:
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def estimate_delivery(method: ShippingMethod, shipped_on: date) -> date:
    return shipped_on + timedelta(days=DELIVERY_DAYS[method])


def resolve_discount(code: Optional[str], discount_codes: Dict[str, Decimal]) -> Tuple[Optional[str], Decimal]:
    """
    Look up a percent-off discount code.

    Returns:
        Tuple of (normalized code or None, percent off)
    """
    if not code:
        return None, Decimal("0")
    normalized = code.strip().upper()
    percent = discount_codes.get(normalized)
    if percent is None:
        return None, Decimal("0")
    return normalized, percent


def compute_totals(
    items: List[OrderItem],
    method: ShippingMethod,
    tax_rate: Decimal,
    discount_percent: Decimal = Decimal("0"),
) -> Totals:
    """
    Compute the monetary snapshot for an order.

    Tax is charged on the discounted subtotal at tax_rate; shipping is untaxed.
    The total is always subtotal + shipping + tax - discount.
    """
    subtotal = quantize(sum((item.line_total for item in items), Decimal("0")))
    discount = quantize(subtotal * discount_percent / Decimal("100"))
    shipping_cost = SHIPPING_RATES[method]
    tax = quantize((subtotal - discount) * tax_rate)
    total = subtotal + shipping_cost + tax - discount
    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax=tax,
        discount=discount,
        total=total,
    )


def to_minor_units(amount: Decimal) -> int:
    """Convert a decimal amount in major units to integer cents."""
    return int(quantize(amount) * 100)
