"""
Business-rule validation for the storefront order service.

Provides checks beyond schema validation: cart contents, guest contact details,
monetary snapshot consistency and legal order-status transitions.
"""
import re
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from .schemas import CartItem, OrderStatus, Totals

MAX_CART_LINES = 100
MAX_LINE_QUANTITY = 10000
MIN_CHARGE = Decimal("0.50")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Legal order-status transitions. Terminal states map to nothing.
ORDER_TRANSITIONS: Dict[OrderStatus, Tuple[OrderStatus, ...]] = {
    OrderStatus.PENDING: (OrderStatus.PROCESSING, OrderStatus.CANCELLED),
    OrderStatus.PROCESSING: (OrderStatus.SHIPPED, OrderStatus.CANCELLED),
    OrderStatus.SHIPPED: (OrderStatus.DELIVERED,),
    OrderStatus.DELIVERED: (OrderStatus.RETURNED,),
    OrderStatus.CANCELLED: (),
    OrderStatus.RETURNED: (),
}


def validate_cart_items(items: List[CartItem]) -> Tuple[bool, str]:
    """
    Validate cart items for business rules.

    Args:
        items: List of cart items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Cart must contain at least one item"

    if len(items) > MAX_CART_LINES:
        return False, f"Cart cannot contain more than {MAX_CART_LINES} items"

    # A cart is a keyed quantity map
    product_ids = [item.product_id for item in items]
    if len(product_ids) != len(set(product_ids)):
        return False, "Cart contains duplicate products"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.product_id}: quantity must be positive"

        if item.quantity > MAX_LINE_QUANTITY:
            return False, f"Item {item.product_id}: quantity exceeds maximum ({MAX_LINE_QUANTITY})"

    return True, ""


def validate_contact_email(email: Optional[str]) -> Tuple[bool, str]:
    if not email or not email.strip():
        return False, "A contact email is required for guest checkout"
    if not _EMAIL_RE.match(email.strip()):
        return False, f"Invalid contact email: {email}"
    return True, ""


def validate_order_total(totals: Totals) -> Tuple[bool, str]:
    """
    Validate that a monetary snapshot is internally consistent and chargeable.

    Args:
        totals: Computed order totals

    Returns:
        Tuple of (is_valid, error_message)
    """
    expected = totals.subtotal + totals.shipping_cost + totals.tax - totals.discount
    if expected != totals.total:
        return False, f"Order total mismatch: calculated ${expected}, got ${totals.total}"

    if totals.total < MIN_CHARGE:
        return False, f"Order total must be at least ${MIN_CHARGE}"

    return True, ""


def validate_order_status_transition(old_status: str, new_status: str) -> Tuple[bool, str]:
    """
    Validate that a status transition is allowed.

    Args:
        old_status: Current order status
        new_status: Requested order status

    Returns:
        Tuple of (is_valid, error_message)
    """
    try:
        old = OrderStatus(old_status)
    except ValueError:
        return False, f"Unknown status: {old_status}"

    try:
        new = OrderStatus(new_status)
    except ValueError:
        return False, f"Unknown status: {new_status}"

    if new not in ORDER_TRANSITIONS[old]:
        return False, f"Invalid status transition: {old.value} -> {new.value}"

    return True, ""


def sources_for(new_status: OrderStatus) -> Tuple[OrderStatus, ...]:
    """Statuses from which an order may move to new_status."""
    return tuple(old for old, targets in ORDER_TRANSITIONS.items() if new_status in targets)


def validate_return_reason(reason: Optional[str]) -> Tuple[bool, str]:
    if not reason or not reason.strip():
        return False, "Return reason is required"
    return True, ""
