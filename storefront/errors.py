"""Exceptions raised by the order core, each mapped to an HTTP status."""
from typing import Optional


class StorefrontError(Exception):
    """Base exception for all storefront order errors."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFound(StorefrontError):
    """Raised when an order, return or shipment is missing or not owned by the caller."""

    status_code = 404

    def __init__(self, entity: str = "Order", entity_id: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class InvalidTransition(StorefrontError):
    """Raised when a requested status change violates the order state machine."""

    status_code = 409

    def __init__(self, message: str, current: Optional[str] = None, requested: Optional[str] = None):
        self.current = current
        self.requested = requested
        super().__init__(message)


class InsufficientInventory(StorefrontError):
    """Raised when a stock reservation cannot be satisfied."""

    status_code = 409

    def __init__(self, product_id: str, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient inventory for product '{product_id}'. Requested: {requested}"
        if available is not None:
            msg = f"{msg}, available: {available}"
        super().__init__(msg)


class InvalidSignature(StorefrontError):
    """Raised when a webhook payload fails its authenticity check."""

    status_code = 400

    def __init__(self, reason: str = "Invalid webhook signature"):
        super().__init__(reason)


class DuplicateReturnRequest(StorefrontError):
    """Raised when an open return request already exists for the order."""

    status_code = 409

    def __init__(self, order_id: str, existing_status: str):
        self.order_id = order_id
        self.existing_status = existing_status
        super().__init__(
            f"A return request already exists for this order with status: {existing_status}"
        )


class ReturnWindowExpired(StorefrontError):
    """Raised when a return is requested after the return window closed."""

    status_code = 400

    def __init__(self, window_days: int):
        self.window_days = window_days
        super().__init__(
            f"Return window has expired. Returns must be requested within {window_days} days of the order."
        )


class GatewayError(StorefrontError):
    """Raised when a payment-gateway call fails. Wraps the upstream error."""

    status_code = 502

    def __init__(self, message: str, code: Optional[str] = None, original: Optional[BaseException] = None):
        self.code = code
        self.original = original
        super().__init__(message)


class InvalidRequest(StorefrontError):
    """Raised when input fails a business rule (empty cart, blank reason, ...)."""

    status_code = 400


class DuplicateCheckout(StorefrontError):
    """Raised by a store when a checkout token is already bound to an order."""

    status_code = 409

    def __init__(self, checkout_token: str):
        self.checkout_token = checkout_token
        super().__init__(f"Checkout '{checkout_token}' already created an order")


class ImmutableFieldError(StorefrontError):
    """Raised when a write touches a field that is fixed at order creation."""

    status_code = 500

    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Order field '{field}' cannot change after creation")
