"""
Pydantic schemas for the storefront order service.

Entity schemas (Order, ReturnRequest, Shipment, ...) are the result types shared
by the stores and the state machine; request schemas validate API input.
"""
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from stores that drop tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class ReturnStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


# A return request stays open until it is rejected or completed.
OPEN_RETURN_STATUSES = (ReturnStatus.PENDING, ReturnStatus.APPROVED)


# Fixed at order creation; stores reject writes to these
IMMUTABLE_ORDER_FIELDS = (
    "order_number",
    "user_id",
    "guest_email",
    "currency",
    "subtotal",
    "shipping_cost",
    "tax",
    "discount",
    "total",
    "shipping_address",
    "billing_address",
    "shipping_method",
    "discount_code",
    "checkout_token",
    "created_at",
    "items",
)


class ShipmentStatus(str, Enum):
    PENDING = "pending"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"


class Carrier(str, Enum):
    UPS = "ups"
    FEDEX = "fedex"
    USPS = "usps"
    DHL = "dhl"


class ShippingMethod(str, Enum):
    STANDARD = "standard"
    EXPRESS = "express"
    OVERNIGHT = "overnight"


class PaymentStatus(str, Enum):
    REQUIRES_PAYMENT = "requires_payment"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class Actor(BaseModel):
    """Whoever is acting on an order: a signed-in customer, an admin, or the system."""
    id: Optional[str] = None
    email: Optional[str] = None
    role: str = "customer"

    @property
    def is_privileged(self) -> bool:
        return self.role in ("admin", "system")


class Address(BaseModel):
    """Structured postal address captured at checkout."""
    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2)
    phone: Optional[str] = None


class CartItem(BaseModel):
    """Schema for a cart line before checkout."""
    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0, description="Quantity in the cart")


class Product(BaseModel):
    """Catalog product with its current price and stock level."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal = Field(..., ge=0)
    stock: int = Field(0, ge=0)


class OrderItem(BaseModel):
    """Schema for an order line item, fixed at order creation."""
    model_config = ConfigDict(from_attributes=True, frozen=True)

    product_id: str
    quantity: int = Field(..., gt=0)
    unit_price: Decimal = Field(..., ge=0, description="Price per unit at purchase time")

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class Totals(BaseModel):
    """Monetary snapshot of an order."""
    model_config = ConfigDict(frozen=True)

    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal


class OrderDraft(BaseModel):
    """Everything a store needs to persist a new order and its line items."""
    order_number: str
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    contact_email: Optional[str] = None
    currency: str
    totals: Totals
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    discount_code: Optional[str] = None
    notes: Optional[str] = None
    checkout_token: Optional[str] = None


class Order(BaseModel):
    """
    Schema for order results, includes all persisted fields.

    Attributes:
        id (str): Order's unique identifier
        order_number (str): Human-readable number shown to the customer
        user_id (str): Owner, or None for a guest order
        guest_email (str): Contact email for guest orders
        status (OrderStatus): Current order status
        items (List[OrderItem]): Line items at purchase price
        payment_intent_id (str): Gateway payment intent, once a payment attempt began
        disputed (bool): Set when the gateway reports a dispute
    """
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_number: str
    user_id: Optional[str] = None
    guest_email: Optional[str] = None
    contact_email: Optional[str] = None
    status: OrderStatus
    currency: str
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod
    discount_code: Optional[str] = None
    notes: Optional[str] = None
    payment_intent_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    checkout_token: Optional[str] = None
    cancellation_reason: Optional[str] = None
    disputed: bool = False
    items: List[OrderItem] = Field(default_factory=list)
    created_at: UTCDateTime
    updated_at: UTCDateTime
    estimated_delivery: Optional[date] = None

    @property
    def recipient(self) -> Optional[str]:
        """Who customer notifications go to."""
        return self.contact_email or self.guest_email

    def owned_by(self, user_id: Optional[str]) -> bool:
        return user_id is not None and self.user_id == user_id


class OrderEvent(BaseModel):
    """
    Schema for order timeline events.

    Attributes:
        event_type (str): created, status_changed, payment_attached, disputed, ...
        description (str): Human-readable event description
        old_value (str): Previous value (optional)
        new_value (str): New value (optional)
        user_id (str): Actor that triggered the event (optional)
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: str
    event_type: str
    description: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    user_id: Optional[str] = None
    created_at: UTCDateTime


class ReturnRequest(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_id: str
    user_id: str
    reason: str
    status: ReturnStatus
    created_at: UTCDateTime
    updated_at: UTCDateTime


class TrackingEvent(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: Optional[int] = None
    shipment_id: str
    timestamp: UTCDateTime
    status: ShipmentStatus
    description: str
    location: Optional[str] = None


class Shipment(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    order_id: str
    carrier: Carrier
    tracking_number: str
    service_type: Optional[str] = None
    status: ShipmentStatus
    estimated_delivery: Optional[date] = None
    created_at: UTCDateTime
    updated_at: UTCDateTime
    events: List[TrackingEvent] = Field(default_factory=list)


class Dispute(BaseModel):
    """Chargeback reported by the payment gateway."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: Optional[str] = None
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    reason: Optional[str] = None
    status: str = "needs_response"
    evidence_due_by: Optional[UTCDateTime] = None
    created_at: UTCDateTime


class PaymentIntentResult(BaseModel):
    """What the gateway tells us about a payment intent."""
    id: str
    status: str
    amount: int
    currency: str
    client_secret: Optional[str] = None


# Request / response schemas

class CheckoutRequest(BaseModel):
    """Schema for submitting a cart for checkout."""
    items: List[CartItem] = Field(..., description="Cart contents")
    shipping_address: Address
    billing_address: Optional[Address] = None
    shipping_method: ShippingMethod = ShippingMethod.STANDARD
    discount_code: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)
    guest_email: Optional[str] = Field(None, description="Contact email for guest checkout")
    checkout_token: Optional[str] = Field(
        None, max_length=128, description="Client idempotency key; retries return the same order"
    )


class CheckoutResponse(BaseModel):
    order: Order
    payment_intent_id: Optional[str] = None
    client_secret: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CancelResponse(BaseModel):
    message: str
    order_id: str
    status: OrderStatus


class ReturnCreate(BaseModel):
    reason: str = Field(..., max_length=2000)


class ReturnResponse(BaseModel):
    message: str
    return_request_id: str
    status: ReturnStatus


class StatusUpdate(BaseModel):
    """Schema for an admin status change."""
    status: OrderStatus
    reason: Optional[str] = None


class ShipmentCreate(BaseModel):
    carrier: Carrier
    service_type: Optional[str] = None
    tracking_number: Optional[str] = Field(None, min_length=4, max_length=64)
    estimated_delivery: Optional[date] = None


class TrackingEventCreate(BaseModel):
    status: ShipmentStatus
    description: str = Field(..., min_length=1, max_length=500)
    location: Optional[str] = None
    timestamp: Optional[datetime] = None


class ReorderResponse(BaseModel):
    """New cart built from a past order's line items."""
    cart: Dict[str, int]


class WebhookResult(BaseModel):
    event_id: Optional[str] = None
    event_type: str
    handled: bool
    detail: str
