"""
SQLAlchemy ORM models for the storefront order service.

Defines the database schema for products (the inventory ledger), orders and
their line items, return requests, shipments, tracking events, disputes and
processed webhook events.
"""
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    event,
    inspect,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from .database import Base
from .errors import ImmutableFieldError
from .schemas import IMMUTABLE_ORDER_FIELDS, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Product(Base):
    """
    Product stock row. Stock only changes through atomic conditional updates.

    Attributes:
        id (str): Product identifier from the catalog
        price (Decimal): Current price; copied into line items at checkout
        stock (int): Units available, never negative
    """
    __tablename__ = "products"
    __table_args__ = (CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),)

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)


class Order(Base):
    """
    Order model representing a customer purchase.

    Attributes:
        id (str): Primary key (UUID)
        order_number (str): Human-readable unique number
        user_id (str): Registered owner; NULL for guest orders
        guest_email (str): Guest owner key; NULL for registered orders
        status (str): pending, processing, shipped, delivered, cancelled, returned
        subtotal/shipping_cost/tax/discount/total (Decimal): Snapshot fixed at creation
        items (list): Line items, fixed at creation
        payment_intent_id (str): Gateway payment intent reference
    """
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NOT NULL AND guest_email IS NULL) OR (user_id IS NULL AND guest_email IS NOT NULL)",
            name="ck_orders_single_owner",
        ),
    )

    id = Column(String, primary_key=True, index=True)
    order_number = Column(String, nullable=False, unique=True, index=True)
    user_id = Column(String, nullable=True, index=True)
    guest_email = Column(String, nullable=True, index=True)
    contact_email = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    currency = Column(String(8), nullable=False, default="usd")
    subtotal = Column(Numeric(10, 2), nullable=False)
    shipping_cost = Column(Numeric(10, 2), nullable=False)
    tax = Column(Numeric(10, 2), nullable=False)
    discount = Column(Numeric(10, 2), nullable=False)
    total = Column(Numeric(10, 2), nullable=False)
    shipping_address = Column(JSONType, nullable=False)
    billing_address = Column(JSONType, nullable=True)
    shipping_method = Column(String, nullable=False, default="standard")
    discount_code = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    payment_intent_id = Column(String, nullable=True, unique=True, index=True)
    payment_status = Column(String, nullable=True)
    checkout_token = Column(String, nullable=True, unique=True)
    cancellation_reason = Column(Text, nullable=True)
    disputed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    estimated_delivery = Column(Date, nullable=True)

    items = relationship(
        "OrderItem",
        order_by="OrderItem.position",
        lazy="selectin",
        cascade="all, delete-orphan",
    )


class OrderItem(Base):
    """Line item: product, quantity and unit price at purchase time."""
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    product_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(10, 2), nullable=False)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        order_id (str): Foreign key to the order
        event_type (str): created, status_changed, payment_attached, disputed, ...
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (str): Actor that triggered the event (optional)
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class ReturnRequest(Base):
    __tablename__ = "return_requests"
    __table_args__ = (
        # At most one open return per order
        Index(
            "uq_return_requests_open_per_order",
            "order_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'approved')"),
            sqlite_where=text("status IN ('pending', 'approved')"),
        ),
    )

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(String, nullable=False, default="pending")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Shipment(Base):
    __tablename__ = "shipments"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=False, index=True)
    carrier = Column(String, nullable=False)
    tracking_number = Column(String, nullable=False, unique=True, index=True)
    service_type = Column(String, nullable=True)
    status = Column(String, nullable=False, default="pending")
    estimated_delivery = Column(Date, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    events = relationship(
        "TrackingEvent",
        order_by="TrackingEvent.timestamp",
        lazy="selectin",
    )


class TrackingEvent(Base):
    """Append-only carrier scan for a shipment."""
    __tablename__ = "tracking_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    shipment_id = Column(String, ForeignKey("shipments.id"), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    status = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    location = Column(String, nullable=True)


class Dispute(Base):
    __tablename__ = "disputes"

    id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    charge_id = Column(String, nullable=True, index=True)
    payment_intent_id = Column(String, nullable=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False, default="usd")
    reason = Column(String, nullable=True)
    status = Column(String, nullable=False)
    evidence_due_by = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class WebhookEvent(Base):
    """Gateway events whose effects have been applied."""
    __tablename__ = "webhook_events"

    id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


@event.listens_for(Order, "before_update")
def _reject_snapshot_changes(mapper, connection, target):
    state = inspect(target)
    for field in IMMUTABLE_ORDER_FIELDS:
        if state.attrs[field].history.has_changes():
            raise ImmutableFieldError(field)


@event.listens_for(OrderItem, "before_update")
def _reject_line_item_changes(mapper, connection, target):
    raise ImmutableFieldError("items")
