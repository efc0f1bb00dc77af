"""Pytest fixtures for storefront tests."""
import asyncio
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from storefront.clients.payment_client import SimulatedGateway
from storefront.config import Settings
from storefront.errors import GatewayError
from storefront.memory import InMemoryStore
from storefront.notifications import NotificationDispatcher
from storefront.schemas import (
    Actor,
    Address,
    CartItem,
    Carrier,
    CheckoutRequest,
    Product,
    ShipmentCreate,
    ShipmentStatus,
    TrackingEventCreate,
)
from storefront.state_machine import OrderStateMachine

WEBHOOK_SECRET = "whsec_test_secret"


class FakeClock:
    """Settable clock; call it to get the current time."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeGateway(SimulatedGateway):
    """Simulated gateway with switchable failures."""

    def __init__(self):
        super().__init__()
        self.fail_create = False
        self.fail_cancel = False
        self.hang_cancel = False
        self.cancel_calls = []

    async def create_payment_intent(self, amount, currency, metadata, idempotency_key=None):
        if self.fail_create:
            raise GatewayError("Your card was declined.", code="card_declined")
        return await super().create_payment_intent(amount, currency, metadata, idempotency_key)

    async def cancel_payment_intent(self, intent_id):
        self.cancel_calls.append(intent_id)
        if self.fail_cancel:
            raise GatewayError("Network error talking to the gateway", code="api_connection_error")
        if self.hang_cancel:
            await asyncio.Event().wait()
        return await super().cancel_payment_intent(intent_id)


class RecordingNotifier(NotificationDispatcher):
    """Dispatcher that records every notification instead of sending it."""

    def __init__(self):
        super().__init__()
        self.sent = []

    async def dispatch(self, event, payload, recipient=None, notify_operators=False):
        self.sent.append({
            "event": event,
            "payload": payload,
            "recipient": recipient,
            "operators": notify_operators,
        })
        return True

    def events(self):
        return [n["event"] for n in self.sent]


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a gateway-style signature header: t=<ts>,v1=<hmac>."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode("utf-8")


PRODUCTS = [
    Product(id="P1", name="Widget", price=Decimal("10.00"), stock=5),
    Product(id="P2", name="Gadget", price=Decimal("25.50"), stock=10),
    Product(id="LAST", name="Last One", price=Decimal("5.00"), stock=1),
]


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        stripe_webhook_secret=WEBHOOK_SECRET,
        tax_rate=Decimal("0.08"),
        discount_codes={"WELCOME10": Decimal("10")},
    )


@pytest.fixture
def store(clock):
    """In-memory store seeded with the test catalog."""
    store = InMemoryStore(clock=clock)
    for product in PRODUCTS:
        store.products[product.id] = product
    return store


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def machine(store, gateway, notifier, settings, clock):
    return OrderStateMachine(store, gateway, notifier, settings, clock=clock)


@pytest.fixture
def customer():
    return Actor(id="user-1", email="alice@example.com", role="customer")


@pytest.fixture
def other_customer():
    return Actor(id="user-2", email="bob@example.com", role="customer")


@pytest.fixture
def admin():
    return Actor(id="admin-1", email="admin@example.com", role="admin")


@pytest.fixture
def address():
    return Address(
        name="Alice Example",
        line1="1 Main St",
        city="Springfield",
        state="IL",
        postal_code="62701",
        country="US",
    )


@pytest.fixture
def checkout_request(address):
    """Build a CheckoutRequest from a {product_id: quantity} cart."""
    def build(cart=None, **overrides):
        cart = cart or {"P1": 2}
        return CheckoutRequest(
            items=[CartItem(product_id=pid, quantity=qty) for pid, qty in cart.items()],
            shipping_address=address,
            **overrides,
        )
    return build


@pytest.fixture
def place_order(machine, customer, checkout_request):
    """Check out a cart for the default customer and return the order."""
    async def place(cart=None, actor=None, **overrides):
        response = await machine.checkout(checkout_request(cart, **overrides), actor or customer)
        return response.order
    return place


@pytest.fixture
def deliver(machine, admin):
    """Drive an order through shipment, transit and delivery."""
    async def run(order):
        shipment = await machine.create_shipment(order.id, ShipmentCreate(carrier=Carrier.UPS), admin)
        await machine.record_tracking_event(
            shipment.id, TrackingEventCreate(status=ShipmentStatus.IN_TRANSIT, description="Departed facility"), admin
        )
        await machine.record_tracking_event(
            shipment.id, TrackingEventCreate(status=ShipmentStatus.DELIVERED, description="Delivered"), admin
        )
        return await machine.store.get_order(order.id)
    return run
