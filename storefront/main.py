"""
Storefront Orders API

FastAPI application exposing checkout, the order lifecycle and the payment
gateway webhook. All order-status changes go through OrderStateMachine; route
handlers only authenticate, validate input and translate results.

Endpoints:
    POST /checkout: Turn a cart into a pending order and payment intent (guests allowed)
    POST /checkout/{order_id}/confirm: Re-check payment status with the gateway
    GET /orders: List orders (filters: status, search, pagination, sort)
    GET /orders/{order_id}: Get a single order
    GET /orders/{order_id}/timeline: Order event history
    POST /orders/{order_id}/cancel: Cancel a pending or processing order
    POST /orders/{order_id}/return: Request a return for a delivered order
    POST /orders/{order_id}/reorder: Build a new cart from a past order
    PATCH /orders/{order_id}/status: Admin status change
    POST /returns/{return_id}/approve|reject|complete: Admin return handling
    GET, POST /orders/{order_id}/shipments: List or create shipments
    POST /shipments/{shipment_id}/events: Record a carrier tracking event
    GET /tracking/{tracking_number}: Public tracking lookup
    POST /webhooks/stripe: Signed payment gateway events

Attributes:
    app (FastAPI): Application built from environment settings
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse

from . import auth
from .clients.payment_client import PaymentGateway, SimulatedGateway, StripeGateway
from .config import Settings
from .crud import SqlStore
from .database import build_engine, build_session_factory
from .errors import StorefrontError
from .memory import InMemoryStore
from .notifications import NotificationDispatcher
from .repository import Store
from .schemas import (
    CancelRequest,
    CancelResponse,
    CheckoutRequest,
    CheckoutResponse,
    Order,
    OrderEvent,
    OrderStatus,
    ReorderResponse,
    ReturnCreate,
    ReturnRequest,
    ReturnResponse,
    Shipment,
    ShipmentCreate,
    StatusUpdate,
    TrackingEventCreate,
    WebhookResult,
    utcnow,
)
from .state_machine import OrderStateMachine
from .webhooks import WebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter()


def build_store(settings: Settings) -> Store:
    """Pick the storage backend named by STORE_BACKEND."""
    if settings.store_backend == "memory":
        logger.warning("Using the in-memory store; data is lost on restart")
        return InMemoryStore()
    if settings.store_backend != "sql":
        raise ValueError(f"Unknown store backend: {settings.store_backend}")
    engine = build_engine(settings.database_url)
    return SqlStore(engine, build_session_factory(engine))


def build_gateway(settings: Settings) -> PaymentGateway:
    if settings.stripe_secret_key:
        return StripeGateway(settings.stripe_secret_key)
    logger.warning("STRIPE_SECRET_KEY is not set; using the simulated payment gateway")
    return SimulatedGateway()


def build_notifier(settings: Settings) -> NotificationDispatcher:
    return NotificationDispatcher(
        email_api_url=settings.email_api_url,
        email_api_key=settings.email_api_key,
        email_from=settings.email_from,
        operator_email=settings.operator_email,
        webhook_urls=settings.webhook_urls,
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[Store] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[NotificationDispatcher] = None,
    clock: Callable = utcnow,
) -> FastAPI:
    """
    Build the application and its collaborators.

    Args:
        settings: Runtime settings (default: read from the environment)
        store: Storage backend (default: chosen by settings.store_backend)
        gateway: Payment gateway (default: Stripe if a key is configured)
        notifier: Notification dispatcher (default: built from settings)
        clock: Current-time source for the state machine

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = store or build_store(settings)
    gateway = gateway or build_gateway(settings)
    notifier = notifier or build_notifier(settings)
    machine = OrderStateMachine(store, gateway, notifier, settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create database tables
        await store.create_all()
        yield
        await store.close()

    app = FastAPI(title="storefront-orders", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.machine = machine
    app.state.webhooks = WebhookProcessor(machine, store, settings.stripe_webhook_secret)

    @app.exception_handler(StorefrontError)
    async def storefront_error_handler(request: Request, exc: StorefrontError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    app.include_router(router)
    return app


def get_machine(request: Request) -> OrderStateMachine:
    return request.app.state.machine


def get_webhooks(request: Request) -> WebhookProcessor:
    return request.app.state.webhooks


# Checkout

@router.post("/checkout", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    checkout_request: CheckoutRequest,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
):
    """
    Create a pending order from a cart and start payment.

    Signed-in customers own the order; anonymous callers must supply a guest
    email. Retrying with the same checkout_token returns the same order.

    Returns:
        The order, plus the payment intent id and client secret for the payment page

    Raises:
        HTTPException: 400 on validation failure, 409 on insufficient stock,
            502 if the payment gateway is unavailable
    """
    return await machine.checkout(checkout_request, current_user)


@router.post("/checkout/{order_id}/confirm", response_model=Order)
async def confirm_checkout(
    order_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """Apply the gateway's current payment status to the order (the webhook does the same)."""
    return await machine.confirm_payment(order_id, current_user)


# Orders

@router.get("/orders", response_model=List[Order])
async def list_orders(
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, max_length=100),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    sort: str = Query("created_at", pattern="^(created_at|total)$"),
    order: str = Query("desc", pattern="^(asc|desc)$"),
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    List orders (customers see their own, admins see all).

    Args:
        status_filter: Only orders in this status
        search: Substring of the order number or guest email
        skip: Number of records to skip (default: 0)
        limit: Maximum number of records to return (default: 100)
        sort: created_at or total
        order: asc or desc
    """
    return await machine.list_orders(
        current_user,
        status=status_filter,
        search=search,
        skip=skip,
        limit=limit,
        sort=sort,
        descending=order == "desc",
    )


@router.get("/orders/{order_id}", response_model=Order)
async def get_order(
    order_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return await machine.get_order(order_id, current_user)


@router.get("/orders/{order_id}/timeline", response_model=List[OrderEvent])
async def get_order_timeline(
    order_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """Get the order's event history, oldest first."""
    return await machine.timeline(order_id, current_user)


@router.post("/orders/{order_id}/cancel", response_model=CancelResponse)
async def cancel_order(
    order_id: str,
    cancel_request: Optional[CancelRequest] = None,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Cancel an order (owner or admin).

    Restores inventory and cancels or refunds the payment. A payment-gateway
    failure does not block the cancellation.

    Raises:
        HTTPException: 404 if not found, 409 if the order can no longer be cancelled
    """
    reason = cancel_request.reason if cancel_request else None
    cancelled = await machine.cancel(order_id, current_user, reason)
    return CancelResponse(
        message="Order cancelled successfully",
        order_id=cancelled.id,
        status=cancelled.status,
    )


@router.post("/orders/{order_id}/return", response_model=ReturnResponse, status_code=status.HTTP_201_CREATED)
async def request_return(
    order_id: str,
    return_request: ReturnCreate,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Request a return for a delivered order (owner only).

    Raises:
        HTTPException: 400 if the reason is empty or the return window has passed,
            404 if not found, 409 if not delivered or a return is already open
    """
    created = await machine.request_return(order_id, current_user, return_request.reason)
    return ReturnResponse(
        message="Return request submitted successfully",
        return_request_id=created.id,
        status=created.status,
    )


@router.post("/orders/{order_id}/reorder", response_model=ReorderResponse)
async def reorder(
    order_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return ReorderResponse(cart=await machine.reorder(order_id, current_user))


@router.patch("/orders/{order_id}/status", response_model=Order)
async def update_order_status(
    order_id: str,
    status_update: StatusUpdate,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Change an order's status (admin only), subject to the transition table.

    Raises:
        HTTPException: 403 if not admin, 404 if not found, 409 if the transition is illegal
    """
    return await machine.update_status(order_id, status_update.status, current_user, status_update.reason)


# Returns

@router.post("/returns/{return_id}/approve", response_model=ReturnRequest)
async def approve_return(
    return_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return await machine.approve_return(return_id, current_user)


@router.post("/returns/{return_id}/reject", response_model=ReturnRequest)
async def reject_return(
    return_id: str,
    reason: Optional[str] = Query(None, max_length=500),
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return await machine.reject_return(return_id, current_user, reason)


@router.post("/returns/{return_id}/complete", response_model=ReturnRequest)
async def complete_return(
    return_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """Mark returned goods as received; restocks the order's items."""
    return await machine.complete_return(return_id, current_user)


# Shipments

@router.get("/orders/{order_id}/shipments", response_model=List[Shipment])
async def list_shipments(
    order_id: str,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    return await machine.list_shipments(order_id, current_user)


@router.post("/orders/{order_id}/shipments", response_model=Shipment, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    order_id: str,
    shipment: ShipmentCreate,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Create a shipment, or a reship for an order that already has one (admin only).

    A tracking number is generated in the carrier's format if none is given.
    """
    return await machine.create_shipment(order_id, shipment, current_user)


@router.post("/shipments/{shipment_id}/events", response_model=Shipment, status_code=status.HTTP_201_CREATED)
async def add_tracking_event(
    shipment_id: str,
    event: TrackingEventCreate,
    machine: OrderStateMachine = Depends(get_machine),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    return await machine.record_tracking_event(shipment_id, event, current_user)


@router.get("/tracking/{tracking_number}", response_model=Shipment)
async def track_shipment(tracking_number: str, machine: OrderStateMachine = Depends(get_machine)):
    return await machine.track(tracking_number)


# Webhooks

@router.post("/webhooks/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    processor: WebhookProcessor = Depends(get_webhooks),
):
    """
    Receive a signed payment gateway event.

    Raises:
        HTTPException: 400 if the signature does not verify (no state change)
    """
    payload = await request.body()
    return await processor.process(payload, stripe_signature)


app = create_app()
