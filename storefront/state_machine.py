"""
Order state machine.

The only component allowed to change an order's status. Every transition goes
through the store's compare-and-set `transition_status`, so side effects that
must happen once (inventory restoration, confirmation notices) run only for
the caller that actually moved the order.

Legal transitions:
    pending    -> processing  (payment succeeded, first shipment)
    pending    -> cancelled   (customer cancel, payment failed/canceled)
    processing -> cancelled   (customer cancel, payment failed/canceled)
    processing -> shipped     (tracking update, admin)
    shipped    -> delivered   (tracking update, admin)
    delivered  -> returned    (approved return request)
"""
import asyncio
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from .clients.carriers import generate_tracking_number
from .clients.payment_client import PaymentGateway
from .config import Settings
from .errors import (
    DuplicateCheckout,
    DuplicateReturnRequest,
    GatewayError,
    InvalidRequest,
    InvalidTransition,
    NotFound,
    ReturnWindowExpired,
)
from .inventory import reserve_items, restore_items, rollback_reservations
from .notifications import NotificationDispatcher
from .pricing import compute_totals, estimate_delivery, resolve_discount, to_minor_units
from .repository import Store
from .schemas import (
    Actor,
    CheckoutRequest,
    CheckoutResponse,
    Dispute,
    Order,
    OrderDraft,
    OrderEvent,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    ReturnRequest,
    ReturnStatus,
    Shipment,
    ShipmentCreate,
    ShipmentStatus,
    TrackingEvent,
    TrackingEventCreate,
    utcnow,
)
from .validators import (
    sources_for,
    validate_cart_items,
    validate_contact_email,
    validate_order_status_transition,
    validate_order_total,
    validate_return_reason,
)

logger = logging.getLogger(__name__)

CANCELLABLE_STATUSES = sources_for(OrderStatus.CANCELLED)
SHIPPABLE_STATUSES = (
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

# Order status implied by a carrier scan
TRACKING_ORDER_STATUS = {
    ShipmentStatus.IN_TRANSIT: OrderStatus.SHIPPED,
    ShipmentStatus.OUT_FOR_DELIVERY: OrderStatus.SHIPPED,
    ShipmentStatus.DELIVERED: OrderStatus.DELIVERED,
}

# Position along the fulfilment path, used to recognise late carrier scans
FULFILMENT_RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PROCESSING: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.RETURNED: 4,
}

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(now: datetime) -> str:
    """Human-readable order number, e.g. ORD-20240115-7KQ2ZD."""
    suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
    return f"ORD-{now:%Y%m%d}-{suffix}"


class OrderStateMachine:
    """
    Sole authority for order-status transitions and their side effects.

    Args:
        store: Storage backend (inventory ledger + order repository)
        gateway: Payment gateway adapter
        notifier: Notification dispatcher; failures never propagate
        settings: Runtime settings (tax rate, discount codes, return window)
        clock: Returns the current UTC time; injectable for tests
    """

    def __init__(
        self,
        store: Store,
        gateway: PaymentGateway,
        notifier: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    @property
    def return_window(self) -> timedelta:
        return timedelta(days=self.settings.return_window_days)

    # Reads

    async def get_order(self, order_id: str, actor: Actor) -> Order:
        return await self._load(order_id, actor)

    async def list_orders(
        self,
        actor: Actor,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
        sort: str = "created_at",
        descending: bool = True,
    ) -> List[Order]:
        """Customers see their own orders; admins see all."""
        user_id = None if actor.is_privileged else actor.id
        return await self.store.list_orders(
            user_id=user_id,
            status=status,
            search=search,
            skip=skip,
            limit=limit,
            sort=sort,
            descending=descending,
        )

    async def timeline(self, order_id: str, actor: Actor) -> List[OrderEvent]:
        order = await self._load(order_id, actor)
        return await self.store.list_order_events(order.id)

    async def list_shipments(self, order_id: str, actor: Actor) -> List[Shipment]:
        order = await self._load(order_id, actor)
        return await self.store.list_shipments(order.id)

    async def track(self, tracking_number: str) -> Shipment:
        shipment = await self.store.get_shipment_by_tracking_number(tracking_number)
        if shipment is None:
            raise NotFound("Shipment", tracking_number)
        return shipment

    async def reorder(self, order_id: str, actor: Actor) -> Dict[str, int]:
        """Copy a past order's line items into a fresh cart (product -> quantity)."""
        order = await self._load(order_id, actor)
        cart: Dict[str, int] = {}
        for item in order.items:
            cart[item.product_id] = cart.get(item.product_id, 0) + item.quantity
        return cart

    # Checkout

    async def checkout(self, request: CheckoutRequest, actor: Optional[Actor] = None) -> CheckoutResponse:
        """
        Turn a cart into a pending order with reserved inventory and a payment intent.

        Args:
            request: Cart, addresses and shipping choice
            actor: Signed-in customer, or None for guest checkout

        Returns:
            The order plus the payment intent's id and client secret

        Raises:
            InvalidRequest: cart or contact details fail validation
            NotFound: a product does not exist
            InsufficientInventory: a line cannot be reserved (nothing stays reserved)
            GatewayError: the payment intent could not be created (order is cancelled)
            InvalidTransition: the checkout token belongs to an order that was cancelled
        """
        is_valid, error_message = validate_cart_items(request.items)
        if not is_valid:
            raise InvalidRequest(error_message)

        if actor is None:
            is_valid, error_message = validate_contact_email(request.guest_email)
            if not is_valid:
                raise InvalidRequest(error_message)
            user_id, guest_email = None, request.guest_email.strip().lower()
            contact_email = guest_email
        else:
            user_id, guest_email, contact_email = actor.id, None, actor.email

        if request.checkout_token:
            existing = await self.store.get_order_by_checkout_token(request.checkout_token)
            if existing is not None:
                return await self._resume_checkout(existing, user_id, guest_email)

        products = await self.store.get_products(item.product_id for item in request.items)
        items = []
        for cart_item in request.items:
            product = products.get(cart_item.product_id)
            if product is None:
                raise NotFound("Product", cart_item.product_id)
            items.append(OrderItem(
                product_id=product.id,
                quantity=cart_item.quantity,
                unit_price=product.price,
            ))

        discount_code, discount_percent = resolve_discount(request.discount_code, self.settings.discount_codes)
        if request.discount_code and discount_code is None:
            raise InvalidRequest(f"Invalid discount code: {request.discount_code}")

        totals = compute_totals(items, request.shipping_method, self.settings.tax_rate, discount_percent)
        is_valid, error_message = validate_order_total(totals)
        if not is_valid:
            raise InvalidRequest(error_message)

        reserved = await reserve_items(self.store, items)

        draft = OrderDraft(
            order_number=generate_order_number(self.clock()),
            user_id=user_id,
            guest_email=guest_email,
            contact_email=contact_email,
            currency=self.settings.currency,
            totals=totals,
            items=items,
            shipping_address=request.shipping_address,
            billing_address=request.billing_address,
            shipping_method=request.shipping_method,
            discount_code=discount_code,
            notes=request.notes,
            checkout_token=request.checkout_token,
        )
        try:
            order = await self.store.create_order(draft)
        except DuplicateCheckout:
            # A concurrent retry won the race; give our reservation back
            await rollback_reservations(self.store, reserved)
            existing = await self.store.get_order_by_checkout_token(request.checkout_token)
            if existing is None:
                raise
            return await self._resume_checkout(existing, user_id, guest_email)
        except Exception:
            await rollback_reservations(self.store, reserved)
            raise

        logger.info(f"Created order {order.order_number} ({order.id}) total {order.total} {order.currency}")

        try:
            intent = await self.gateway.create_payment_intent(
                amount=to_minor_units(order.total),
                currency=order.currency,
                metadata={"order_id": order.id, "order_number": order.order_number},
                idempotency_key=f"order-{order.id}",
            )
        except GatewayError as e:
            logger.error(f"Payment intent creation failed for order {order.id}: {e}")
            await self._cancel(order, "Payment could not be initiated", actor_id=None, cancel_payment=False)
            raise

        order = await self.store.attach_payment_intent(order.id, intent.id)
        await self.store.add_order_event(
            order.id, "payment_attached", "Payment intent created", new_value=intent.id, user_id=user_id
        )
        return CheckoutResponse(order=order, payment_intent_id=intent.id, client_secret=intent.client_secret)

    async def _resume_checkout(
        self, order: Order, user_id: Optional[str], guest_email: Optional[str]
    ) -> CheckoutResponse:
        if order.user_id != user_id or order.guest_email != guest_email:
            raise DuplicateCheckout(order.checkout_token)
        if order.status == OrderStatus.CANCELLED:
            raise InvalidTransition(
                f"Checkout {order.checkout_token} ended with cancelled order {order.order_number}; "
                f"start a new checkout",
                current=order.status.value,
            )
        logger.info(f"Checkout token {order.checkout_token} already created order {order.id}")
        client_secret = None
        if order.payment_intent_id:
            intent = await self.gateway.retrieve_payment_intent(order.payment_intent_id)
            client_secret = intent.client_secret
        return CheckoutResponse(order=order, payment_intent_id=order.payment_intent_id, client_secret=client_secret)

    # Payment

    async def confirm_payment(self, order_id: str, actor: Actor) -> Order:
        """
        Ask the gateway for the intent's status and apply it, as the webhook would.

        Safe to race with the webhook: both go through the same guarded transition.
        """
        order = await self._load(order_id, actor)
        if not order.payment_intent_id:
            raise InvalidRequest("Order has no payment in progress")

        intent = await self.gateway.retrieve_payment_intent(order.payment_intent_id)
        if intent.status == "succeeded":
            await self.mark_payment_succeeded(order)
        elif intent.status == "canceled":
            await self.fail_payment(order, PaymentStatus.CANCELED, "Payment was canceled")
        return await self._require(order.id)

    async def mark_payment_succeeded(self, order: Order) -> Optional[Order]:
        """
        Move a pending order to processing after payment.

        Returns:
            The updated order, or None when the order was no longer pending
        """
        updated = await self.store.transition_status(
            order.id, (OrderStatus.PENDING,), OrderStatus.PROCESSING, reason="Payment succeeded"
        )
        if updated is None:
            current = await self._require(order.id)
            if current.status == OrderStatus.CANCELLED:
                await self._reconcile_late_payment(current)
            elif current.payment_status != PaymentStatus.SUCCEEDED:
                await self.store.set_payment_status(order.id, PaymentStatus.SUCCEEDED)
            logger.info(f"Payment success for order {order.id} ignored; status is '{current.status.value}'")
            return None

        updated = await self.store.set_payment_status(order.id, PaymentStatus.SUCCEEDED)
        logger.info(f"Order {order.id} paid; now processing")
        await self.notifier.order_confirmation(updated)
        return updated

    async def fail_payment(self, order: Order, payment_status: PaymentStatus, reason: str) -> Optional[Order]:
        """
        Cancel an order whose payment failed or was cancelled upstream.

        Returns:
            The cancelled order, or None when it was not cancellable (repeat event)
        """
        cancelled = await self._cancel(order, reason, actor_id=None, cancel_payment=False)
        if cancelled is None:
            logger.info(f"Payment failure for order {order.id} ignored; order is not cancellable")
            return None
        return await self.store.set_payment_status(order.id, payment_status)

    async def flag_dispute(self, dispute: Dispute) -> bool:
        """
        Record a chargeback and flag its order. Order status is unchanged.

        Returns:
            False if this dispute had already been recorded
        """
        order = None
        if dispute.payment_intent_id:
            order = await self.store.get_order_by_payment_intent(dispute.payment_intent_id)
        if order is not None:
            dispute = dispute.model_copy(update={"order_id": order.id})

        recorded = await self.store.record_dispute(dispute)
        if order is None:
            logger.warning(f"Dispute {dispute.id} does not match any order")
        elif await self.store.flag_dispute(order.id):
            await self.store.add_order_event(
                order.id, "disputed", f"Payment disputed: {dispute.reason or 'no reason given'}",
                new_value=dispute.id,
            )
        if recorded:
            await self.notifier.dispute_created(order, dispute)
        return recorded

    # Cancellation

    async def cancel(self, order_id: str, actor: Actor, reason: Optional[str] = None) -> Order:
        """
        Cancel an order on behalf of its owner (or an admin).

        Args:
            order_id: Order to cancel
            actor: Acting user
            reason: Optional free-text reason

        Returns:
            The cancelled order

        Raises:
            NotFound: order missing or not owned by the actor
            InvalidTransition: order is not pending or processing
        """
        order = await self._load(order_id, actor)
        if order.status not in CANCELLABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot cancel order with status '{order.status.value}'. "
                f"Only pending or processing orders can be cancelled.",
                current=order.status.value,
                requested=OrderStatus.CANCELLED.value,
            )

        reason = (reason or "").strip() or "Cancelled by customer"
        cancelled = await self._cancel(order, reason, actor_id=actor.id, cancel_payment=True)
        if cancelled is None:
            current = await self._require(order.id)
            raise InvalidTransition(
                f"Cannot cancel order with status '{current.status.value}'. "
                f"Only pending or processing orders can be cancelled.",
                current=current.status.value,
                requested=OrderStatus.CANCELLED.value,
            )
        return cancelled

    async def _cancel(
        self, order: Order, reason: str, actor_id: Optional[str], cancel_payment: bool
    ) -> Optional[Order]:
        updated = await self.store.transition_status(
            order.id, CANCELLABLE_STATUSES, OrderStatus.CANCELLED, actor_id=actor_id, reason=reason
        )
        if updated is None:
            return None

        restored = await restore_items(self.store, updated.items)
        logger.info(f"Cancelled order {order.id}: {reason} (restored {restored} lines)")

        if cancel_payment and updated.payment_intent_id:
            updated = await self._release_payment(updated) or updated

        await self.notifier.order_cancelled(updated, reason)
        return updated

    async def _release_payment(self, order: Order) -> Optional[Order]:
        """
        Cancel the order's payment intent, or refund it if it already captured.

        The gateway call is bounded by `settings.payment_cancel_timeout`; a
        failure or timeout is logged and leaves the payment status untouched.

        Returns:
            The order with its new payment status, or None if the gateway call failed
        """
        try:
            outcome = await asyncio.wait_for(
                self.gateway.cancel_payment_intent(order.payment_intent_id),
                self.settings.payment_cancel_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Timed out cancelling payment {order.payment_intent_id} for order {order.id} "
                f"after {self.settings.payment_cancel_timeout}s"
            )
            return None
        except Exception as e:
            logger.error(f"Failed to cancel payment {order.payment_intent_id} for order {order.id}: {e}")
            return None
        payment_status = PaymentStatus.REFUNDED if outcome == "refunded" else PaymentStatus.CANCELED
        return await self.store.set_payment_status(order.id, payment_status)

    async def _reconcile_late_payment(self, order: Order) -> None:
        """A payment captured after its order was cancelled is refunded and reported to operators."""
        if order.payment_status == PaymentStatus.REFUNDED:
            logger.info(f"Payment for cancelled order {order.id} already refunded")
            return
        logger.warning(f"Payment succeeded for cancelled order {order.id}; refunding")
        released = None
        if order.payment_intent_id:
            released = await self._release_payment(order)
        if released is None:
            detail = "Payment succeeded after cancellation; automatic refund failed"
        else:
            order = released
            detail = f"Payment succeeded after cancellation; payment {released.payment_status.value}"
        await self.store.add_order_event(
            order.id, "payment_reconciliation", detail, new_value=order.payment_intent_id
        )
        await self.notifier.payment_reconciliation(order, detail)

    # Returns

    async def request_return(self, order_id: str, actor: Actor, reason: str) -> ReturnRequest:
        """
        File a return request for a delivered order.

        Raises:
            InvalidRequest: reason is empty
            NotFound: order missing or not owned by the actor
            InvalidTransition: order is not delivered
            ReturnWindowExpired: more than the return window since order creation
            DuplicateReturnRequest: an open return request already exists
        """
        is_valid, error_message = validate_return_reason(reason)
        if not is_valid:
            raise InvalidRequest(error_message)

        order = await self.store.get_order(order_id)
        if order is None or not order.owned_by(actor.id):
            raise NotFound("Order", order_id)

        if order.status != OrderStatus.DELIVERED:
            raise InvalidTransition(
                f"Only delivered orders can be returned. Current status: {order.status.value}",
                current=order.status.value,
                requested=OrderStatus.RETURNED.value,
            )

        if self.clock() > order.created_at + self.return_window:
            raise ReturnWindowExpired(self.settings.return_window_days)

        existing = await self.store.get_open_return_request(order.id)
        if existing is not None:
            raise DuplicateReturnRequest(order.id, existing.status.value)

        request = await self.store.create_return_request(order.id, actor.id, reason.strip())
        await self.store.add_order_event(
            order.id, "return_requested", f"Return requested: {request.reason}",
            new_value=request.id, user_id=actor.id,
        )
        logger.info(f"Return request {request.id} filed for order {order.id}")
        await self.notifier.return_request_created(order, request)
        return request

    async def approve_return(self, return_id: str, actor: Actor) -> ReturnRequest:
        """Approve a pending return; the order moves delivered -> returned."""
        request = await self._require_return(return_id)
        order = await self._require(request.order_id)

        if request.status != ReturnStatus.PENDING:
            raise InvalidTransition(
                f"Return request is already {request.status.value}",
                current=request.status.value,
                requested=ReturnStatus.APPROVED.value,
            )
        if order.status != OrderStatus.DELIVERED:
            raise InvalidTransition(
                f"Only delivered orders can be returned. Current status: {order.status.value}",
                current=order.status.value,
                requested=OrderStatus.RETURNED.value,
            )
        if request.created_at > order.created_at + self.return_window:
            raise ReturnWindowExpired(self.settings.return_window_days)

        approved = await self.store.transition_return_request(
            request.id, ReturnStatus.PENDING, ReturnStatus.APPROVED
        )
        if approved is None:
            raise InvalidTransition("Return request was already processed")

        returned = await self.store.transition_status(
            order.id, (OrderStatus.DELIVERED,), OrderStatus.RETURNED,
            actor_id=actor.id, reason="Return approved",
        )
        if returned is None:
            await self.store.transition_return_request(request.id, ReturnStatus.APPROVED, ReturnStatus.PENDING)
            raise InvalidTransition("Order changed while the return was being approved")
        logger.info(f"Return request {request.id} approved; order {order.id} returned")
        return approved

    async def reject_return(self, return_id: str, actor: Actor, reason: Optional[str] = None) -> ReturnRequest:
        request = await self._require_return(return_id)
        rejected = await self.store.transition_return_request(
            request.id, ReturnStatus.PENDING, ReturnStatus.REJECTED
        )
        if rejected is None:
            raise InvalidTransition(
                f"Return request is already {request.status.value}",
                current=request.status.value,
                requested=ReturnStatus.REJECTED.value,
            )
        description = "Return rejected"
        if reason:
            description = f"{description}: {reason}"
        await self.store.add_order_event(
            request.order_id, "return_rejected", description, new_value=request.id, user_id=actor.id
        )
        return rejected

    async def complete_return(self, return_id: str, actor: Actor) -> ReturnRequest:
        """Mark returned goods as received and put them back into stock, once."""
        request = await self._require_return(return_id)
        completed = await self.store.transition_return_request(
            request.id, ReturnStatus.APPROVED, ReturnStatus.COMPLETED
        )
        if completed is None:
            raise InvalidTransition(
                f"Only approved returns can be completed. Current status: {request.status.value}",
                current=request.status.value,
                requested=ReturnStatus.COMPLETED.value,
            )
        order = await self._require(request.order_id)
        await restore_items(self.store, order.items)
        await self.store.add_order_event(
            order.id, "return_completed", "Returned items received and restocked",
            new_value=request.id, user_id=actor.id,
        )
        return completed

    # Admin status changes

    async def update_status(
        self, order_id: str, new_status: OrderStatus, actor: Actor, reason: Optional[str] = None
    ) -> Order:
        """
        Apply an admin status change, subject to the transition table.

        Cancellation goes through the same path as a customer cancel; `returned`
        is reachable only by approving a return request.
        """
        order = await self._require(order_id)
        if new_status == order.status:
            raise InvalidTransition(
                f"Order is already '{order.status.value}'",
                current=order.status.value,
                requested=new_status.value,
            )

        is_valid, error_message = validate_order_status_transition(order.status.value, new_status.value)
        if not is_valid:
            raise InvalidTransition(error_message, current=order.status.value, requested=new_status.value)

        if new_status == OrderStatus.RETURNED:
            raise InvalidTransition(
                "Orders are returned by approving a return request",
                current=order.status.value,
                requested=new_status.value,
            )

        if new_status == OrderStatus.CANCELLED:
            updated = await self._cancel(order, reason or "Cancelled by admin", actor_id=actor.id, cancel_payment=True)
        else:
            updated = await self.store.transition_status(
                order.id, (order.status,), new_status, actor_id=actor.id, reason=reason
            )
        if updated is None:
            raise InvalidTransition(
                "Order status changed concurrently; reload and retry",
                current=order.status.value,
                requested=new_status.value,
            )
        return updated

    # Shipments

    async def create_shipment(self, order_id: str, data: ShipmentCreate, actor: Actor) -> Shipment:
        """
        Create a shipment (or a reship) for an order.

        The first shipment of a pending order moves it to processing. A tracking
        number is generated in the carrier's format when none is supplied.
        """
        order = await self._require(order_id)
        if order.status not in SHIPPABLE_STATUSES:
            raise InvalidTransition(
                f"Cannot create a shipment for an order with status '{order.status.value}'",
                current=order.status.value,
            )

        tracking_number = data.tracking_number or generate_tracking_number(data.carrier)
        if await self.store.get_shipment_by_tracking_number(tracking_number) is not None:
            raise InvalidRequest(f"Tracking number {tracking_number} is already in use")

        estimated = data.estimated_delivery or estimate_delivery(order.shipping_method, self.clock().date())
        shipment = await self.store.create_shipment(
            order.id,
            data.carrier.value,
            tracking_number,
            service_type=data.service_type or order.shipping_method.value,
            estimated_delivery=estimated,
        )
        shipment = await self.store.append_tracking_event(shipment.id, TrackingEvent(
            shipment_id=shipment.id,
            timestamp=self.clock(),
            status=ShipmentStatus.PENDING,
            description="Shipment created",
        ))
        await self.store.set_estimated_delivery(order.id, estimated)

        if order.status == OrderStatus.PENDING:
            await self.store.transition_status(
                order.id, (OrderStatus.PENDING,), OrderStatus.PROCESSING,
                actor_id=actor.id, reason="Shipment created",
            )
        await self.store.add_order_event(
            order.id, "shipment_created",
            f"Shipment created with {data.carrier.value.upper()} ({tracking_number})",
            new_value=tracking_number, user_id=actor.id,
        )
        logger.info(f"Shipment {shipment.id} created for order {order.id}: {tracking_number}")
        await self.notifier.shipment_created(order, shipment)
        return shipment

    async def record_tracking_event(self, shipment_id: str, data: TrackingEventCreate, actor: Actor) -> Shipment:
        """
        Append a carrier scan and advance the order when the scan implies it.

        Scans never move an order backwards: a late in-transit scan on a delivered
        order is recorded without a transition. Skipping a step (processing
        straight to delivered) is rejected before anything is written.
        """
        shipment = await self.store.get_shipment(shipment_id)
        if shipment is None:
            raise NotFound("Shipment", shipment_id)
        order = await self._require(shipment.order_id)

        advance_to = None
        target = TRACKING_ORDER_STATUS.get(data.status)
        if target is not None and order.status != target:
            rank = FULFILMENT_RANK.get(order.status)
            if rank is not None and rank > FULFILMENT_RANK[target]:
                logger.info(f"Late '{data.status.value}' scan for order {order.id} ({order.status.value})")
            else:
                is_valid, error_message = validate_order_status_transition(order.status.value, target.value)
                if not is_valid:
                    raise InvalidTransition(error_message, current=order.status.value, requested=target.value)
                advance_to = target

        shipment = await self.store.append_tracking_event(shipment.id, TrackingEvent(
            shipment_id=shipment.id,
            timestamp=data.timestamp or self.clock(),
            status=data.status,
            description=data.description,
            location=data.location,
        ))
        if advance_to is not None:
            advanced = await self.store.transition_status(
                order.id, (order.status,), advance_to,
                actor_id=actor.id, reason=f"Tracking update: {data.description}",
            )
            if advanced is None:
                logger.warning(
                    f"Order {order.id} changed from '{order.status.value}' before the "
                    f"'{data.status.value}' scan on shipment {shipment.id} could advance it to '{advance_to.value}'"
                )
        return shipment

    # Helpers

    async def _require(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def _load(self, order_id: str, actor: Actor) -> Order:
        """Fetch an order the actor may see; someone else's order is reported as missing."""
        order = await self.store.get_order(order_id)
        if order is None or not (actor.is_privileged or order.owned_by(actor.id)):
            raise NotFound("Order", order_id)
        return order

    async def _require_return(self, return_id: str) -> ReturnRequest:
        request = await self.store.get_return_request(return_id)
        if request is None:
            raise NotFound("Return request", return_id)
        return request
