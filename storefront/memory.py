"""
In-process store implementing the storage port.

Used by the test suite and by STORE_BACKEND=memory for local runs. Every
mutation completes without awaiting in between, so each one is atomic with
respect to other coroutines on the event loop.
"""
import itertools
import uuid
from datetime import date
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from .errors import DuplicateCheckout, DuplicateReturnRequest, ImmutableFieldError, InsufficientInventory, NotFound
from .schemas import (
    IMMUTABLE_ORDER_FIELDS,
    OPEN_RETURN_STATUSES,
    Dispute,
    Order,
    OrderDraft,
    OrderEvent,
    OrderStatus,
    PaymentStatus,
    Product,
    ReturnRequest,
    ReturnStatus,
    Shipment,
    ShipmentStatus,
    TrackingEvent,
    utcnow,
)


class InMemoryStore:
    """Dict-backed store. One instance per application, never module-global."""

    def __init__(self, clock: Callable = utcnow):
        self.clock = clock
        self.products: Dict[str, Product] = {}
        self.orders: Dict[str, Order] = {}
        self.events: Dict[str, List[OrderEvent]] = {}
        self.returns: Dict[str, ReturnRequest] = {}
        self.shipments: Dict[str, Shipment] = {}
        self.disputes: Dict[str, Dispute] = {}
        self.processed_webhooks: Set[str] = set()
        self._event_ids = itertools.count(1)
        self._tracking_ids = itertools.count(1)

    async def create_all(self) -> None:
        return None

    async def close(self) -> None:
        return None

    # Inventory ledger

    async def upsert_product(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    async def reserve_inventory(self, product_id: str, quantity: int) -> int:
        product = self.products.get(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        if product.stock < quantity:
            raise InsufficientInventory(product_id, quantity, product.stock)
        self.products[product_id] = product.model_copy(update={"stock": product.stock - quantity})
        return product.stock - quantity

    async def restore_inventory(self, product_id: str, quantity: int) -> int:
        product = self.products.get(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        self.products[product_id] = product.model_copy(update={"stock": product.stock + quantity})
        return product.stock + quantity

    # Orders

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        return {pid: self.products[pid] for pid in product_ids if pid in self.products}

    async def create_order(self, draft: OrderDraft) -> Order:
        if draft.checkout_token and self._find_order(checkout_token=draft.checkout_token):
            raise DuplicateCheckout(draft.checkout_token)
        if self._find_order(order_number=draft.order_number):
            raise ValueError(f"Order number {draft.order_number} already exists")

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            order_number=draft.order_number,
            user_id=draft.user_id,
            guest_email=draft.guest_email,
            contact_email=draft.contact_email,
            status=OrderStatus.PENDING,
            currency=draft.currency,
            subtotal=draft.totals.subtotal,
            shipping_cost=draft.totals.shipping_cost,
            tax=draft.totals.tax,
            discount=draft.totals.discount,
            total=draft.totals.total,
            shipping_address=draft.shipping_address,
            billing_address=draft.billing_address,
            shipping_method=draft.shipping_method,
            discount_code=draft.discount_code,
            notes=draft.notes,
            checkout_token=draft.checkout_token,
            items=list(draft.items),
            created_at=now,
            updated_at=now,
        )
        self.orders[order.id] = order
        self._append_event(order.id, "created", f"Order created with status '{order.status.value}'",
                           new_value=order.status.value, user_id=draft.user_id)
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        return self._find_order(payment_intent_id=payment_intent_id)

    async def get_order_by_checkout_token(self, checkout_token: str) -> Optional[Order]:
        return self._find_order(checkout_token=checkout_token)

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
        sort: str = "created_at",
        descending: bool = True,
    ) -> List[Order]:
        orders = list(self.orders.values())
        if user_id is not None:
            orders = [o for o in orders if o.user_id == user_id]
        if status is not None:
            orders = [o for o in orders if o.status == status]
        if search:
            needle = search.lower()
            orders = [
                o for o in orders
                if needle in o.order_number.lower() or needle in (o.guest_email or "").lower()
            ]
        key = "total" if sort == "total" else "created_at"
        orders.sort(key=lambda o: getattr(o, key), reverse=descending)
        return orders[skip:skip + limit]

    async def list_orders_for_user(self, user_id: str) -> List[Order]:
        return await self.list_orders(user_id=user_id, limit=10000)

    async def transition_status(
        self,
        order_id: str,
        from_statuses: Sequence[OrderStatus],
        to_status: OrderStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        order = self._require_order(order_id)
        if order.status not in from_statuses:
            return None
        update = {"status": to_status, "updated_at": self.clock()}
        if to_status == OrderStatus.CANCELLED and reason:
            update["cancellation_reason"] = reason
        updated = order.model_copy(update=update)
        self.orders[order_id] = updated
        description = f"Status changed from '{order.status.value}' to '{to_status.value}'"
        if reason:
            description = f"{description}: {reason}"
        self._append_event(order_id, "status_changed", description,
                           old_value=order.status.value, new_value=to_status.value, user_id=actor_id)
        return updated

    async def attach_payment_intent(self, order_id: str, payment_intent_id: str) -> Order:
        return self._update_order(order_id, payment_intent_id=payment_intent_id,
                                  payment_status=PaymentStatus.REQUIRES_PAYMENT)

    async def set_payment_status(self, order_id: str, payment_status: PaymentStatus) -> Order:
        return self._update_order(order_id, payment_status=payment_status)

    async def set_estimated_delivery(self, order_id: str, estimated_delivery: date) -> Order:
        return self._update_order(order_id, estimated_delivery=estimated_delivery)

    async def flag_dispute(self, order_id: str) -> bool:
        order = self._require_order(order_id)
        if order.disputed:
            return False
        self.orders[order_id] = order.model_copy(update={"disputed": True})
        return True

    async def add_order_event(
        self,
        order_id: str,
        event_type: str,
        description: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> OrderEvent:
        return self._append_event(order_id, event_type, description, old_value, new_value, user_id)

    async def list_order_events(self, order_id: str) -> List[OrderEvent]:
        return list(self.events.get(order_id, []))

    # Returns

    async def create_return_request(self, order_id: str, user_id: str, reason: str) -> ReturnRequest:
        existing = await self.get_open_return_request(order_id)
        if existing is not None:
            raise DuplicateReturnRequest(order_id, existing.status.value)
        now = self.clock()
        request = ReturnRequest(
            id=str(uuid.uuid4()),
            order_id=order_id,
            user_id=user_id,
            reason=reason,
            status=ReturnStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.returns[request.id] = request
        return request

    async def get_return_request(self, return_id: str) -> Optional[ReturnRequest]:
        return self.returns.get(return_id)

    async def get_open_return_request(self, order_id: str) -> Optional[ReturnRequest]:
        for request in self.returns.values():
            if request.order_id == order_id and request.status in OPEN_RETURN_STATUSES:
                return request
        return None

    async def transition_return_request(
        self,
        return_id: str,
        from_status: ReturnStatus,
        to_status: ReturnStatus,
    ) -> Optional[ReturnRequest]:
        request = self.returns.get(return_id)
        if request is None:
            raise NotFound("Return request", return_id)
        if request.status != from_status:
            return None
        updated = request.model_copy(update={"status": to_status, "updated_at": self.clock()})
        self.returns[return_id] = updated
        return updated

    # Shipments

    async def create_shipment(
        self,
        order_id: str,
        carrier: str,
        tracking_number: str,
        service_type: Optional[str] = None,
        estimated_delivery: Optional[date] = None,
    ) -> Shipment:
        self._require_order(order_id)
        now = self.clock()
        shipment = Shipment(
            id=str(uuid.uuid4()),
            order_id=order_id,
            carrier=carrier,
            tracking_number=tracking_number,
            service_type=service_type,
            status=ShipmentStatus.PENDING,
            estimated_delivery=estimated_delivery,
            created_at=now,
            updated_at=now,
        )
        self.shipments[shipment.id] = shipment
        return shipment

    async def get_shipment(self, shipment_id: str) -> Optional[Shipment]:
        return self.shipments.get(shipment_id)

    async def get_shipment_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        for shipment in self.shipments.values():
            if shipment.tracking_number == tracking_number:
                return shipment
        return None

    async def list_shipments(self, order_id: str) -> List[Shipment]:
        shipments = [s for s in self.shipments.values() if s.order_id == order_id]
        return sorted(shipments, key=lambda s: s.created_at, reverse=True)

    async def append_tracking_event(self, shipment_id: str, event: TrackingEvent) -> Shipment:
        shipment = self.shipments.get(shipment_id)
        if shipment is None:
            raise NotFound("Shipment", shipment_id)
        stored = event.model_copy(update={"id": next(self._tracking_ids), "shipment_id": shipment_id})
        events = sorted([*shipment.events, stored], key=lambda e: e.timestamp)
        updated = shipment.model_copy(
            update={"events": events, "status": event.status, "updated_at": self.clock()}
        )
        self.shipments[shipment_id] = updated
        return updated

    # Disputes and webhooks

    async def record_dispute(self, dispute: Dispute) -> bool:
        if dispute.id in self.disputes:
            return False
        self.disputes[dispute.id] = dispute
        return True

    async def has_processed_webhook(self, event_id: str) -> bool:
        return event_id in self.processed_webhooks

    async def mark_webhook_processed(self, event_id: str, event_type: str) -> None:
        self.processed_webhooks.add(event_id)

    # Helpers

    def _find_order(self, **criteria) -> Optional[Order]:
        for order in self.orders.values():
            if all(getattr(order, key) == value for key, value in criteria.items()):
                return order
        return None

    def _require_order(self, order_id: str) -> Order:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    def _update_order(self, order_id: str, **changes) -> Order:
        for field in changes:
            if field in IMMUTABLE_ORDER_FIELDS:
                raise ImmutableFieldError(field)
        order = self._require_order(order_id)
        updated = order.model_copy(update={**changes, "updated_at": self.clock()})
        self.orders[order_id] = updated
        return updated

    def _append_event(
        self,
        order_id: str,
        event_type: str,
        description: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> OrderEvent:
        event = OrderEvent(
            id=next(self._event_ids),
            order_id=order_id,
            event_type=event_type,
            description=description,
            old_value=old_value,
            new_value=new_value,
            user_id=user_id,
            created_at=self.clock(),
        )
        self.events.setdefault(order_id, []).append(event)
        return event
