"""
Storage port for the order core.

The state machine talks to storage only through these two protocols. Two
implementations exist: the SQLAlchemy store in crud.py and the in-process
store in memory.py, selected by configuration.
"""
from datetime import date
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from .schemas import (
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
    TrackingEvent,
)


class InventoryLedger(Protocol):
    """Atomic stock mutations. Never a read-then-write pair."""

    async def reserve_inventory(self, product_id: str, quantity: int) -> int:
        """
        Decrement stock if at least `quantity` units remain.

        Returns:
            New stock level

        Raises:
            InsufficientInventory: stock < quantity
            NotFound: unknown product
        """
        ...

    async def restore_inventory(self, product_id: str, quantity: int) -> int:
        """Unconditionally increment stock; returns the new level."""
        ...


class OrderRepository(Protocol):
    """Persistence of orders, return requests, shipments and their events."""

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, Product]:
        ...

    async def create_order(self, draft: OrderDraft) -> Order:
        """
        Persist an order and its line items in one step; status is `pending`.

        Raises:
            DuplicateCheckout: draft.checkout_token already has an order
        """
        ...

    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Order]:
        ...

    async def get_order_by_checkout_token(self, checkout_token: str) -> Optional[Order]:
        ...

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
        ...

    async def list_orders_for_user(self, user_id: str) -> List[Order]:
        ...

    async def transition_status(
        self,
        order_id: str,
        from_statuses: Sequence[OrderStatus],
        to_status: OrderStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[Order]:
        """
        Compare-and-set the order status and append a status_changed event.

        Returns:
            The updated order, or None when the current status is not in
            from_statuses (someone else got there first).
        """
        ...

    async def attach_payment_intent(self, order_id: str, payment_intent_id: str) -> Order:
        ...

    async def set_payment_status(self, order_id: str, payment_status: PaymentStatus) -> Order:
        ...

    async def set_estimated_delivery(self, order_id: str, estimated_delivery: date) -> Order:
        ...

    async def flag_dispute(self, order_id: str) -> bool:
        """Set the dispute flag; returns False if it was already set."""
        ...

    async def add_order_event(
        self,
        order_id: str,
        event_type: str,
        description: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> OrderEvent:
        ...

    async def list_order_events(self, order_id: str) -> List[OrderEvent]:
        ...

    async def create_return_request(self, order_id: str, user_id: str, reason: str) -> ReturnRequest:
        """
        Raises:
            DuplicateReturnRequest: an open request already exists for the order
        """
        ...

    async def get_return_request(self, return_id: str) -> Optional[ReturnRequest]:
        ...

    async def get_open_return_request(self, order_id: str) -> Optional[ReturnRequest]:
        ...

    async def transition_return_request(
        self,
        return_id: str,
        from_status: ReturnStatus,
        to_status: ReturnStatus,
    ) -> Optional[ReturnRequest]:
        """Compare-and-set a return request status; None if it was not from_status."""
        ...

    async def create_shipment(
        self,
        order_id: str,
        carrier: str,
        tracking_number: str,
        service_type: Optional[str] = None,
        estimated_delivery: Optional[date] = None,
    ) -> Shipment:
        ...

    async def get_shipment(self, shipment_id: str) -> Optional[Shipment]:
        ...

    async def get_shipment_by_tracking_number(self, tracking_number: str) -> Optional[Shipment]:
        ...

    async def list_shipments(self, order_id: str) -> List[Shipment]:
        ...

    async def append_tracking_event(self, shipment_id: str, event: TrackingEvent) -> Shipment:
        """Append an event and move the shipment to the event's status."""
        ...

    async def record_dispute(self, dispute: Dispute) -> bool:
        """Store a dispute; returns False if it was already recorded."""
        ...

    async def has_processed_webhook(self, event_id: str) -> bool:
        ...

    async def mark_webhook_processed(self, event_id: str, event_type: str) -> None:
        ...


class Store(InventoryLedger, OrderRepository, Protocol):
    """A backend providing both the ledger and the repository."""

    async def create_all(self) -> None:
        ...

    async def upsert_product(self, product: Product) -> Product:
        """Catalog seeding; the catalog itself is managed elsewhere."""
        ...

    async def close(self) -> None:
        ...
