"""
Relational store for the storefront order service.

This module contains all database operations behind the storage port:
atomic inventory updates, order persistence, return requests, shipments,
disputes and the processed-webhook ledger.
"""
import logging
import uuid
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import models, schemas
from .database import Base
from .errors import DuplicateCheckout, DuplicateReturnRequest, ImmutableFieldError, InsufficientInventory, NotFound
from .schemas import IMMUTABLE_ORDER_FIELDS, OPEN_RETURN_STATUSES, OrderStatus, PaymentStatus, ReturnStatus, utcnow

# Set up logging
logger = logging.getLogger(__name__)


class SqlStore:
    """
    SQLAlchemy implementation of the inventory ledger and order repository.

    Each method runs in its own transaction.
    """

    def __init__(self, engine, session_factory: async_sessionmaker):
        self.engine = engine
        self.session_factory = session_factory

    async def create_all(self) -> None:
        """Create database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # Inventory ledger

    async def upsert_product(self, product: schemas.Product) -> schemas.Product:
        async with self.session_factory() as session, session.begin():
            await session.merge(models.Product(
                id=product.id, name=product.name, price=product.price, stock=product.stock
            ))
        return product

    async def reserve_inventory(self, product_id: str, quantity: int) -> int:
        """
        Reserve stock with a single conditional UPDATE.

        Args:
            product_id: Product to reserve
            quantity: Units to take

        Returns:
            New stock level

        Raises:
            InsufficientInventory: fewer than quantity units left
            NotFound: unknown product
        """
        stmt = (
            update(models.Product)
            .where(models.Product.id == product_id, models.Product.stock >= quantity)
            .values(stock=models.Product.stock - quantity)
            .returning(models.Product.stock)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session, session.begin():
            new_stock = (await session.execute(stmt)).scalar_one_or_none()
            if new_stock is not None:
                return new_stock
            current = await session.scalar(
                select(models.Product.stock).where(models.Product.id == product_id)
            )
        if current is None:
            raise NotFound("Product", product_id)
        raise InsufficientInventory(product_id, quantity, current)

    async def restore_inventory(self, product_id: str, quantity: int) -> int:
        stmt = (
            update(models.Product)
            .where(models.Product.id == product_id)
            .values(stock=models.Product.stock + quantity)
            .returning(models.Product.stock)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as session, session.begin():
            new_stock = (await session.execute(stmt)).scalar_one_or_none()
        if new_stock is None:
            raise NotFound("Product", product_id)
        return new_stock

    # Orders

    async def get_products(self, product_ids: Iterable[str]) -> Dict[str, schemas.Product]:
        ids = list(product_ids)
        async with self.session_factory() as session:
            rows = (await session.scalars(select(models.Product).where(models.Product.id.in_(ids)))).all()
        return {row.id: schemas.Product.model_validate(row) for row in rows}

    async def create_order(self, draft: schemas.OrderDraft) -> schemas.Order:
        """
        Insert the order, its line items and the "created" event in one transaction.

        Raises:
            DuplicateCheckout: the checkout token already produced an order
        """
        now = utcnow()
        db_order = models.Order(
            id=str(uuid.uuid4()),
            order_number=draft.order_number,
            user_id=draft.user_id,
            guest_email=draft.guest_email,
            contact_email=draft.contact_email,
            status=OrderStatus.PENDING.value,
            currency=draft.currency,
            subtotal=draft.totals.subtotal,
            shipping_cost=draft.totals.shipping_cost,
            tax=draft.totals.tax,
            discount=draft.totals.discount,
            total=draft.totals.total,
            shipping_address=draft.shipping_address.model_dump(),
            billing_address=draft.billing_address.model_dump() if draft.billing_address else None,
            shipping_method=draft.shipping_method.value,
            discount_code=draft.discount_code,
            notes=draft.notes,
            checkout_token=draft.checkout_token,
            disputed=False,
            created_at=now,
            updated_at=now,
            items=[
                models.OrderItem(
                    position=position,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for position, item in enumerate(draft.items)
            ],
        )
        try:
            async with self.session_factory() as session, session.begin():
                session.add(db_order)
                await session.flush()
                session.add(models.OrderEvent(
                    order_id=db_order.id,
                    event_type="created",
                    description="Order created with status 'pending'",
                    new_value=OrderStatus.PENDING.value,
                    user_id=draft.user_id,
                    created_at=now,
                ))
        except IntegrityError:
            if draft.checkout_token and await self.get_order_by_checkout_token(draft.checkout_token):
                raise DuplicateCheckout(draft.checkout_token)
            raise
        return await self._require_order(db_order.id)

    async def get_order(self, order_id: str) -> Optional[schemas.Order]:
        return await self._fetch_order(models.Order.id == order_id)

    async def get_order_by_payment_intent(self, payment_intent_id: str) -> Optional[schemas.Order]:
        return await self._fetch_order(models.Order.payment_intent_id == payment_intent_id)

    async def get_order_by_checkout_token(self, checkout_token: str) -> Optional[schemas.Order]:
        return await self._fetch_order(models.Order.checkout_token == checkout_token)

    async def list_orders(
        self,
        user_id: Optional[str] = None,
        status: Optional[OrderStatus] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
        sort: str = "created_at",
        descending: bool = True,
    ) -> List[schemas.Order]:
        """
        Retrieve orders with filtering and pagination.

        Args:
            user_id: Only this owner's orders
            status: Only orders in this status
            search: Substring of order number or guest email
            skip: Number of records to skip (offset)
            limit: Maximum number of records to return
            sort: "created_at" or "total"
            descending: Sort direction

        Returns:
            List of Order objects
        """
        query = select(models.Order)
        if user_id is not None:
            query = query.where(models.Order.user_id == user_id)
        if status is not None:
            query = query.where(models.Order.status == OrderStatus(status).value)
        if search:
            pattern = f"%{search}%"
            query = query.where(or_(
                models.Order.order_number.ilike(pattern),
                models.Order.guest_email.ilike(pattern),
            ))
        column = models.Order.total if sort == "total" else models.Order.created_at
        query = query.order_by(column.desc() if descending else column.asc()).offset(skip).limit(limit)
        async with self.session_factory() as session:
            rows = (await session.scalars(query)).all()
        return [schemas.Order.model_validate(row) for row in rows]

    async def list_orders_for_user(self, user_id: str) -> List[schemas.Order]:
        return await self.list_orders(user_id=user_id, limit=10000)

    async def transition_status(
        self,
        order_id: str,
        from_statuses: Sequence[OrderStatus],
        to_status: OrderStatus,
        actor_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Optional[schemas.Order]:
        """
        Compare-and-set an order's status and log the change to its timeline.

        Returns:
            Updated order, or None if the order was not in one of from_statuses
        """
        allowed = {OrderStatus(s).value for s in from_statuses}
        async with self.session_factory() as session, session.begin():
            current = await session.scalar(select(models.Order.status).where(models.Order.id == order_id))
            if current is None:
                raise NotFound("Order", order_id)
            if current not in allowed:
                return None

            values = {"status": to_status.value, "updated_at": utcnow()}
            if to_status == OrderStatus.CANCELLED and reason:
                values["cancellation_reason"] = reason
            result = await session.execute(
                update(models.Order)
                .where(models.Order.id == order_id, models.Order.status == current)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Lost the race to a concurrent transition
                return None

            description = f"Status changed from '{current}' to '{to_status.value}'"
            if reason:
                description = f"{description}: {reason}"
            session.add(models.OrderEvent(
                order_id=order_id,
                event_type="status_changed",
                description=description,
                old_value=current,
                new_value=to_status.value,
                user_id=actor_id,
            ))
        return await self._require_order(order_id)

    async def attach_payment_intent(self, order_id: str, payment_intent_id: str) -> schemas.Order:
        return await self._update_order(
            order_id,
            payment_intent_id=payment_intent_id,
            payment_status=PaymentStatus.REQUIRES_PAYMENT.value,
        )

    async def set_payment_status(self, order_id: str, payment_status: PaymentStatus) -> schemas.Order:
        return await self._update_order(order_id, payment_status=PaymentStatus(payment_status).value)

    async def set_estimated_delivery(self, order_id: str, estimated_delivery: date) -> schemas.Order:
        return await self._update_order(order_id, estimated_delivery=estimated_delivery)

    async def flag_dispute(self, order_id: str) -> bool:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(models.Order)
                .where(models.Order.id == order_id, models.Order.disputed.is_(False))
                .values(disputed=True)
                .execution_options(synchronize_session=False)
            )
        return result.rowcount > 0

    async def add_order_event(
        self,
        order_id: str,
        event_type: str,
        description: str,
        old_value: Optional[str] = None,
        new_value: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> schemas.OrderEvent:
        """
        Log an order event to the timeline.

        Args:
            order_id: Order identifier
            event_type: Type of event (e.g., "payment_attached", "disputed")
            description: Human-readable description
            old_value: Previous value (optional)
            new_value: New value (optional)
            user_id: Actor that triggered the event (optional)
        """
        event = models.OrderEvent(
            order_id=order_id,
            event_type=event_type,
            description=description,
            old_value=old_value,
            new_value=new_value,
            user_id=user_id,
            created_at=utcnow(),
        )
        async with self.session_factory() as session, session.begin():
            session.add(event)
            await session.flush()
            return schemas.OrderEvent.model_validate(event)

    async def list_order_events(self, order_id: str) -> List[schemas.OrderEvent]:
        async with self.session_factory() as session:
            rows = (await session.scalars(
                select(models.OrderEvent)
                .where(models.OrderEvent.order_id == order_id)
                .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
            )).all()
        return [schemas.OrderEvent.model_validate(row) for row in rows]

    # Returns

    async def create_return_request(self, order_id: str, user_id: str, reason: str) -> schemas.ReturnRequest:
        existing = await self.get_open_return_request(order_id)
        if existing is not None:
            raise DuplicateReturnRequest(order_id, existing.status.value)

        now = utcnow()
        row = models.ReturnRequest(
            id=str(uuid.uuid4()),
            order_id=order_id,
            user_id=user_id,
            reason=reason,
            status=ReturnStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.session_factory() as session, session.begin():
                session.add(row)
        except IntegrityError:
            # A concurrent request won the open-return unique index
            existing = await self.get_open_return_request(order_id)
            raise DuplicateReturnRequest(order_id, existing.status.value if existing else ReturnStatus.PENDING.value)
        return schemas.ReturnRequest.model_validate(row)

    async def get_return_request(self, return_id: str) -> Optional[schemas.ReturnRequest]:
        async with self.session_factory() as session:
            row = await session.get(models.ReturnRequest, return_id)
        return schemas.ReturnRequest.model_validate(row) if row else None

    async def get_open_return_request(self, order_id: str) -> Optional[schemas.ReturnRequest]:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(models.ReturnRequest).where(
                    models.ReturnRequest.order_id == order_id,
                    models.ReturnRequest.status.in_([s.value for s in OPEN_RETURN_STATUSES]),
                )
            )
        return schemas.ReturnRequest.model_validate(row) if row else None

    async def transition_return_request(
        self,
        return_id: str,
        from_status: ReturnStatus,
        to_status: ReturnStatus,
    ) -> Optional[schemas.ReturnRequest]:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(models.ReturnRequest)
                .where(models.ReturnRequest.id == return_id, models.ReturnRequest.status == from_status.value)
                .values(status=to_status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount > 0
        request = await self.get_return_request(return_id)
        if request is None:
            raise NotFound("Return request", return_id)
        return request if changed else None

    # Shipments

    async def create_shipment(
        self,
        order_id: str,
        carrier: str,
        tracking_number: str,
        service_type: Optional[str] = None,
        estimated_delivery: Optional[date] = None,
    ) -> schemas.Shipment:
        now = utcnow()
        row = models.Shipment(
            id=str(uuid.uuid4()),
            order_id=order_id,
            carrier=schemas.Carrier(carrier).value,
            tracking_number=tracking_number,
            service_type=service_type,
            status=schemas.ShipmentStatus.PENDING.value,
            estimated_delivery=estimated_delivery,
            created_at=now,
            updated_at=now,
        )
        async with self.session_factory() as session, session.begin():
            session.add(row)
        return await self._require_shipment(row.id)

    async def get_shipment(self, shipment_id: str) -> Optional[schemas.Shipment]:
        return await self._fetch_shipment(models.Shipment.id == shipment_id)

    async def get_shipment_by_tracking_number(self, tracking_number: str) -> Optional[schemas.Shipment]:
        return await self._fetch_shipment(models.Shipment.tracking_number == tracking_number)

    async def list_shipments(self, order_id: str) -> List[schemas.Shipment]:
        async with self.session_factory() as session:
            rows = (await session.scalars(
                select(models.Shipment)
                .where(models.Shipment.order_id == order_id)
                .order_by(models.Shipment.created_at.desc())
            )).all()
        return [schemas.Shipment.model_validate(row) for row in rows]

    async def append_tracking_event(self, shipment_id: str, event: schemas.TrackingEvent) -> schemas.Shipment:
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(models.Shipment)
                .where(models.Shipment.id == shipment_id)
                .values(status=event.status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound("Shipment", shipment_id)
            session.add(models.TrackingEvent(
                shipment_id=shipment_id,
                timestamp=event.timestamp,
                status=event.status.value,
                description=event.description,
                location=event.location,
            ))
        return await self._require_shipment(shipment_id)

    # Disputes and webhooks

    async def record_dispute(self, dispute: schemas.Dispute) -> bool:
        try:
            async with self.session_factory() as session, session.begin():
                if await session.get(models.Dispute, dispute.id) is not None:
                    return False
                session.add(models.Dispute(**dispute.model_dump()))
        except IntegrityError:
            return False
        return True

    async def has_processed_webhook(self, event_id: str) -> bool:
        async with self.session_factory() as session:
            return await session.get(models.WebhookEvent, event_id) is not None

    async def mark_webhook_processed(self, event_id: str, event_type: str) -> None:
        try:
            async with self.session_factory() as session, session.begin():
                session.add(models.WebhookEvent(id=event_id, event_type=event_type, processed_at=utcnow()))
        except IntegrityError:
            logger.info(f"Webhook event {event_id} was already marked processed")

    # Helpers

    async def _fetch_order(self, criterion) -> Optional[schemas.Order]:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(models.Order).where(criterion).execution_options(populate_existing=True)
            )
            return schemas.Order.model_validate(row) if row else None

    async def _require_order(self, order_id: str) -> schemas.Order:
        order = await self.get_order(order_id)
        if order is None:
            raise NotFound("Order", order_id)
        return order

    async def _update_order(self, order_id: str, **values) -> schemas.Order:
        for field in values:
            if field in IMMUTABLE_ORDER_FIELDS:
                raise ImmutableFieldError(field)
        values["updated_at"] = utcnow()
        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                update(models.Order)
                .where(models.Order.id == order_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound("Order", order_id)
        return await self._require_order(order_id)

    async def _fetch_shipment(self, criterion) -> Optional[schemas.Shipment]:
        async with self.session_factory() as session:
            row = await session.scalar(
                select(models.Shipment).where(criterion).execution_options(populate_existing=True)
            )
            return schemas.Shipment.model_validate(row) if row else None

    async def _require_shipment(self, shipment_id: str) -> schemas.Shipment:
        shipment = await self.get_shipment(shipment_id)
        if shipment is None:
            raise NotFound("Shipment", shipment_id)
        return shipment
