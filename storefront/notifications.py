"""
Notification dispatcher for order events.

Customer notices go to the transactional email service; operator notices go
to the operator email and to every registered operator webhook URL. Delivery
is best-effort: failures are logged and never reach the caller.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .schemas import Dispute, Order, ReturnRequest, Shipment

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order-confirmation"
ORDER_CANCELLED = "order-cancelled"
RETURN_REQUEST_CREATED = "return-request-created"
SHIPMENT_CREATED = "shipment-created"
DISPUTE_CREATED = "dispute-created"
PAYMENT_RECONCILIATION = "payment-reconciliation"


class NotificationDispatcher:
    """
    In-process dispatcher for named notification events.

    Args:
        email_api_url: Email service endpoint; when empty, emails are only logged
        email_api_key: Bearer token for the email service
        email_from: Sender address
        operator_email: Operator inbox for return and dispute notices
        webhook_urls: Operator channel URLs receiving every event
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        email_api_url: str = "",
        email_api_key: str = "",
        email_from: str = "orders@storefront.local",
        operator_email: Optional[str] = None,
        webhook_urls: Optional[List[str]] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.email_api_url = email_api_url
        self.email_api_key = email_api_key
        self.email_from = email_from
        self.operator_email = operator_email
        self.webhook_urls = webhook_urls or []
        self.timeout = timeout
        self.transport = transport

    async def dispatch(
        self,
        event: str,
        payload: Dict[str, Any],
        recipient: Optional[str] = None,
        notify_operators: bool = False,
    ) -> bool:
        """
        Deliver a notification. Never raises.

        Returns:
            True if every delivery attempt succeeded
        """
        try:
            if recipient:
                await self.send_email(event, recipient, payload)
            if notify_operators:
                await self.send_operator(event, payload)
            return True
        except Exception as e:
            logger.error(f"Notification '{event}' for order {payload.get('orderId')} failed: {e}")
            return False

    async def send_email(self, event: str, recipient: str, payload: Dict[str, Any]) -> None:
        if not self.email_api_url:
            logger.info(f"Email service not configured; skipping '{event}' to {recipient}")
            return
        headers = {"Content-Type": "application/json"}
        if self.email_api_key:
            headers["Authorization"] = f"Bearer {self.email_api_key}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                self.email_api_url,
                json={"from": self.email_from, "to": recipient, "template": event, "data": payload},
                headers=headers,
            )
            response.raise_for_status()

    async def send_operator(self, event: str, payload: Dict[str, Any]) -> None:
        if self.operator_email:
            await self.send_email(event, self.operator_email, payload)
        if not self.webhook_urls:
            return
        body = {"event": event, "data": payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            # Send all webhooks concurrently
            await asyncio.gather(
                *(self._send_single_webhook(client, url, body) for url in self.webhook_urls),
                return_exceptions=True,
            )

    async def _send_single_webhook(self, client: httpx.AsyncClient, url: str, body: Dict[str, Any]) -> None:
        try:
            response = await client.post(url, json=body, headers={"Content-Type": "application/json"})
            if response.status_code >= 400:
                logger.warning(f"Operator webhook failed for {url}: HTTP {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Operator webhook error for {url}: {e}")

    # Named events

    async def order_confirmation(self, order: Order) -> bool:
        payload = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "recipient": order.recipient,
            "subtotal": str(order.subtotal),
            "shippingCost": str(order.shipping_cost),
            "tax": str(order.tax),
            "discount": str(order.discount),
            "total": str(order.total),
            "currency": order.currency,
            "items": [
                {"productId": item.product_id, "quantity": item.quantity, "unitPrice": str(item.unit_price)}
                for item in order.items
            ],
        }
        return await self.dispatch(ORDER_CONFIRMATION, payload, recipient=order.recipient)

    async def order_cancelled(self, order: Order, reason: Optional[str] = None) -> bool:
        payload = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "recipient": order.recipient,
            "reason": reason,
        }
        return await self.dispatch(ORDER_CANCELLED, payload, recipient=order.recipient)

    async def return_request_created(self, order: Order, request: ReturnRequest) -> bool:
        payload = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "recipient": self.operator_email,
            "returnRequestId": request.id,
            "reason": request.reason,
        }
        return await self.dispatch(RETURN_REQUEST_CREATED, payload, notify_operators=True)

    async def shipment_created(self, order: Order, shipment: Shipment) -> bool:
        payload = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "recipient": order.recipient,
            "shipmentId": shipment.id,
            "carrier": shipment.carrier.value,
            "trackingNumber": shipment.tracking_number,
            "estimatedDelivery": shipment.estimated_delivery.isoformat() if shipment.estimated_delivery else None,
        }
        return await self.dispatch(SHIPMENT_CREATED, payload, recipient=order.recipient)

    async def dispute_created(self, order: Optional[Order], dispute: Dispute) -> bool:
        payload = {
            "orderId": order.id if order else None,
            "orderNumber": order.order_number if order else None,
            "recipient": self.operator_email,
            "disputeId": dispute.id,
            "amount": dispute.amount,
            "currency": dispute.currency,
            "reason": dispute.reason,
        }
        return await self.dispatch(DISPUTE_CREATED, payload, notify_operators=True)

    async def payment_reconciliation(self, order: Order, detail: str) -> bool:
        payload = {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "recipient": self.operator_email,
            "paymentIntentId": order.payment_intent_id,
            "paymentStatus": order.payment_status.value if order.payment_status else None,
            "total": str(order.total),
            "currency": order.currency,
            "detail": detail,
        }
        return await self.dispatch(PAYMENT_RECONCILIATION, payload, notify_operators=True)
