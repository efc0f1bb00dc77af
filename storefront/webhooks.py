"""
Payment gateway webhook processing.

Events are verified against the shared signing secret before anything is
trusted, then dispatched by type to the order state machine. Two layers make
redelivery harmless: a ledger of processed event ids, and the state machine's
guarded transitions for deliveries that race past the ledger check.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe

from .errors import InvalidRequest, InvalidSignature
from .repository import OrderRepository
from .schemas import Dispute, PaymentStatus, WebhookResult
from .state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"
DISPUTE_CREATED = "charge.dispute.created"

DEFAULT_TOLERANCE = 300


class WebhookProcessor:
    """
    Verify and apply signed gateway events.

    Args:
        machine: Order state machine
        store: Repository holding the processed-event ledger
        signing_secret: Shared webhook secret
        tolerance: Maximum age of a signature timestamp, in seconds
    """

    def __init__(
        self,
        machine: OrderStateMachine,
        store: OrderRepository,
        signing_secret: str,
        tolerance: int = DEFAULT_TOLERANCE,
    ):
        self.machine = machine
        self.store = store
        self.signing_secret = signing_secret
        self.tolerance = tolerance
        self.handlers: Dict[str, Callable[[Dict[str, Any]], Awaitable[str]]] = {
            PAYMENT_SUCCEEDED: self._payment_succeeded,
            PAYMENT_FAILED: self._payment_failed,
            PAYMENT_CANCELED: self._payment_canceled,
            DISPUTE_CREATED: self._dispute_created,
        }

    def verify(self, payload: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Check the signature and decode the event envelope.

        Raises:
            InvalidSignature: missing, malformed, stale or wrong signature
            InvalidRequest: signature is valid but the body is not an event
        """
        if not self.signing_secret:
            raise InvalidSignature("Webhook signing secret is not configured")
        if not signature_header:
            raise InvalidSignature("Missing webhook signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Rejected webhook with a body that is not UTF-8")
            raise InvalidSignature("Webhook payload is not valid UTF-8")
        try:
            stripe.WebhookSignature.verify_header(body, signature_header, self.signing_secret, self.tolerance)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Rejected webhook with bad signature: {e}")
            raise InvalidSignature(f"Invalid webhook signature: {e}")

        try:
            event = json.loads(body)
        except ValueError:
            raise InvalidRequest("Webhook payload is not valid JSON")
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidRequest("Webhook payload is not an event")
        return event

    async def process(self, payload: bytes, signature_header: Optional[str]) -> WebhookResult:
        """
        Verify, dispatch and record one delivery.

        An event id already in the ledger is acknowledged without effect. Handler
        errors propagate (the gateway retries) and leave the event unrecorded.
        """
        event = self.verify(payload, signature_header)
        event_id = event.get("id")
        event_type = event["type"]

        if event_id and await self.store.has_processed_webhook(event_id):
            logger.info(f"Webhook event {event_id} ({event_type}) already processed")
            return WebhookResult(event_id=event_id, event_type=event_type, handled=False,
                                 detail="Event already processed")

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled webhook event type: {event_type}")
            handled, detail = False, "Unhandled event type"
        else:
            obj = (event.get("data") or {}).get("object") or {}
            handled, detail = True, await handler(obj)

        if event_id:
            await self.store.mark_webhook_processed(event_id, event_type)
        return WebhookResult(event_id=event_id, event_type=event_type, handled=handled, detail=detail)

    # Handlers

    async def _payment_succeeded(self, intent: Dict[str, Any]) -> str:
        order = await self.store.get_order_by_payment_intent(intent.get("id", ""))
        if order is None:
            logger.warning(f"No order for payment intent {intent.get('id')}")
            return "No matching order"
        updated = await self.machine.mark_payment_succeeded(order)
        return "Order is processing" if updated else "No change"

    async def _payment_failed(self, intent: Dict[str, Any]) -> str:
        order = await self.store.get_order_by_payment_intent(intent.get("id", ""))
        if order is None:
            logger.warning(f"No order for payment intent {intent.get('id')}")
            return "No matching order"
        error = intent.get("last_payment_error") or {}
        reason = f"Payment failed: {error.get('message') or 'card declined'}"
        cancelled = await self.machine.fail_payment(order, PaymentStatus.FAILED, reason)
        return "Order cancelled" if cancelled else "No change"

    async def _payment_canceled(self, intent: Dict[str, Any]) -> str:
        order = await self.store.get_order_by_payment_intent(intent.get("id", ""))
        if order is None:
            logger.warning(f"No order for payment intent {intent.get('id')}")
            return "No matching order"
        reason = f"Payment canceled upstream: {intent.get('cancellation_reason') or 'no reason given'}"
        cancelled = await self.machine.fail_payment(order, PaymentStatus.CANCELED, reason)
        return "Order cancelled" if cancelled else "No change"

    async def _dispute_created(self, dispute: Dict[str, Any]) -> str:
        due_by = (dispute.get("evidence_details") or {}).get("due_by")
        record = Dispute(
            id=dispute.get("id", ""),
            charge_id=dispute.get("charge"),
            payment_intent_id=dispute.get("payment_intent"),
            amount=dispute.get("amount") or 0,
            currency=dispute.get("currency") or "usd",
            reason=dispute.get("reason"),
            status=dispute.get("status") or "needs_response",
            evidence_due_by=datetime.fromtimestamp(due_by, tz=timezone.utc) if due_by else None,
            created_at=self.machine.clock(),
        )
        recorded = await self.machine.flag_dispute(record)
        return "Dispute recorded" if recorded else "Dispute already recorded"
