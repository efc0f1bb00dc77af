"""
Payment gateway clients.

StripeGateway wraps the processor's payment-intent API and translates its
errors into GatewayError. SimulatedGateway stands in when no secret key is
configured, so checkout works end to end in development.
"""
import logging
import secrets
from typing import Dict, Optional, Protocol

import stripe

from ..errors import GatewayError
from ..schemas import PaymentIntentResult

logger = logging.getLogger(__name__)

# Intent statuses after which the money has moved and a refund is needed
CAPTURED_STATUSES = ("succeeded",)
CLOSED_STATUSES = ("canceled",)


class PaymentGateway(Protocol):
    async def create_payment_intent(
        self, amount: int, currency: str, metadata: Dict[str, str], idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        """Create an intent for `amount` minor units; returns id + client secret."""
        ...

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        ...

    async def cancel_payment_intent(self, intent_id: str) -> str:
        """Cancel the intent, or refund it if it already captured. Returns the final status."""
        ...


def _to_result(intent) -> PaymentIntentResult:
    return PaymentIntentResult(
        id=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
        client_secret=getattr(intent, "client_secret", None),
    )


def _translate(error: "stripe.StripeError", action: str) -> GatewayError:
    message = error.user_message or str(error) or f"Payment gateway {action} failed"
    return GatewayError(message, code=error.code, original=error)


class StripeGateway:
    """Stripe payment intents over the async httpx transport."""

    def __init__(self, secret_key: str):
        self.client = stripe.StripeClient(secret_key, http_client=stripe.HTTPXClient())

    async def create_payment_intent(
        self, amount: int, currency: str, metadata: Dict[str, str], idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        try:
            intent = await self.client.payment_intents.create_async(
                params={
                    "amount": amount,
                    "currency": currency,
                    "metadata": metadata,
                    "automatic_payment_methods": {"enabled": True},
                },
                options=options,
            )
        except stripe.StripeError as e:
            logger.error(f"Payment intent creation failed: {e}")
            raise _translate(e, "create")
        return _to_result(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        try:
            intent = await self.client.payment_intents.retrieve_async(intent_id)
        except stripe.StripeError as e:
            raise _translate(e, "retrieve")
        return _to_result(intent)

    async def cancel_payment_intent(self, intent_id: str) -> str:
        try:
            intent = await self.client.payment_intents.retrieve_async(intent_id)
            if intent.status in CLOSED_STATUSES:
                return intent.status
            if intent.status in CAPTURED_STATUSES:
                await self.client.refunds.create_async(params={"payment_intent": intent_id})
                logger.info(f"Refunded payment intent {intent_id}")
                return "refunded"
            intent = await self.client.payment_intents.cancel_async(intent_id)
        except stripe.StripeError as e:
            raise _translate(e, "cancel")
        return intent.status


class SimulatedGateway:
    """In-process gateway used when no processor key is configured."""

    def __init__(self):
        self.intents: Dict[str, PaymentIntentResult] = {}

    async def create_payment_intent(
        self, amount: int, currency: str, metadata: Dict[str, str], idempotency_key: Optional[str] = None
    ) -> PaymentIntentResult:
        intent_id = f"pi_sim_{secrets.token_hex(12)}"
        intent = PaymentIntentResult(
            id=intent_id,
            status="requires_payment_method",
            amount=amount,
            currency=currency,
            client_secret=f"{intent_id}_secret_{secrets.token_hex(8)}",
        )
        self.intents[intent_id] = intent
        logger.info(f"Simulated payment intent {intent_id} for {amount} {currency} (no real charge)")
        return intent

    async def retrieve_payment_intent(self, intent_id: str) -> PaymentIntentResult:
        intent = self.intents.get(intent_id)
        if intent is None:
            raise GatewayError(f"No such payment intent: {intent_id}", code="resource_missing")
        return intent

    async def cancel_payment_intent(self, intent_id: str) -> str:
        intent = await self.retrieve_payment_intent(intent_id)
        if intent.status in CLOSED_STATUSES:
            return intent.status
        status = "refunded" if intent.status in CAPTURED_STATUSES else "canceled"
        self.intents[intent_id] = intent.model_copy(update={"status": status})
        return status

    def complete(self, intent_id: str, status: str = "succeeded") -> PaymentIntentResult:
        """Simulate the customer finishing payment on the hosted page."""
        intent = self.intents[intent_id].model_copy(update={"status": status})
        self.intents[intent_id] = intent
        return intent
