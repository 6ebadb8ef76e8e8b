from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import stripe
import structlog

from api.config import STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET, STRIPE_SIGNATURE_TOLERANCE_SEC
from api.errors import MissingPaymentMethodError, PaymentProcessorError, SignatureError, WebhookConfigError

logger = structlog.get_logger()


@dataclass(frozen=True)
class ChargeResult:
    charge_ref: str
    status: str           # processor status, "succeeded" when funds are captured


def _default_payment_method(customer: Any) -> Optional[str]:
    settings = customer.get("invoice_settings") or {}
    pm = settings.get("default_payment_method")
    if not pm:
        return None
    return pm if isinstance(pm, str) else pm.get("id")


class StripeProcessor:
    """Payment processor backed by the Stripe API.

    Built once at startup and injected; nothing here is module-global.
    """

    def __init__(
        self,
        api_key: str = STRIPE_SECRET_KEY,
        webhook_secret: str = STRIPE_WEBHOOK_SECRET,
        tolerance_sec: int = STRIPE_SIGNATURE_TOLERANCE_SEC,
        client: Optional[stripe.StripeClient] = None,
    ):
        self.webhook_secret = webhook_secret
        self.tolerance_sec = tolerance_sec
        self._client = client or (stripe.StripeClient(api_key) if api_key else None)

    async def create_charge(
        self,
        customer_ref: str,
        amount_cents: int,
        currency: str,
        *,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> ChargeResult:
        if self._client is None:
            raise PaymentProcessorError("Payment processor is not configured")

        try:
            customer = await self._client.customers.retrieve_async(
                customer_ref, params={"expand": ["invoice_settings.default_payment_method"]}
            )
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Customer lookup failed: {e.user_message or e}") from e

        if customer.get("deleted"):
            raise MissingPaymentMethodError("Processor customer record has been deleted")

        payment_method = _default_payment_method(customer)
        if not payment_method:
            raise MissingPaymentMethodError()

        options = {"idempotency_key": idempotency_key} if idempotency_key else None
        try:
            intent = await self._client.payment_intents.create_async(
                params={
                    "amount": amount_cents,
                    "currency": currency,
                    "customer": customer_ref,
                    "payment_method": payment_method,
                    "confirm": True,
                    "off_session": True,
                    "metadata": dict(metadata or {}),
                },
                options=options,
            )
        except stripe.CardError as e:
            declined = (e.error.payment_intent or {}).get("id") if e.error else None
            raise PaymentProcessorError(f"Card declined: {e.user_message or e}", charge_ref=declined) from e
        except stripe.StripeError as e:
            raise PaymentProcessorError(f"Charge failed: {e.user_message or e}") from e

        return ChargeResult(charge_ref=intent["id"], status=intent["status"])

    def verify_webhook_signature(self, raw_body: Union[bytes, str], signature_header: Optional[str]) -> Dict[str, Any]:
        """Check the HMAC signature first; the body is parsed only once it verified."""
        if not self.webhook_secret:
            raise WebhookConfigError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature_header:
            raise SignatureError("Missing stripe-signature header")

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as e:
            raise SignatureError("Body is not valid UTF-8") from e
        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, self.webhook_secret, self.tolerance_sec)
        except stripe.SignatureVerificationError as e:
            raise SignatureError("Invalid signature") from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise SignatureError("Signed body is not valid JSON") from e
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise SignatureError("Signed body is not an event")
        return event
