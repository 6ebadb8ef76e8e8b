"""
Test doubles and payload builders shared by the test modules.
"""
import hashlib
import hmac
import time

from jose import jwt

from api.config import JWT_ALG, JWT_SECRET
from api.payments import ChargeResult, StripeProcessor

WEBHOOK_SECRET = "whsec_test_secret"


class FakeProcessor(StripeProcessor):
    """Real signature verification, scripted charges."""

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET):
        super().__init__(api_key="", webhook_secret=webhook_secret)
        self.result = ChargeResult(charge_ref="pi_1", status="succeeded")
        self.error = None
        self.calls = []

    async def create_charge(self, customer_ref, amount_cents, currency, *, idempotency_key=None, metadata=None):
        self.calls.append({
            "customer_ref": customer_ref,
            "amount_cents": amount_cents,
            "currency": currency,
            "idempotency_key": idempotency_key,
            "metadata": dict(metadata or {}),
        })
        if self.error is not None:
            raise self.error
        return self.result


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, ts: int = None) -> str:
    ts = int(time.time()) if ts is None else ts
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"


def make_token(sub: str = "u1", role: str = "user") -> str:
    return jwt.encode(
        {"sub": sub, "type": "access", "role": role, "exp": int(time.time()) + 3600},
        JWT_SECRET,
        algorithm=JWT_ALG,
    )


def checkout_event(event_id="evt_1", session_id="cs_1", user_id="u1", customer="cus_1",
                   spell_key=None, amount_total=500):
    metadata = {"user_id": user_id}
    if spell_key:
        metadata["spell_key"] = spell_key
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {
            "id": session_id,
            "object": "checkout.session",
            "customer": customer,
            "amount_total": amount_total,
            "metadata": metadata,
        }},
    }


def intent_event(event_id, event_type, intent_id, billing_record_id=None, error=None):
    obj = {"id": intent_id, "object": "payment_intent", "metadata": {}}
    if billing_record_id:
        obj["metadata"]["billing_record_id"] = billing_record_id
    if error:
        obj["last_payment_error"] = {"message": error}
    return {"id": event_id, "type": event_type, "data": {"object": obj}}
