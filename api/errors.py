from __future__ import annotations
from enum import Enum
from typing import Optional


class CastErrorCode(str, Enum):
    SPELL_NOT_FOUND = "SPELL_NOT_FOUND"
    VISIBILITY_DENIED = "VISIBILITY_DENIED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    BILLING_FAILED = "BILLING_FAILED"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# HTTP status per cast error code
CAST_ERROR_STATUS = {
    CastErrorCode.SPELL_NOT_FOUND: 404,
    CastErrorCode.VISIBILITY_DENIED: 403,
    CastErrorCode.BUDGET_EXCEEDED: 402,
    CastErrorCode.BILLING_FAILED: 402,
    CastErrorCode.RUNTIME_ERROR: 500,
    CastErrorCode.INTERNAL_ERROR: 500,
}


class PaymentProcessorError(Exception):
    """The processor call failed (network error, decline, bad response)."""

    def __init__(self, message: str, charge_ref: Optional[str] = None):
        super().__init__(message)
        self.charge_ref = charge_ref


class MissingPaymentMethodError(PaymentProcessorError):
    def __init__(self, message: str = "No payment method on file"):
        super().__init__(message)


class BillingError(Exception):
    """A charge attempt failed. The failed billing record is already durable."""

    def __init__(self, message: str, billing_record_id: str):
        super().__init__(message)
        self.billing_record_id = billing_record_id


class SpellRuntimeError(RuntimeError):
    """A runtime could not produce an output for a spell."""


class SpellTimeoutError(SpellRuntimeError):
    """The runtime gave up because the unit of work ran too long."""


class SignatureError(Exception):
    """Webhook signature header missing or invalid."""


class WebhookConfigError(Exception):
    """Webhook secret is not configured."""


class InvalidCastTransition(Exception):
    def __init__(self, cast_id: str, current: str, target: str):
        super().__init__(f"Cast {cast_id}: illegal transition {current} -> {target}")
        self.cast_id = cast_id
        self.current = current
        self.target = target


class IdempotencyMismatchError(Exception):
    """An idempotency key was reused with a different request payload."""

    def __init__(self, key: str):
        super().__init__(f"Idempotency key {key!r} was already used with a different request")
        self.key = key
