from __future__ import annotations
import time
from typing import Any, Callable, Dict

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.billing_orchestrator import FAILED_REF
from api.config import WEBHOOK_PENDING_STALE_SEC
from db.billing_db import find_by_payment_ref, get_billing_record, link_customer, now
from db.cast_db import create_cast, get_cast_by_idempotency_key
from db.spell_db import get_spell_by_key
from db.webhook_db import get_event, insert_event, mark_failed, mark_processed, mark_retrying

logger = structlog.get_logger()

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

HANDLED_EVENT_TYPES = frozenset({CHECKOUT_COMPLETED, PAYMENT_SUCCEEDED, PAYMENT_FAILED})

# outcomes returned by handle()
PROCESSED = "processed"
DUPLICATE = "duplicate"
IN_FLIGHT = "in_flight"
IGNORED = "ignored"


def _object(event: Dict[str, Any]) -> Dict[str, Any]:
    obj = (event.get("data") or {}).get("object")
    if not isinstance(obj, dict):
        raise ValueError(f"event {event.get('id')} has no data.object")
    return obj


class WebhookReconciler:
    """
    Exactly-once effects for processor events, keyed by event id.

    Stored state decides what a delivery does:
      processed -> nothing
      pending   -> nothing, unless the row is stale (crashed mid-handler): retried
      failed    -> same row retried, attempts + 1
      (none)    -> unknown type stored as processed; known type inserted pending and handled
    A handler exception marks the row failed and propagates so the processor redelivers.
    """

    def __init__(self, stale_after_sec: int = WEBHOOK_PENDING_STALE_SEC, clock: Callable[[], float] = time.time):
        self.stale_after_sec = stale_after_sec
        self._clock = clock
        self._handlers = {
            CHECKOUT_COMPLETED: self._checkout_completed,
            PAYMENT_SUCCEEDED: self._payment_succeeded,
            PAYMENT_FAILED: self._payment_failed,
        }

    async def handle(self, db: AsyncSession, event: Dict[str, Any]) -> str:
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValueError("event id and type are required")
        log = logger.bind(event_id=event_id, event_type=event_type)

        row = await get_event(db, event_id)
        if row is not None:
            if row.status == "processed":
                log.info("webhook.duplicate")
                return DUPLICATE
            if row.status == "pending":
                age = int(self._clock()) - int(row.updated_ts or row.created_ts or 0)
                if age < self.stale_after_sec:
                    log.info("webhook.in_flight", age_sec=age)
                    return IN_FLIGHT
            await mark_retrying(db, row)
            await db.commit()
            log.info("webhook.retry", attempts=row.attempts, previous_error=row.error_message)
        else:
            status = "pending" if event_type in HANDLED_EVENT_TYPES else "processed"
            try:
                row = await insert_event(db, event_id, event_type, event, status)
                await db.commit()
            except IntegrityError:
                # concurrent delivery inserted first
                await db.rollback()
                log.info("webhook.duplicate_insert")
                return DUPLICATE
            if status == "processed":
                log.info("webhook.ignored")
                return IGNORED

        try:
            await self._handlers[event_type](db, event, log)
            await mark_processed(db, row)
            await db.commit()
        except Exception as e:
            await db.rollback()
            await db.refresh(row)
            await mark_failed(db, row, f"{type(e).__name__}: {e}")
            await db.commit()
            log.error("webhook.handler_failed", error=str(e), attempts=row.attempts)
            raise

        log.info("webhook.processed", attempts=row.attempts)
        return PROCESSED

    async def _checkout_completed(self, db: AsyncSession, event: Dict[str, Any], log) -> None:
        session = _object(event)
        metadata = session.get("metadata") or {}
        user_id = metadata.get("user_id")
        customer_ref = session.get("customer")

        if user_id and customer_ref:
            if await link_customer(db, user_id, customer_ref):
                log.info("webhook.customer_linked", user_id=user_id, customer_ref=customer_ref)

        spell_key = metadata.get("spell_key")
        if not spell_key:
            return
        if not user_id:
            raise ValueError("checkout session carries spell_key without metadata.user_id")

        key = f"checkout_{session['id']}"
        if await get_cast_by_idempotency_key(db, key) is not None:
            return

        spell = await get_spell_by_key(db, spell_key)
        cast = await create_cast(
            db,
            user_id=user_id,
            spell_key=spell_key,
            spell_id=spell.spell_id if spell else None,
            spell_version=spell.version if spell else None,
            cost_cents=int(session.get("amount_total") or 0),
            idempotency_key=key,
        )
        log.info("webhook.cast_queued", cast_id=cast.cast_id, user_id=user_id, spell_key=spell_key)

    async def _payment_succeeded(self, db: AsyncSession, event: Dict[str, Any], log) -> None:
        await self._reconcile_intent(db, _object(event), "succeeded", log)

    async def _payment_failed(self, db: AsyncSession, event: Dict[str, Any], log) -> None:
        await self._reconcile_intent(db, _object(event), "failed", log)

    async def _reconcile_intent(self, db: AsyncSession, intent: Dict[str, Any], status: str, log) -> None:
        payment_ref = intent.get("id")
        record = await find_by_payment_ref(db, payment_ref) if payment_ref else None
        if record is None:
            record_id = (intent.get("metadata") or {}).get("billing_record_id")
            record = await get_billing_record(db, record_id) if record_id else None
        if record is None:
            log.warning("webhook.billing_record_missing", payment_ref=payment_ref)
            return

        if record.status == status:
            return
        if record.webhook_corrected:
            log.warning("webhook.correction_refused", billing_record_id=record.billing_record_id,
                        current=record.status, requested=status)
            return

        log.info("webhook.billing_corrected", billing_record_id=record.billing_record_id,
                 previous=record.status, status=status)
        record.status = status
        record.webhook_corrected = True
        if payment_ref and record.payment_ref in (None, FAILED_REF):
            record.payment_ref = payment_ref
        if status == "failed":
            err = (intent.get("last_payment_error") or {}).get("message")
            record.error = (err or "payment failed")[:800]
        record.updated_ts = now()
        await db.flush()
