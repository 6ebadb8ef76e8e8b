from __future__ import annotations
from typing import Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import BillingError, MissingPaymentMethodError
from db.billing_db import create_billing_record, get_customer_ref, now
from db.models import Spell

logger = structlog.get_logger()

FAILED_REF = "failed"


class BillingOrchestrator:
    """One durable billing record per charge attempt.

    The record is committed as `pending` before the processor is called, so a
    crash between charge and local write leaves a row the webhook reconciler
    can find (by payment ref, or by the billing_record_id in payment metadata).
    When `charge` returns or raises, the record is already terminal.
    """

    def __init__(self, processor):
        self.processor = processor

    async def charge(
        self,
        db: AsyncSession,
        user_id: str,
        spell: Spell,
        amount_cents: int,
        idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        record = await create_billing_record(
            db,
            user_id=user_id,
            spell_id=spell.spell_id,
            amount_cents=amount_cents,
            currency=spell.currency,
            idempotency_key=idempotency_key,
        )
        await db.commit()

        log = logger.bind(user_id=user_id, spell_key=spell.key, billing_record_id=record.billing_record_id,
                          amount_cents=amount_cents)
        error: Optional[str] = None
        charge_ref: Optional[str] = None
        try:
            customer_ref = await get_customer_ref(db, user_id)
            if not customer_ref:
                raise MissingPaymentMethodError("No payment customer on file")
            result = await self.processor.create_charge(
                customer_ref,
                amount_cents,
                spell.currency,
                idempotency_key=idempotency_key,
                metadata={
                    **(metadata or {}),
                    "billing_record_id": record.billing_record_id,
                    "user_id": user_id,
                    "spell_id": spell.spell_id,
                },
            )
            charge_ref = result.charge_ref
            if result.status != "succeeded":
                error = f"Charge not completed: status {result.status}"
        except Exception as e:
            # any processor failure is recorded before it is surfaced
            charge_ref = getattr(e, "charge_ref", None)
            error = str(e) or type(e).__name__

        record.payment_ref = (charge_ref or FAILED_REF) if error else charge_ref
        record.status = "failed" if error else "succeeded"
        record.error = error[:800] if error else None
        record.updated_ts = now()
        await db.commit()

        if error:
            log.warning("billing.charge_failed", error=error, payment_ref=record.payment_ref)
            raise BillingError(error, record.billing_record_id)

        log.info("billing.charged", payment_ref=charge_ref)
        return record.billing_record_id
