from __future__ import annotations
import time
import uuid
from typing import Dict, Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import BillingRecord, PaymentCustomer

BILLING_STATUSES = ("pending", "succeeded", "failed")

def now() -> int:
    return int(time.time())

def record_to_dict(r: BillingRecord) -> Dict[str, Any]:
    return {
        "billing_record_id": r.billing_record_id, "user_id": r.user_id, "spell_id": r.spell_id,
        "amount_cents": r.amount_cents, "currency": r.currency, "payment_ref": r.payment_ref,
        "status": r.status, "webhook_corrected": bool(r.webhook_corrected),
        "created_ts": r.created_ts, "updated_ts": r.updated_ts,
    }

async def create_billing_record(
    db: AsyncSession,
    *,
    user_id: str,
    spell_id: str,
    amount_cents: int,
    currency: str,
    idempotency_key: Optional[str] = None,
    status: str = "pending",
    payment_ref: Optional[str] = None,
) -> BillingRecord:
    ts = now()
    r = BillingRecord(
        billing_record_id=str(uuid.uuid4()),
        user_id=user_id,
        spell_id=spell_id,
        amount_cents=int(amount_cents),
        currency=currency,
        payment_ref=payment_ref,
        idempotency_key=idempotency_key,
        status=status,
        webhook_corrected=False,
        created_ts=ts,
        updated_ts=ts,
    )
    db.add(r)
    await db.flush()
    return r

async def get_billing_record(db: AsyncSession, billing_record_id: str) -> Optional[BillingRecord]:
    res = await db.execute(select(BillingRecord).where(BillingRecord.billing_record_id == billing_record_id))
    return res.scalar_one_or_none()

async def find_by_payment_ref(db: AsyncSession, payment_ref: str) -> Optional[BillingRecord]:
    res = await db.execute(select(BillingRecord).where(BillingRecord.payment_ref == payment_ref).limit(1))
    return res.scalar_one_or_none()

async def list_billing_records(db: AsyncSession, user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    res = await db.execute(
        select(BillingRecord)
        .where(BillingRecord.user_id == user_id)
        .order_by(BillingRecord.created_ts.desc())
        .limit(min(limit, 500))
    )
    return [record_to_dict(r) for r in res.scalars().all()]

# -------------------------
# Processor customers (user -> customer ref)
# -------------------------
async def get_customer_ref(db: AsyncSession, user_id: str) -> Optional[str]:
    res = await db.execute(select(PaymentCustomer).where(PaymentCustomer.user_id == user_id))
    row = res.scalar_one_or_none()
    return row.customer_ref if row else None

async def link_customer(db: AsyncSession, user_id: str, customer_ref: str) -> bool:
    """Attach a processor customer to a user. Returns True if anything changed."""
    res = await db.execute(select(PaymentCustomer).where(PaymentCustomer.user_id == user_id))
    row = res.scalar_one_or_none()
    if row and row.customer_ref == customer_ref:
        return False
    if row:
        row.customer_ref = customer_ref
        row.updated_ts = now()
    else:
        db.add(PaymentCustomer(user_id=user_id, customer_ref=customer_ref, updated_ts=now()))
    await db.flush()
    return True
