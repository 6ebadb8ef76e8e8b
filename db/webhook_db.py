from __future__ import annotations
import time
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import WebhookEvent

def now() -> int:
    return int(time.time())

async def get_event(db: AsyncSession, event_id: str) -> Optional[WebhookEvent]:
    res = await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    return res.scalar_one_or_none()

async def insert_event(db: AsyncSession, event_id: str, event_type: str, payload: Dict[str, Any], status: str) -> WebhookEvent:
    ts = now()
    row = WebhookEvent(
        event_id=event_id,
        type=event_type,
        payload=payload,
        status=status,
        attempts=0 if status == "processed" else 1,
        processed_ts=ts if status == "processed" else None,
        created_ts=ts,
        updated_ts=ts,
    )
    db.add(row)
    await db.flush()
    return row

async def mark_processed(db: AsyncSession, row: WebhookEvent) -> None:
    ts = now()
    row.status = "processed"
    row.error_message = None
    row.processed_ts = ts
    row.updated_ts = ts
    await db.flush()

async def mark_failed(db: AsyncSession, row: WebhookEvent, error: str) -> None:
    row.status = "failed"
    row.error_message = (error or "")[:800]
    row.updated_ts = now()
    await db.flush()

async def mark_retrying(db: AsyncSession, row: WebhookEvent) -> None:
    row.status = "pending"
    row.attempts = (row.attempts or 0) + 1
    row.updated_ts = now()
    await db.flush()
