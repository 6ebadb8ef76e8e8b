from __future__ import annotations
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import IdempotencyMismatchError
from db.cast_db import input_hash
from db.models import IdempotencyKey

PROCEED = "proceed"
REPLAY = "replay"
PENDING = "pending"

def now() -> int:
    return int(time.time())

@dataclass
class IdempotentRequest:
    state: str
    response_status: Optional[int] = None
    response_body: Optional[Dict[str, Any]] = None

def _match(key: str, endpoint: str, scope: str):
    return (
        IdempotencyKey.key == key,
        IdempotencyKey.endpoint == endpoint,
        IdempotencyKey.scope == scope,
    )

async def get_request(db: AsyncSession, key: str, endpoint: str, scope: str) -> Optional[IdempotencyKey]:
    res = await db.execute(select(IdempotencyKey).where(*_match(key, endpoint, scope)))
    return res.scalar_one_or_none()

async def begin_request(db: AsyncSession, key: str, endpoint: str, scope: str, payload: Any) -> IdempotentRequest:
    """
    Claim `key` for this request. The row is committed before any work starts,
    so a concurrent or repeated request finds it.

    Returns PROCEED for a fresh key, REPLAY with the stored response when the
    first request finished, PENDING while it is still running. Raises
    IdempotencyMismatchError when the key was used for a different payload.
    """
    request_hash = input_hash(payload)
    ts = now()
    db.add(IdempotencyKey(
        idempotency_id=str(uuid.uuid4()),
        key=key,
        endpoint=endpoint,
        scope=scope,
        request_hash=request_hash,
        created_ts=ts,
        updated_ts=ts,
    ))
    try:
        await db.commit()
        return IdempotentRequest(PROCEED)
    except IntegrityError:
        await db.rollback()

    row = await get_request(db, key, endpoint, scope)
    if row is None:
        # released between our insert and the lookup
        return IdempotentRequest(PENDING)
    if row.request_hash != request_hash:
        raise IdempotencyMismatchError(key)
    if row.response_status is None:
        return IdempotentRequest(PENDING)
    return IdempotentRequest(REPLAY, row.response_status, row.response_body)

async def finish_request(db: AsyncSession, key: str, endpoint: str, scope: str,
                         status: int, body: Dict[str, Any]) -> None:
    await db.execute(
        update(IdempotencyKey)
        .where(*_match(key, endpoint, scope))
        .values(response_status=status, response_body=body, updated_ts=now())
    )
    await db.commit()

async def release_request(db: AsyncSession, key: str, endpoint: str, scope: str) -> None:
    """Drop an unfinished claim so the client may retry with the same key."""
    await db.execute(
        delete(IdempotencyKey)
        .where(*_match(key, endpoint, scope))
        .where(IdempotencyKey.response_status.is_(None))
    )
    await db.commit()
