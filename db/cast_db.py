from __future__ import annotations
import hashlib
import json
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import InvalidCastTransition
from db.models import Cast

TERMINAL_STATES = frozenset({"succeeded", "failed", "timeout"})
CAST_TRANSITIONS: Dict[str, frozenset] = {
    "queued": frozenset({"running", "failed"}),
    "running": frozenset({"succeeded", "failed", "timeout"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "timeout": frozenset(),
}

def now() -> int:
    return int(time.time())

def input_hash(payload: Any) -> str:
    """sha256 of the canonical JSON form (sorted keys, no whitespace) of a cast input."""
    normalized = json.dumps(payload if payload is not None else None, sort_keys=True,
                            separators=(",", ":"), ensure_ascii=False, default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()

def cast_to_dict(c: Cast) -> Dict[str, Any]:
    return {
        "cast_id": c.cast_id, "spell_key": c.spell_key, "spell_id": c.spell_id,
        "spell_version": c.spell_version, "user_id": c.user_id, "status": c.status,
        "input_hash": c.input_hash, "cost_cents": c.cost_cents,
        "billing_record_id": c.billing_record_id, "output": c.output,
        "error_code": c.error_code, "error_message": c.error_message,
        "created_ts": c.created_ts, "started_ts": c.started_ts, "finished_ts": c.finished_ts,
    }

async def create_cast(
    db: AsyncSession,
    *,
    user_id: str,
    spell_key: str,
    inputs: Any = None,
    spell_id: Optional[str] = None,
    spell_version: Optional[int] = None,
    cost_cents: int = 0,
    idempotency_key: Optional[str] = None,
) -> Cast:
    c = Cast(
        cast_id=str(uuid.uuid4()),
        spell_key=spell_key,
        spell_id=spell_id,
        spell_version=spell_version,
        user_id=user_id,
        status="queued",
        input_hash=input_hash(inputs) if inputs is not None else "",
        cost_cents=cost_cents,
        idempotency_key=idempotency_key,
        created_ts=now(),
    )
    db.add(c)
    await db.flush()
    return c

async def transition_cast(db: AsyncSession, cast: Cast, target: str, **fields: Any) -> Cast:
    """Move a cast along queued -> running -> terminal. Terminal states never change again."""
    allowed = CAST_TRANSITIONS.get(cast.status, frozenset())
    if target not in allowed:
        raise InvalidCastTransition(cast.cast_id, cast.status, target)

    for k, v in fields.items():
        setattr(cast, k, v)
    cast.status = target
    if target == "running":
        cast.started_ts = now()
    if target in TERMINAL_STATES:
        cast.finished_ts = now()
    await db.flush()
    return cast

async def get_cast(db: AsyncSession, cast_id: str) -> Optional[Cast]:
    res = await db.execute(select(Cast).where(Cast.cast_id == cast_id))
    return res.scalar_one_or_none()

async def get_cast_by_idempotency_key(db: AsyncSession, key: str) -> Optional[Cast]:
    res = await db.execute(select(Cast).where(Cast.idempotency_key == key))
    return res.scalar_one_or_none()

async def list_casts(db: AsyncSession, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    res = await db.execute(
        select(Cast).where(Cast.user_id == user_id).order_by(Cast.created_ts.desc()).limit(min(limit, 200))
    )
    return [cast_to_dict(c) for c in res.scalars().all()]
