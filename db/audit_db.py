from __future__ import annotations
import uuid
import time
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import AuditLog

async def write_audit(db: AsyncSession, event: Dict[str, Any]) -> str:
    """
    event keys:
    user_id,action,target_id,ref_id,ok,credits,error
    Flushed with the caller's transaction; the caller commits.
    """
    aid = str(uuid.uuid4())
    db.add(AuditLog(
        audit_id=aid,
        ts=event.get("ts", int(time.time())),
        user_id=event.get("user_id", "unknown"),
        action=event.get("action", ""),
        target_id=event.get("target_id", ""),
        ref_id=event.get("ref_id", ""),
        ok=bool(event.get("ok", False)),
        credits=int(event.get("credits", 0)),
        error=(event.get("error") or "")[:800],
    ))
    await db.flush()
    return aid

async def recent_audit(db: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    res = await db.execute(select(AuditLog).order_by(AuditLog.ts.desc()).limit(min(limit, 200)))
    return [{
        "audit_id": r.audit_id, "ts": r.ts, "user_id": r.user_id,
        "action": r.action, "target_id": r.target_id, "ref_id": r.ref_id,
        "ok": r.ok, "credits": r.credits, "error": r.error,
    } for r in res.scalars().all()]
