from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from api.deps import get_db
from api.security_deps import require_role
from db.audit_db import recent_audit

router = APIRouter(prefix="/audit", tags=["audit"])

@router.get("/recent")
async def recent(limit: int = 50, claims: dict = Depends(require_role("admin")), db: AsyncSession = Depends(get_db)):
    rows = await recent_audit(db, limit=limit)
    return {"count": len(rows), "logs": rows}
