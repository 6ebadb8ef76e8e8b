from __future__ import annotations
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db
from api.security_deps import require_user_id
from db.billing_db import list_billing_records

router = APIRouter(prefix="/billing", tags=["billing"])

@router.get("/records")
async def records(limit: int = 100, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    rows = await list_billing_records(db, user_id, limit=limit)
    return {"count": len(rows), "records": rows}
