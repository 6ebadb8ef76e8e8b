from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_db, get_ledger
from api.security_deps import require_user_id
from db.budget_db import BudgetLedger

router = APIRouter(prefix="/budget", tags=["budget"])


class CapUpdate(BaseModel):
    monthly_cap_cents: StrictInt = Field(ge=0)


@router.get("")
async def status(user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db),
                 ledger: BudgetLedger = Depends(get_ledger)):
    snap = await ledger.get_status(db, user_id)
    await db.commit()
    return snap.to_dict()


@router.patch("")
async def set_cap(body: CapUpdate, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db),
                  ledger: BudgetLedger = Depends(get_ledger)):
    async with ledger.hold(user_id):
        try:
            snap = await ledger.set_monthly_cap(db, user_id, body.monthly_cap_cents)
        except (TypeError, ValueError) as e:
            raise HTTPException(status_code=400, detail=str(e))
        await db.commit()
    return snap.to_dict()


@router.post("/reset")
async def reset(user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db),
                ledger: BudgetLedger = Depends(get_ledger)):
    async with ledger.hold(user_id):
        snap = await ledger.reset(db, user_id)
        await db.commit()
    return snap.to_dict()
