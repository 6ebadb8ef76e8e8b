from __future__ import annotations
from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import WASM_MAX_MODULE_BYTES
from api.deps import get_db
from api.security_deps import require_user_id
from db.models import Spell
from db.spell_db import (
    create_spell, get_spell_by_key, list_owned_spells, save_artifact,
    set_spell_status, spell_to_dict, update_spell,
)
from registry.visibility import can_access

router = APIRouter(prefix="/spells", tags=["spells"])

async def _load(db: AsyncSession, key: str) -> Spell:
    s = await get_spell_by_key(db, key)
    if s is None:
        raise HTTPException(status_code=404, detail=f"Spell not found: {key}")
    return s

@router.get("")
async def my_spells(limit: int = 100, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    rows = await list_owned_spells(db, user_id, limit=limit)
    return {"count": len(rows), "spells": rows}

@router.post("")
async def publish(payload: dict, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    try:
        s = await create_spell(db, user_id, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()
    return spell_to_dict(s)

@router.get("/{spell_key}")
async def detail(spell_key: str, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    s = await _load(db, spell_key)
    if s.owner_id != user_id and (s.status != "active" or not can_access(user_id, s)):
        raise HTTPException(status_code=404, detail=f"Spell not found: {spell_key}")
    return spell_to_dict(s)

@router.patch("/{spell_key}")
async def edit(spell_key: str, payload: dict, user_id: str = Depends(require_user_id),
               db: AsyncSession = Depends(get_db)):
    s = await _load(db, spell_key)
    try:
        s = await update_spell(db, s, user_id, payload)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()
    return spell_to_dict(s)

@router.post("/{spell_key}/deactivate")
async def deactivate(spell_key: str, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    s = await _load(db, spell_key)
    try:
        s = await set_spell_status(db, s, user_id, "inactive")
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    await db.commit()
    return spell_to_dict(s)

@router.post("/{spell_key}/artifact")
async def upload_artifact(spell_key: str, request: Request, user_id: str = Depends(require_user_id),
                          db: AsyncSession = Depends(get_db)):
    """Raw wasm module as the request body (application/wasm or octet-stream)."""
    s = await _load(db, spell_key)
    body = await request.body()
    if len(body) > WASM_MAX_MODULE_BYTES:
        raise HTTPException(status_code=413, detail=f"Module exceeds {WASM_MAX_MODULE_BYTES} bytes")
    try:
        a = await save_artifact(db, s, user_id, body)
    except PermissionError as e:
        raise HTTPException(status_code=403, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await db.commit()
    return {"artifact_id": a.artifact_id, "spell_key": s.key, "revision": a.revision,
            "sha256": a.sha256, "size_bytes": a.size_bytes}
