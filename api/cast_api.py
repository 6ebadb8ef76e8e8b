from __future__ import annotations
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.cast_engine import CastEngine, CastResult
from api.deps import get_cast_engine, get_db
from api.errors import CAST_ERROR_STATUS, CastErrorCode, IdempotencyMismatchError
from api.security_deps import require_user_id
from db.cast_db import cast_to_dict, get_cast, list_casts
from db.idempotency_db import PENDING, REPLAY, begin_request, finish_request, release_request

router = APIRouter(tags=["cast"])

CAST_ENDPOINT = "POST /cast"
MAX_IDEMPOTENCY_KEY_LEN = 255


class CastRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    spell_id: str = Field(min_length=1, alias="spellId")
    input: Dict[str, Any] = Field(default_factory=dict)


def _cast_response(result: CastResult) -> Tuple[int, Dict[str, Any]]:
    if result.ok:
        return 200, {
            "ok": True,
            "cast_id": result.cast_id,
            "output": result.output,
            "billing_record_id": result.billing_record_id,
        }

    code = result.error_code or CastErrorCode.INTERNAL_ERROR
    content = {
        "ok": False,
        "cast_id": result.cast_id,
        "status": result.status,
        "code": code.value,
        "error": result.error,
        "billing_record_id": result.billing_record_id,
    }
    if code == CastErrorCode.BUDGET_EXCEEDED and result.retry_after:
        content["retry_after"] = result.retry_after
    return CAST_ERROR_STATUS[code], content


def _json(status: int, content: Dict[str, Any], replayed: bool = False) -> JSONResponse:
    headers = {}
    if content.get("retry_after"):
        headers["Retry-After"] = str(content["retry_after"])
    if replayed:
        headers["Idempotent-Replayed"] = "true"
    return JSONResponse(status_code=status, content=content, headers=headers)


@router.post("/cast")
async def cast_spell(
    body: CastRequest,
    idempotency_key: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    user_id: str = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
    engine: CastEngine = Depends(get_cast_engine),
):
    key = (idempotency_key or "").strip()
    if not key:
        raise HTTPException(status_code=400, detail="Idempotency-Key header is required")
    if len(key) > MAX_IDEMPOTENCY_KEY_LEN:
        raise HTTPException(status_code=400, detail=f"Idempotency-Key longer than {MAX_IDEMPOTENCY_KEY_LEN} characters")

    request_payload = {"spell_key": body.spell_id, "input": body.input}
    try:
        claim = await begin_request(db, key, CAST_ENDPOINT, user_id, request_payload)
    except IdempotencyMismatchError as e:
        return JSONResponse(status_code=409, content={"ok": False, "code": "IDEMPOTENCY_CONFLICT", "error": str(e)})
    if claim.state == REPLAY:
        return _json(claim.response_status, claim.response_body, replayed=True)
    if claim.state == PENDING:
        return JSONResponse(status_code=409, content={
            "ok": False, "code": "IDEMPOTENCY_PENDING",
            "error": "A request with this Idempotency-Key is still in progress",
        })

    try:
        result = await engine.cast(db, user_id, body.spell_id, body.input)
    except Exception:
        await db.rollback()
        await release_request(db, key, CAST_ENDPOINT, user_id)
        raise
    status, content = _cast_response(result)
    await finish_request(db, key, CAST_ENDPOINT, user_id, status, content)
    return _json(status, content)


@router.get("/casts")
async def my_casts(limit: int = 50, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    rows = await list_casts(db, user_id, limit=limit)
    return {"count": len(rows), "casts": rows}


@router.get("/casts/{cast_id}")
async def cast_detail(cast_id: str, user_id: str = Depends(require_user_id), db: AsyncSession = Depends(get_db)):
    c = await get_cast(db, cast_id)
    # other users' casts are indistinguishable from missing ones
    if c is None or c.user_id != user_id:
        raise HTTPException(status_code=404, detail=f"Cast not found: {cast_id}")
    return cast_to_dict(c)


@router.get("/spells/{spell_key}/estimate")
async def estimate(
    spell_key: str,
    user_id: str = Depends(require_user_id),
    db: AsyncSession = Depends(get_db),
    engine: CastEngine = Depends(get_cast_engine),
):
    est = await engine.estimate(db, user_id, spell_key)
    if est is None:
        raise HTTPException(status_code=404, detail=f"Spell not found: {spell_key}")
    return est
