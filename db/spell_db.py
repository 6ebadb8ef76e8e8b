from __future__ import annotations
import hashlib
import time
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Spell, SpellArtifact

RUNTIME_KINDS = ("builtin", "api", "wasm-module")
VISIBILITIES = ("public", "team", "private")
WASM_MAGIC = b"\x00asm"

def now() -> int:
    return int(time.time())

def spell_to_dict(s: Spell) -> Dict[str, Any]:
    return {
        "spell_id": s.spell_id, "key": s.key, "version": s.version,
        "name": s.name, "description": s.description,
        "runtime": s.runtime, "price_cents": s.price_cents, "currency": s.currency,
        "visibility": s.visibility, "owner_id": s.owner_id, "status": s.status,
        "created_ts": s.created_ts, "updated_ts": s.updated_ts,
    }

def _validate(runtime: Any, visibility: Any, price_cents: Any, fields: Dict[str, Any]) -> None:
    if not isinstance(runtime, str) or runtime not in RUNTIME_KINDS:
        raise ValueError(f"runtime must be one of {'|'.join(RUNTIME_KINDS)}")
    if not isinstance(visibility, str) or visibility not in VISIBILITIES:
        raise ValueError(f"visibility must be one of {'|'.join(VISIBILITIES)}")
    if isinstance(price_cents, bool) or not isinstance(price_cents, int) or price_cents < 0:
        raise ValueError("price_cents must be a non-negative integer")
    for name in ("name", "description", "currency"):
        if fields.get(name) is not None and not isinstance(fields[name], str):
            raise ValueError(f"{name} must be a string")
    if fields.get("config") is not None and not isinstance(fields["config"], dict):
        raise ValueError("config must be an object")

async def get_spell_by_key(db: AsyncSession, key: str) -> Optional[Spell]:
    res = await db.execute(select(Spell).where(Spell.key == key))
    return res.scalar_one_or_none()

async def create_spell(db: AsyncSession, owner_id: str, payload: Dict[str, Any]) -> Spell:
    key = payload.get("key")
    if key is not None and not isinstance(key, str):
        raise ValueError("key must be a string")
    key = (key or "").strip()
    if not key:
        raise ValueError("key is required")
    runtime = payload.get("runtime", "builtin")
    visibility = payload.get("visibility", "public")
    price = payload.get("price_cents", 0)
    _validate(runtime, visibility, price, payload)

    if await get_spell_by_key(db, key):
        raise ValueError(f"spell key already exists: {key}")

    ts = now()
    s = Spell(
        spell_id=str(uuid.uuid4()),
        key=key,
        version=1,
        name=payload.get("name") or key,
        description=payload.get("description") or "",
        runtime=runtime,
        config=dict(payload.get("config") or {}),
        price_cents=price,
        currency=(payload.get("currency") or "usd").lower(),
        visibility=visibility,
        owner_id=owner_id,
        status="active",
        created_ts=ts,
        updated_ts=ts,
    )
    db.add(s)
    await db.flush()
    return s

MUTABLE_FIELDS = ("name", "description", "runtime", "config", "price_cents", "currency", "visibility")

async def update_spell(db: AsyncSession, spell: Spell, user_id: str, changes: Dict[str, Any]) -> Spell:
    """Owner-only edit. Every edit produces a new version; casts keep the version they ran."""
    if spell.owner_id != user_id:
        raise PermissionError("only the owner may modify a spell")

    runtime = changes.get("runtime", spell.runtime)
    visibility = changes.get("visibility", spell.visibility)
    price = changes.get("price_cents", spell.price_cents)
    _validate(runtime, visibility, price, changes)

    for field in MUTABLE_FIELDS:
        if field in changes:
            value = changes[field]
            if field == "currency":
                value = (value or "usd").lower()
            if field in ("name", "description") and value is None:
                value = ""
            if field == "config":
                value = dict(value or {})
            setattr(spell, field, value)
    spell.version = (spell.version or 1) + 1
    spell.updated_ts = now()
    await db.flush()
    return spell

async def set_spell_status(db: AsyncSession, spell: Spell, user_id: str, status: str) -> Spell:
    # never hard-deleted: historical casts must stay attributable
    if spell.owner_id != user_id:
        raise PermissionError("only the owner may change spell status")
    if status not in ("active", "inactive"):
        raise ValueError("status must be active|inactive")
    spell.status = status
    spell.updated_ts = now()
    await db.flush()
    return spell

async def save_artifact(db: AsyncSession, spell: Spell, user_id: str, wasm_binary: bytes) -> SpellArtifact:
    if spell.owner_id != user_id:
        raise PermissionError("only the owner may upload artifacts")
    if spell.runtime != "wasm-module":
        raise ValueError("artifacts can only be attached to wasm-module spells")
    if len(wasm_binary) < 4 or wasm_binary[:4] != WASM_MAGIC:
        raise ValueError("not a wasm binary (bad magic header)")

    res = await db.execute(
        select(func.max(SpellArtifact.revision)).where(SpellArtifact.spell_id == spell.spell_id)
    )
    a = SpellArtifact(
        artifact_id=str(uuid.uuid4()),
        spell_id=spell.spell_id,
        revision=(res.scalar() or 0) + 1,
        sha256=hashlib.sha256(wasm_binary).hexdigest(),
        size_bytes=len(wasm_binary),
        wasm_binary=wasm_binary,
        uploaded_by=user_id,
        created_ts=now(),
    )
    db.add(a)
    await db.flush()
    return a

async def latest_artifact(db: AsyncSession, spell_id: str) -> Optional[SpellArtifact]:
    res = await db.execute(
        select(SpellArtifact)
        .where(SpellArtifact.spell_id == spell_id)
        .order_by(SpellArtifact.revision.desc())
        .limit(1)
    )
    return res.scalar_one_or_none()

async def list_owned_spells(db: AsyncSession, owner_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    res = await db.execute(
        select(Spell).where(Spell.owner_id == owner_id).order_by(Spell.created_ts.desc()).limit(min(limit, 500))
    )
    return [spell_to_dict(s) for s in res.scalars().all()]
