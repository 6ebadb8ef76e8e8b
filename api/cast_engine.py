from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from api.billing_orchestrator import BillingOrchestrator
from api.errors import BillingError, CastErrorCode, SpellRuntimeError, SpellTimeoutError
from api.runtimes import RuntimeDispatcher
from db.audit_db import write_audit
from db.budget_db import BudgetLedger
from db.cast_db import TERMINAL_STATES, create_cast, transition_cast
from db.models import Cast
from db.spell_db import get_spell_by_key
from registry.visibility import can_access

logger = structlog.get_logger()

INTERNAL_ERROR_MESSAGE = "Internal error while casting spell"


@dataclass(frozen=True)
class CastResult:
    ok: bool
    cast_id: str
    status: str
    output: Optional[Dict[str, Any]] = None
    billing_record_id: Optional[str] = None
    cost_cents: int = 0
    error_code: Optional[CastErrorCode] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["error_code"] = self.error_code.value if self.error_code else None
        return d


class CastEngine:
    """
    queued -> running -> succeeded | failed | timeout

    spell lookup -> access policy -> budget (priced only) -> charge -> dispatch.
    Every transition is committed before the next external call. The result of a
    cast is always a CastResult; only a failure to record the terminal state raises.
    """

    def __init__(self, ledger: BudgetLedger, billing: BillingOrchestrator, dispatcher: RuntimeDispatcher):
        self.ledger = ledger
        self.billing = billing
        self.dispatcher = dispatcher

    async def cast(self, db: AsyncSession, user_id: str, spell_key: str, inputs: Dict[str, Any]) -> CastResult:
        cast = await create_cast(db, user_id=user_id, spell_key=spell_key, inputs=inputs)
        await db.commit()
        log = logger.bind(cast_id=cast.cast_id, user_id=user_id, spell_key=spell_key)

        try:
            return await self._run(db, cast, inputs, log)
        except Exception:
            log.exception("cast.internal_error")
            await db.rollback()
            await db.refresh(cast)
            if cast.status in TERMINAL_STATES:
                raise
            return await self._finish(db, cast, log, "failed",
                                      code=CastErrorCode.INTERNAL_ERROR, message=INTERNAL_ERROR_MESSAGE)

    async def _run(self, db: AsyncSession, cast: Cast, inputs: Dict[str, Any], log) -> CastResult:
        spell = await get_spell_by_key(db, cast.spell_key)
        if spell is None or spell.status != "active":
            return await self._finish(db, cast, log, "failed", code=CastErrorCode.SPELL_NOT_FOUND,
                                      message=f"Spell not found: {cast.spell_key}")

        cast.spell_id = spell.spell_id
        cast.spell_version = spell.version

        if not can_access(cast.user_id, spell):
            return await self._finish(db, cast, log, "failed", code=CastErrorCode.VISIBILITY_DENIED,
                                      message="You do not have access to this spell")

        await transition_cast(db, cast, "running")
        await db.commit()

        if spell.price_cents > 0:
            async with self.ledger.hold(cast.user_id):
                check = await self.ledger.check_and_reserve(db, cast.user_id, spell.price_cents)
                if not check.allowed:
                    return await self._finish(db, cast, log, "failed", code=CastErrorCode.BUDGET_EXCEEDED,
                                              message=check.reason, retry_after=check.retry_after)
                try:
                    billing_record_id = await self.billing.charge(
                        db, cast.user_id, spell, spell.price_cents,
                        idempotency_key=f"cast_{cast.cast_id}",
                        metadata={"cast_id": cast.cast_id},
                    )
                except BillingError as e:
                    cast.billing_record_id = e.billing_record_id
                    return await self._finish(db, cast, log, "failed", code=CastErrorCode.BILLING_FAILED,
                                              message=str(e))

                await self.ledger.commit_spend(db, cast.user_id, spell.price_cents)
                cast.billing_record_id = billing_record_id
                cast.cost_cents = spell.price_cents
                await db.commit()

        # charged before execution; a runtime failure below is not refunded
        try:
            output = await self.dispatcher.dispatch(db, spell, inputs)
        except SpellTimeoutError as e:
            return await self._finish(db, cast, log, "timeout", code=CastErrorCode.RUNTIME_ERROR, message=str(e))
        except SpellRuntimeError as e:
            return await self._finish(db, cast, log, "failed", code=CastErrorCode.RUNTIME_ERROR, message=str(e))

        return await self._finish(db, cast, log, "succeeded", output=output)

    async def _finish(
        self,
        db: AsyncSession,
        cast: Cast,
        log,
        status: str,
        *,
        code: Optional[CastErrorCode] = None,
        message: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
    ) -> CastResult:
        await transition_cast(
            db, cast, status,
            output=output,
            error_code=code.value if code else None,
            error_message=message,
        )
        await write_audit(db, {
            "user_id": cast.user_id,
            "action": "CAST",
            "target_id": cast.spell_key,
            "ref_id": cast.cast_id,
            "ok": status == "succeeded",
            "credits": cast.cost_cents or 0,
            "error": code.value if code else None,
        })
        await db.commit()

        log.info("cast.finished", status=status, error_code=code.value if code else None,
                 billing_record_id=cast.billing_record_id, cost_cents=cast.cost_cents or 0)
        return CastResult(
            ok=status == "succeeded",
            cast_id=cast.cast_id,
            status=status,
            output=output,
            billing_record_id=cast.billing_record_id,
            cost_cents=cast.cost_cents or 0,
            error_code=code,
            error=message,
            retry_after=retry_after,
        )

    async def estimate(self, db: AsyncSession, user_id: str, spell_key: str) -> Optional[Dict[str, Any]]:
        spell = await get_spell_by_key(db, spell_key)
        if spell is None or spell.status != "active" or not can_access(user_id, spell):
            return None
        return {
            "spell_key": spell.key,
            "version": spell.version,
            "price_cents": spell.price_cents,
            "currency": spell.currency,
            "billable": spell.price_cents > 0,
        }
