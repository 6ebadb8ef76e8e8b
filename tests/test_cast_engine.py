import httpx
import pytest
from sqlalchemy import func, select

from api.billing_orchestrator import BillingOrchestrator
from api.cast_engine import INTERNAL_ERROR_MESSAGE, CastEngine
from api.errors import CastErrorCode, InvalidCastTransition, SpellTimeoutError
from api.runtimes import build_dispatcher
from db.audit_db import recent_audit
from db.billing_db import get_billing_record, link_customer
from db.budget_db import BudgetLedger
from db.cast_db import get_cast, transition_cast
from db.models import BillingRecord, Budget
from db.spell_db import set_spell_status
from sdk.handler_registry import default_registry


class CountingDispatcher:
    def __init__(self, inner=None, error=None):
        self.inner = inner
        self.error = error
        self.calls = 0

    async def dispatch(self, db, spell, inputs):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return await self.inner.dispatch(db, spell, inputs)


@pytest.fixture
def dispatcher():
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
    return CountingDispatcher(build_dispatcher(default_registry(), client))


@pytest.fixture
def cast_engine(processor, dispatcher):
    return CastEngine(BudgetLedger(), BillingOrchestrator(processor), dispatcher)


async def count(db, model):
    return (await db.execute(select(func.count()).select_from(model))).scalar_one()


class TestCastHappyPath:
    """Successful casts."""

    @pytest.mark.asyncio
    async def test_free_public_spell(self, db, make_spell, cast_engine, processor):
        """price 0, public -> succeeds without a billing record."""
        await make_spell(key="echo")

        res = await cast_engine.cast(db, "u2", "echo", {"msg": "hi"})

        assert res.ok
        assert res.status == "succeeded"
        assert res.output == {"echo": {"msg": "hi"}, "spell_key": "echo"}
        assert res.billing_record_id is None
        assert processor.calls == []
        assert await count(db, BillingRecord) == 0

        c = await get_cast(db, res.cast_id)
        assert c.status == "succeeded"
        assert c.started_ts is not None and c.finished_ts is not None
        assert len(c.input_hash) == 64

    @pytest.mark.asyncio
    async def test_paid_spell(self, db, make_spell, cast_engine, processor):
        """price 500, charge succeeds -> record succeeded, spend committed."""
        s = await make_spell(key="paid", price_cents=500)
        await link_customer(db, "u1", "cus_1")
        await db.commit()

        res = await cast_engine.cast(db, "u1", "paid", {"a": 1})

        assert res.ok
        assert res.cost_cents == 500
        rec = await get_billing_record(db, res.billing_record_id)
        assert rec.status == "succeeded"
        assert rec.amount_cents == 500
        assert rec.payment_ref == "pi_1"
        assert processor.calls[0]["idempotency_key"] == f"cast_{res.cast_id}"

        budget = (await db.execute(select(Budget).where(Budget.user_id == "u1"))).scalar_one()
        assert budget.current_spend_cents == 500

        c = await get_cast(db, res.cast_id)
        assert c.spell_id == s.spell_id
        assert c.spell_version == 1
        assert c.billing_record_id == res.billing_record_id

    @pytest.mark.asyncio
    async def test_terminal_cast_never_regresses(self, db, make_spell, cast_engine):
        await make_spell(key="echo")
        res = await cast_engine.cast(db, "u1", "echo", {})
        c = await get_cast(db, res.cast_id)
        with pytest.raises(InvalidCastTransition):
            await transition_cast(db, c, "running")

    @pytest.mark.asyncio
    async def test_audit_row_written(self, db, make_spell, cast_engine):
        await make_spell(key="echo")
        res = await cast_engine.cast(db, "u1", "echo", {})
        logs = await recent_audit(db)
        assert logs[0]["ref_id"] == res.cast_id
        assert logs[0]["action"] == "CAST"
        assert logs[0]["ok"] is True


class TestCastRejections:
    """Casts stopped before execution."""

    @pytest.mark.asyncio
    async def test_unknown_spell(self, db, cast_engine, dispatcher):
        res = await cast_engine.cast(db, "u1", "missing", {})
        assert not res.ok
        assert res.error_code == CastErrorCode.SPELL_NOT_FOUND
        c = await get_cast(db, res.cast_id)
        assert c.status == "failed"
        assert c.spell_id is None
        assert dispatcher.calls == 0

    @pytest.mark.asyncio
    async def test_inactive_spell_is_not_found(self, db, make_spell, cast_engine):
        s = await make_spell(key="old")
        await set_spell_status(db, s, "u1", "inactive")
        await db.commit()
        res = await cast_engine.cast(db, "u1", "old", {})
        assert res.error_code == CastErrorCode.SPELL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_private_spell_other_user(self, db, make_spell, cast_engine, processor, dispatcher):
        """private, owner u1, caller u2 -> denied, no budget or billing touched."""
        await make_spell(key="secret", owner_id="u1", visibility="private", price_cents=500)

        res = await cast_engine.cast(db, "u2", "secret", {})

        assert res.error_code == CastErrorCode.VISIBILITY_DENIED
        assert res.status == "failed"
        assert processor.calls == []
        assert dispatcher.calls == 0
        assert await count(db, Budget) == 0
        assert await count(db, BillingRecord) == 0

    @pytest.mark.asyncio
    async def test_budget_exceeded(self, db, make_spell, cast_engine, processor, dispatcher):
        await make_spell(key="paid", price_cents=600)
        await cast_engine.ledger.commit_spend(db, "u1", 9500)
        await db.commit()

        res = await cast_engine.cast(db, "u1", "paid", {})

        assert res.error_code == CastErrorCode.BUDGET_EXCEEDED
        assert res.retry_after and res.retry_after > 0
        assert "Retry after" in res.error
        assert processor.calls == []
        assert dispatcher.calls == 0

    @pytest.mark.asyncio
    async def test_billing_failure_skips_runtime(self, db, make_spell, cast_engine, processor, dispatcher, declined):
        """price 500, processor throws -> record failed, runtime never invoked."""
        await make_spell(key="paid", price_cents=500)
        await link_customer(db, "u1", "cus_1")
        await db.commit()
        processor.error = declined

        res = await cast_engine.cast(db, "u1", "paid", {})

        assert res.error_code == CastErrorCode.BILLING_FAILED
        assert dispatcher.calls == 0
        rec = await get_billing_record(db, res.billing_record_id)
        assert rec.status == "failed"
        budget = (await db.execute(select(Budget).where(Budget.user_id == "u1"))).scalar_one()
        assert budget.current_spend_cents == 0


class TestCastRuntimeFailures:
    """Failures after (or without) a charge."""

    @pytest.mark.asyncio
    async def test_runtime_error_keeps_billing_record(self, db, make_spell, cast_engine, processor):
        await make_spell(key="broken", price_cents=500, config={"handler": "does_not_exist"})
        await link_customer(db, "u1", "cus_1")
        await db.commit()

        res = await cast_engine.cast(db, "u1", "broken", {})

        assert res.status == "failed"
        assert res.error_code == CastErrorCode.RUNTIME_ERROR
        assert "does_not_exist" in res.error
        assert res.billing_record_id is not None
        rec = await get_billing_record(db, res.billing_record_id)
        assert rec.status == "succeeded"

    @pytest.mark.asyncio
    async def test_timeout(self, db, make_spell, processor):
        await make_spell(key="echo")
        engine = CastEngine(BudgetLedger(), BillingOrchestrator(processor),
                            CountingDispatcher(error=SpellTimeoutError("API call timed out after 30s")))

        res = await engine.cast(db, "u1", "echo", {})

        assert res.status == "timeout"
        assert res.error_code == CastErrorCode.RUNTIME_ERROR
        assert (await get_cast(db, res.cast_id)).status == "timeout"

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self, db, make_spell, processor):
        await make_spell(key="echo")
        engine = CastEngine(BudgetLedger(), BillingOrchestrator(processor),
                            CountingDispatcher(error=KeyError("secret internals")))

        res = await engine.cast(db, "u1", "echo", {})

        assert res.status == "failed"
        assert res.error_code == CastErrorCode.INTERNAL_ERROR
        assert res.error == INTERNAL_ERROR_MESSAGE
        assert "secret" not in res.error
