from __future__ import annotations
import asyncio
import calendar
import time
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import DEFAULT_MONTHLY_CAP_CENTS
from db.models import Budget

logger = structlog.get_logger()


def add_months(ts: int, months: int = 1) -> int:
    """Same wall-clock instant `months` later, clamped to the month's last day (Jan 31 -> Feb 28)."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    idx = dt.month - 1 + months
    year = dt.year + idx // 12
    month = idx % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return int(dt.replace(year=year, month=month, day=day).timestamp())


def _require_cents(name: str, value: Any) -> int:
    # bool is an int subclass; neither it nor float is a money amount
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{name} must be an integer number of minor units, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class BudgetSnapshot:
    user_id: str
    monthly_cap_cents: int
    current_spend_cents: int
    remaining_cents: int
    percent_used: float
    period_start_ts: int
    next_reset_ts: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class BudgetCheck:
    allowed: bool
    budget: BudgetSnapshot
    estimated_cost_cents: int
    reason: Optional[str] = None
    retry_after: Optional[int] = None     # seconds until the period resets


class BudgetLedger:
    """Per-user monthly spend cap in integer cents.

    `check_and_reserve` never touches spend; the caller commits actual spend
    with `commit_spend` once the charge went through. Callers that need
    check-then-commit to be atomic for a user hold `hold(user_id)` across both.
    """

    def __init__(self, default_cap_cents: int = DEFAULT_MONTHLY_CAP_CENTS, clock: Callable[[], float] = time.time):
        self.default_cap_cents = _require_cents("default_cap_cents", default_cap_cents)
        self._clock = clock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def now(self) -> int:
        return int(self._clock())

    @asynccontextmanager
    async def hold(self, user_id: str):
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        async with lock:
            yield

    async def _load(self, db: AsyncSession, user_id: str) -> Budget:
        res = await db.execute(
            select(Budget).where(Budget.user_id == user_id).execution_options(populate_existing=True)
        )
        row = res.scalar_one_or_none()
        ts = self.now()
        if row is None:
            row = Budget(
                user_id=user_id,
                monthly_cap_cents=self.default_cap_cents,
                current_spend_cents=0,
                period_start_ts=ts,
                updated_ts=ts,
            )
            db.add(row)
            await db.flush()
            logger.info("budget.created", user_id=user_id, monthly_cap_cents=row.monthly_cap_cents)
            return row

        # monthly reset happens transparently before anything is evaluated
        if ts >= add_months(row.period_start_ts, 1):
            logger.info("budget.period_reset", user_id=user_id, previous_spend_cents=row.current_spend_cents)
            row.current_spend_cents = 0
            row.period_start_ts = ts
            row.updated_ts = ts
            await db.flush()
        return row

    def _snapshot(self, row: Budget) -> BudgetSnapshot:
        cap = int(row.monthly_cap_cents)
        spend = int(row.current_spend_cents)
        pct = round(spend * 100.0 / cap, 2) if cap > 0 else 100.0
        return BudgetSnapshot(
            user_id=row.user_id,
            monthly_cap_cents=cap,
            current_spend_cents=spend,
            remaining_cents=max(cap - spend, 0),
            percent_used=pct,
            period_start_ts=int(row.period_start_ts),
            next_reset_ts=add_months(int(row.period_start_ts), 1),
        )

    async def check_and_reserve(self, db: AsyncSession, user_id: str, estimated_cost_cents: int) -> BudgetCheck:
        estimated = _require_cents("estimated_cost_cents", estimated_cost_cents)
        row = await self._load(db, user_id)
        snap = self._snapshot(row)

        # negative estimates (refunds) are not designed yet: they never lower the threshold
        effective = max(estimated, 0)
        allowed = snap.current_spend_cents + effective <= snap.monthly_cap_cents
        if allowed:
            return BudgetCheck(allowed=True, budget=snap, estimated_cost_cents=estimated)

        retry_after = max(1, snap.next_reset_ts - self.now())
        reason = (
            f"Budget cap exceeded. Current spend: {snap.current_spend_cents} cents, "
            f"monthly cap: {snap.monthly_cap_cents} cents, estimated cost: {effective} cents. "
            f"Retry after {retry_after} seconds."
        )
        logger.info("budget.denied", user_id=user_id, estimated_cost_cents=effective,
                    current_spend_cents=snap.current_spend_cents, monthly_cap_cents=snap.monthly_cap_cents)
        return BudgetCheck(allowed=False, budget=snap, estimated_cost_cents=estimated,
                           reason=reason, retry_after=retry_after)

    async def commit_spend(self, db: AsyncSession, user_id: str, amount_cents: int) -> None:
        amount = _require_cents("amount_cents", amount_cents)
        if amount < 0:
            raise ValueError("commit_spend amount must be >= 0 (refunds are not supported)")
        await self._load(db, user_id)
        # single UPDATE ... SET spend = spend + :amount, no read-modify-write in Python
        await db.execute(
            update(Budget)
            .where(Budget.user_id == user_id)
            .values(current_spend_cents=Budget.current_spend_cents + amount, updated_ts=self.now())
            .execution_options(synchronize_session="fetch")
        )
        await db.flush()

    async def get_status(self, db: AsyncSession, user_id: str) -> BudgetSnapshot:
        row = await self._load(db, user_id)
        return self._snapshot(row)

    async def set_monthly_cap(self, db: AsyncSession, user_id: str, monthly_cap_cents: int) -> BudgetSnapshot:
        cap = _require_cents("monthly_cap_cents", monthly_cap_cents)
        if cap < 0:
            raise ValueError("monthly_cap_cents must be >= 0")
        row = await self._load(db, user_id)
        row.monthly_cap_cents = cap
        row.updated_ts = self.now()
        await db.flush()
        return self._snapshot(row)

    async def reset(self, db: AsyncSession, user_id: str) -> BudgetSnapshot:
        row = await self._load(db, user_id)
        ts = self.now()
        row.current_spend_cents = 0
        row.period_start_ts = ts
        row.updated_ts = ts
        await db.flush()
        return self._snapshot(row)
