"""
Request-scoped dependencies.

Services are built once in the app lifespan and kept on `app.state`;
routers reach them through these accessors so tests can swap any of them.
"""
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.cast_engine import CastEngine
from api.webhook_reconciler import WebhookReconciler
from db.budget_db import BudgetLedger


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.sessionmaker() as session:
        yield session


def get_cast_engine(request: Request) -> CastEngine:
    return request.app.state.cast_engine


def get_ledger(request: Request) -> BudgetLedger:
    return request.app.state.ledger


def get_reconciler(request: Request) -> WebhookReconciler:
    return request.app.state.reconciler


def get_processor(request: Request):
    return request.app.state.processor
