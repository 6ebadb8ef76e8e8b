"""
Shared fixtures: in-memory database, fake payment processor, tokens, spells.
"""
import json
import uuid

import pytest
import pytest_asyncio

from api.errors import PaymentProcessorError
from db.database import create_tables, make_engine, make_sessionmaker
from db.spell_db import create_spell
from helpers import WEBHOOK_SECRET, FakeProcessor, make_token, sign_payload


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def declined():
    return PaymentProcessorError("Card declined: insufficient funds")


@pytest.fixture
def auth():
    def _headers(sub="u1", role="user"):
        # fresh Idempotency-Key per call; tests that replay pass their own
        return {"Authorization": f"Bearer {make_token(sub, role)}", "Idempotency-Key": uuid.uuid4().hex}
    return _headers


@pytest.fixture
def signed():
    def _sign(event, secret=WEBHOOK_SECRET):
        body = json.dumps(event)
        return body, {"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"}
    return _sign


@pytest_asyncio.fixture
async def engine():
    eng = make_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def file_engine(tmp_path):
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.sqlite3'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def db(engine):
    async with make_sessionmaker(engine)() as session:
        yield session


@pytest.fixture
def make_spell(db):
    async def _make(key="echo", owner_id="u1", **overrides):
        payload = {
            "key": key,
            "runtime": "builtin",
            "config": {"handler": "echo"},
            "price_cents": 0,
            "visibility": "public",
        }
        payload.update(overrides)
        s = await create_spell(db, owner_id, payload)
        await db.commit()
        return s
    return _make
