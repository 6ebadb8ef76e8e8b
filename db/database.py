from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from api.config import DATABASE_URL

Base = declarative_base()

def make_engine(url: str = DATABASE_URL) -> AsyncEngine:
    in_memory = url.startswith("sqlite") and (":memory:" in url or url.rstrip("/").endswith(":"))
    if in_memory:
        # one shared connection, otherwise every checkout sees an empty database
        return create_async_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"check_same_thread": False})
    return create_async_engine(url, pool_pre_ping=True)

def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)

async def create_tables(bind: AsyncEngine) -> None:
    from db import models  # noqa: F401  (registers tables on Base)
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

engine = make_engine()
