"""Gateway state database.

Holds saved workflow definitions, execution records with their per-node
results, and the entries behind the persistent key-value store. Async
SQLAlchemy on SQLite (aiosqlite) locally or PostgreSQL (asyncpg), selected by
``config.GATEWAY_DATABASE_URL``.

Routes take a session through the ``get_session`` dependency; the result
sink, the key-value store and the dispatcher open their own short scopes
with ``get_session_ctx``. ``init_db``/``close_db`` run in the app lifespan.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import sqlalchemy
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from automation import config
from automation.nodes.utils import async_database_url

DATABASE_URL = async_database_url(config.GATEWAY_DATABASE_URL)

engine: AsyncEngine = create_async_engine(
    DATABASE_URL,
    echo=config.GATEWAY_DB_ECHO,
    # No pool sizing on SQLite
    **({} if "sqlite" in DATABASE_URL else {"pool_size": 5, "max_overflow": 10}),
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base of the workflow, execution, node result and KV tables."""
    pass


@asynccontextmanager
async def get_session_ctx() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: committed on exit, rolled back on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one unit of work per request."""
    async with get_session_ctx() as session:
        yield session


async def init_db():
    """Create missing tables; on SQLite also enable WAL and a busy timeout."""
    from . import models  # noqa: F401 - registers tables on Base.metadata

    if "sqlite" in DATABASE_URL:
        async with engine.begin() as conn:
            await conn.execute(sqlalchemy.text("PRAGMA journal_mode=WAL"))
            await conn.execute(sqlalchemy.text("PRAGMA busy_timeout=5000"))
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    await engine.dispose()
