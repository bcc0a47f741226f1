"""Async engine and session management.

One engine per namespace: each town gets its own database, and each agent's
activity log gets another. In-memory SQLite URLs share a single connection so
every session sees the same data.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from pathlib import Path

import structlog
from sqlalchemy import Table
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from gastown.db.models import AGENT_EVENT_TABLES, TOWN_TABLES

log = structlog.get_logger()

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def create_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine, preparing the directory for file-backed SQLite."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite":
        database = parsed.database
        if not database or database == ":memory:":
            return create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        Path(database).parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(url, echo=echo)


async def _create_tables(engine: AsyncEngine, tables: list[Table]) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=tables)


async def init_town_db(engine: AsyncEngine) -> None:
    """Create the town tables if they do not exist."""
    await _create_tables(engine, TOWN_TABLES)
    log.debug("town_db_initialized", url=str(engine.url))


async def init_agent_events_db(engine: AsyncEngine) -> None:
    """Create the agent activity log table if it does not exist."""
    await _create_tables(engine, AGENT_EVENT_TABLES)


def session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a factory yielding sessions bound to ``engine``.

    Sessions never expire attributes on commit, so returned rows stay readable
    after the unit of work ends.
    """
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @asynccontextmanager
    async def _session() -> AsyncIterator[AsyncSession]:
        async with maker() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    return _session
