"""
Database engine and session management.

Every orchestrator operation opens its own session, so concurrent creates and
callbacks become concurrent writers. On SQLite they share one file; a
connection that finds it locked waits up to the busy timeout instead of
failing straight away.
"""

from collections.abc import AsyncGenerator
from typing import Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.config import settings
from app.models.transaction import Base


def build_engine(url: str, busy_timeout: Optional[float] = None) -> AsyncEngine:
    connect_args = {}
    if make_url(url).get_backend_name() == "sqlite":
        connect_args["timeout"] = busy_timeout if busy_timeout is not None else settings.sqlite_busy_timeout_seconds
    return create_async_engine(url, echo=False, connect_args=connect_args)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Transactions are handed back to callers after their session commits
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables. Safe to call multiple times (CREATE IF NOT EXISTS)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine(settings.database_url)
async_session = build_session_factory(engine)


async def init_db():
    await create_tables(engine)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session
