"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import typing as typ

import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from releasewatch.storage import SqlAlchemyTransactor, init_storage

if typ.TYPE_CHECKING:
    from pathlib import Path


async def _setup_sqlite(tmp_path: Path) -> AsyncEngine:
    """Create a SQLite engine and initialise the schema."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'releasewatch_test.db'}"
    )
    try:
        await init_storage(engine)
    except Exception:
        await engine.dispose()
        raise
    return engine


@pytest_asyncio.fixture
async def session_factory(
    tmp_path: Path,
) -> typ.AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Yield a fresh async session factory backed by sqlite."""
    engine = await _setup_sqlite(tmp_path)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def transactor(
    session_factory: async_sessionmaker[AsyncSession],
) -> SqlAlchemyTransactor:
    """Return a SQL transactor bound to the per-test database."""
    return SqlAlchemyTransactor(session_factory)
