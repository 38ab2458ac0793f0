"""Shared fixtures for portal_core tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal_core.state.sqlite_adapter import create_local_tables, get_local_engine
from portal_core.state.tables import UserTable


@pytest_asyncio.fixture()
async def session(tmp_path: Path) -> AsyncGenerator[AsyncSession, None]:
    """Session over a fresh SQLite file with all tables created."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as s:
        yield s
    await engine.dispose()


@pytest_asyncio.fixture()
async def freelancer(session: AsyncSession) -> UserTable:
    row = UserTable(email="fran@example.com", name="Fran", role="freelancer")
    session.add(row)
    await session.flush()
    return row


@pytest_asyncio.fixture()
async def client_user(session: AsyncSession) -> UserTable:
    row = UserTable(email="cleo@example.com", name="Cleo", role="client")
    session.add(row)
    await session.flush()
    return row
