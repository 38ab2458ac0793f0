"""Shared fixtures for client portal API tests.

Provides a mock database session, a file-backed SQLite database for
service and router tests, a seeding helper, and httpx clients bound to
the FastAPI app via ``ASGITransport``.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set before importing application modules so the AuthenticationMiddleware
# built by create_app() verifies tokens with the test secret.
_TEST_SESSION_SECRET = "test-secret-key-for-clientportal-tests"
os.environ.setdefault("API_SESSION_SECRET", _TEST_SESSION_SECRET)
os.environ.setdefault("API_SCHEDULER_ENABLED", "false")

from portal_core.plans.registry import PlanRegistry
from portal_core.state.repository import (
    PortalRepository,
    SubscriptionRepository,
    UpdateRepository,
    UserRepository,
)
from portal_core.state.sqlite_adapter import create_local_tables, get_local_engine
from portal_core.state.tables import PortalTable, SubscriptionTable, UpdateTable, UserTable
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.dependencies import get_db_session, get_notification_fanout, get_plan_registry
from api.main import create_app
from api.security import TokenManager
from api.services.notification_service import NotificationFanout

# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------

_TOKENS = TokenManager(SecretStr(os.environ["API_SESSION_SECRET"]))


def auth_headers(sub: str = "freelancer-1", role: str = "freelancer") -> dict[str, str]:
    """Bearer header for a session token signed with the test secret."""
    return {"Authorization": f"Bearer {_TOKENS.generate_token(sub, role)}"}


@pytest.fixture()
def make_headers():
    return auth_headers


# ---------------------------------------------------------------------------
# Mock database session
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_session() -> AsyncMock:
    """Return a mock AsyncSession that behaves like a real SQLAlchemy session.

    ``execute`` returns a result whose ``scalar_one_or_none()`` is ``None``,
    ``scalar_one()`` is ``0`` and ``scalars().all()`` is ``[]``.  The bind
    reports the SQLite dialect so advisory locks are skipped.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.get = AsyncMock(return_value=None)
    session.in_transaction = MagicMock(return_value=True)

    bind = MagicMock()
    bind.dialect.name = "sqlite"
    session.get_bind = MagicMock(return_value=bind)

    result_mock = MagicMock()
    result_mock.scalar_one_or_none.return_value = None
    result_mock.scalar_one.return_value = 0
    result_mock.scalars.return_value.all.return_value = []
    result_mock.all.return_value = []
    result_mock.rowcount = 0

    session.execute = AsyncMock(return_value=result_mock)
    return session


# ---------------------------------------------------------------------------
# SQLite database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a fresh SQLite file with all tables created."""
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


class Seeder:
    """Insert fixture rows and commit them so other sessions can see them."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def user(self, role: str = "freelancer", *, name: str | None = None, email: str | None = None) -> UserTable:
        name = name or role.title()
        email = email or f"{name.lower().replace(' ', '.')}-{os.urandom(3).hex()}@example.com"
        row = await UserRepository(self.session).create(email, name=name, role=role)
        await self.session.commit()
        return row

    async def subscribe(self, user_id: str, plan_id: str, *, days: int = 30) -> SubscriptionTable:
        row = await SubscriptionRepository(self.session).create(
            user_id,
            plan_id,
            ends_at=datetime.now(UTC) + timedelta(days=days),
        )
        await self.session.commit()
        return row

    async def portal(
        self,
        owner_id: str,
        client_id: str | None = None,
        *,
        name: str = "Website Redesign",
        due_date: date | None = None,
        status: str = "active",
    ) -> PortalTable:
        row = await PortalRepository(self.session).create(
            name,
            owner_id,
            client_id=client_id,
            due_date=due_date,
            status=status,
        )
        await self.session.commit()
        return row

    async def update(
        self,
        portal_id: str,
        user_id: str,
        *,
        title: str | None = "Kickoff",
        parent_update_id: str | None = None,
    ) -> UpdateTable:
        row = await UpdateRepository(self.session).create(
            portal_id,
            user_id,
            content="Details",
            title=title,
            parent_update_id=parent_update_id,
        )
        await self.session.commit()
        return row


@pytest.fixture()
def seed(db_session: AsyncSession) -> Seeder:
    return Seeder(db_session)


# ---------------------------------------------------------------------------
# FastAPI apps and clients
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(mock_session: AsyncMock):
    """Create a FastAPI app whose session dependency yields ``mock_session``."""
    application = create_app()

    async def _override_session():
        yield mock_session

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_plan_registry] = PlanRegistry.default
    application.dependency_overrides[get_notification_fanout] = NotificationFanout
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async client for the mock-session app, authenticated as a freelancer."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers=auth_headers()) as ac:
        yield ac


@pytest.fixture()
def db_app(session_factory: async_sessionmaker[AsyncSession]):
    """Create a FastAPI app backed by the SQLite test database.

    The session dependency mirrors production: commit on success, roll
    back on any exception.
    """
    application = create_app()

    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        session = session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    application.dependency_overrides[get_db_session] = _override_session
    application.dependency_overrides[get_plan_registry] = PlanRegistry.default
    application.dependency_overrides[get_notification_fanout] = NotificationFanout
    return application


@pytest_asyncio.fixture()
async def db_client(db_app) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client for the SQLite-backed app; pass ``headers`` per request."""
    transport = ASGITransport(app=db_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def counter_value(name: str, labels: dict[str, Any] | None = None) -> float:
    """Current value of a Prometheus sample (0.0 if never incremented)."""
    from prometheus_client import REGISTRY

    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


@pytest.fixture()
def metric():
    return counter_value
