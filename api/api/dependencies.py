"""FastAPI dependency injection for database sessions, plans, and identity."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, Request
from portal_core.config import Settings, load_settings
from portal_core.models.events import UserRole
from portal_core.plans.registry import PlanRegistry
from portal_core.state.database import get_engine
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from api.config import APISettings, load_api_settings
from api.services.job_scheduler import JobScheduler
from api.services.notification_service import NotificationFanout

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None
_core_settings_cache: Settings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


def get_core_settings() -> Settings:
    """Return the cached core :class:`Settings` (plans, reminders)."""
    global _core_settings_cache  # noqa: PLW0603
    if _core_settings_cache is None:
        _core_settings_cache = load_settings()
    return _core_settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]
CoreSettingsDep = Annotated[Settings, Depends(get_core_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings, core_settings: Settings | None = None) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    core = core_settings or get_core_settings()
    _engine = get_engine(
        settings.database_url,
        pool_size=core.database_pool_size,
        max_overflow=core.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Used by components that run outside request handling (the job
    scheduler) and open their own sessions.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception, so a
    request's domain writes, activity rows and notifications land together.
    """
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Plans and notifications
# ---------------------------------------------------------------------------

_plan_registry: PlanRegistry | None = None
_fanout: NotificationFanout | None = None


def get_plan_registry() -> PlanRegistry:
    """Return the process-wide :class:`PlanRegistry` (built-in tiers)."""
    global _plan_registry  # noqa: PLW0603
    if _plan_registry is None:
        _plan_registry = PlanRegistry.default(get_core_settings().default_plan_id)
    return _plan_registry


def get_notification_fanout() -> NotificationFanout:
    global _fanout  # noqa: PLW0603
    if _fanout is None:
        _fanout = NotificationFanout(horizon_days=get_core_settings().reminder_horizon_days)
    return _fanout


PlanRegistryDep = Annotated[PlanRegistry, Depends(get_plan_registry)]
FanoutDep = Annotated[NotificationFanout, Depends(get_notification_fanout)]

# ---------------------------------------------------------------------------
# User identity (populated by AuthenticationMiddleware)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str

    @property
    def is_freelancer(self) -> bool:
        return self.role == UserRole.FREELANCER.value


def get_current_user(request: Request) -> CurrentUser:
    """Extract the authenticated user from request state."""
    user_id = getattr(request.state, "sub", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CurrentUser(id=user_id, role=getattr(request.state, "role", UserRole.CLIENT.value))


CurrentUserDep = Annotated[CurrentUser, Depends(get_current_user)]


def require_freelancer(user: CurrentUserDep) -> CurrentUser:
    """Reject callers whose session role is not ``freelancer``."""
    if not user.is_freelancer:
        raise HTTPException(status_code=403, detail="Only freelancers can perform this action")
    return user


FreelancerDep = Annotated[CurrentUser, Depends(require_freelancer)]

# ---------------------------------------------------------------------------
# Job scheduler (started by the application lifespan)
# ---------------------------------------------------------------------------

_job_scheduler: JobScheduler | None = None


def set_job_scheduler(scheduler: JobScheduler | None) -> None:
    global _job_scheduler  # noqa: PLW0603
    _job_scheduler = scheduler


def get_job_scheduler() -> JobScheduler | None:
    """Return the running scheduler, or ``None`` when scheduling is disabled."""
    return _job_scheduler
