"""FastAPI application entry-point for the client portal API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from api import __version__
from api.config import APISettings, PlatformEnv, load_api_settings
from api.dependencies import (
    dispose_engine,
    get_core_settings,
    get_notification_fanout,
    get_session_factory,
    init_engine,
    set_job_scheduler,
)
from api.middleware.auth import AuthenticationMiddleware
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.prometheus import PrometheusMiddleware
from api.routers import files, health, jobs, notifications, plan_limits, portals, updates
from api.routers import metrics as metrics_router
from api.services.job_scheduler import JobScheduler, build_default_jobs
from api.services.portal_service import EntitlementDeniedError, NotFoundError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Start the maintenance job scheduler.

    On shutdown:
    - Stop the scheduler.
    - Dispose the database engine connection pool.
    """
    settings: APISettings = load_api_settings()

    if settings.structured_logging:
        from api.middleware.json_formatter import configure_structured_logging

        configure_structured_logging()
        logger.info("Structured JSON logging enabled")

    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from portal_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured (%s)", "local SQLite" if is_local else "dev auto-migration")

    scheduler: JobScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = JobScheduler(
            get_session_factory(),
            build_default_jobs(settings, get_core_settings(), get_notification_fanout()),
        )
        await scheduler.start()
        set_job_scheduler(scheduler)

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
        set_job_scheduler(None)
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Client Portal API",
        description="Client portals for freelancers: updates, files, plan limits and notifications.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (the last one added runs outermost) ----------------------

    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(AuthenticationMiddleware, settings=settings)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(portals.router, prefix="/api/v1")
    app.include_router(updates.router, prefix="/api/v1")
    app.include_router(files.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(plan_limits.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")

    # Metrics endpoint: outside /api/v1 versioning (Prometheus scrape).
    app.include_router(metrics_router.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(EntitlementDeniedError)
    async def entitlement_denied_handler(request: Request, exc: EntitlementDeniedError) -> JSONResponse:
        return JSONResponse(status_code=403, content=exc.result.to_error_body())

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        logger.info("Not found on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": str(exc) or "Permission denied"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(status_code=500, content={"detail": "Internal database error"})

    return app


# Module-level application instance used by ``uvicorn api.main:app``.
app = create_app()
