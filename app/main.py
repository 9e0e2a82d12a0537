"""
LookEscolar Access API - application factory.

Run locally:
    uvicorn app.main:app --reload
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.ext.asyncio import AsyncEngine

from app.core.audit import AuditLogger, build_audit_logger
from app.core.config import Settings, get_settings
from app.core.database import build_engine, close_db, configure_database, get_session_factory, init_db
from app.core.errors import setup_exception_handlers
from app.core.housekeeping import RateLimitSweeper
from app.core.logging_config import setup_logging
from app.core.logging_middleware import RequestLoggingMiddleware
from app.core.rate_limit import RateLimiter, create_global_limiter, global_rate_limit_exceeded_handler
from app.core.rate_limit_store import InMemoryRateLimitStore, RateLimitStore, create_rate_limit_store
from app.core.suspicious_activity import SuspiciousActivityTracker
from app.routers import access, health

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    setup_logging(settings.log_level, settings.log_json, settings.log_file)
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)

    if settings.database_url.startswith("sqlite"):
        # Local runs only; production schemas come from Alembic
        await init_db()

    limiter: RateLimiter = app.state.rate_limiter
    if settings.redis_url and not app.state.store_injected:
        limiter.store = await create_rate_limit_store(
            settings.redis_url,
            idle_ttl_seconds=settings.rate_limit_idle_ttl_seconds,
        )

    sweeper = RateLimitSweeper(
        limiter.store,
        app.state.suspicious_activity,
        interval_seconds=settings.rate_limit_sweep_interval_seconds,
    )
    sweeper.start()

    yield

    await sweeper.stop()
    await limiter.store.close()
    await close_db()
    logger.info("Shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RateLimitStore] = None,
    audit_logger: Optional[AuditLogger] = None,
    engine: Optional[AsyncEngine] = None,
) -> FastAPI:
    """
    Build the application.

    Every collaborator can be injected so tests run against their own
    database, counters and audit sinks.
    """
    settings = settings or get_settings()
    configure_database(engine or build_engine(settings.database_url, echo=settings.debug))

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
    )

    if audit_logger is None:
        session_factory = get_session_factory() if settings.audit_to_database else None
        audit_logger = build_audit_logger(settings, session_factory)

    app.state.settings = settings
    app.state.store_injected = store is not None
    if store is None:
        store = InMemoryRateLimitStore(idle_ttl_seconds=settings.rate_limit_idle_ttl_seconds)
    app.state.audit_logger = audit_logger
    # An empty store is falsy (it has __len__), so test identity, not truth
    app.state.rate_limiter = RateLimiter(store, audit=audit_logger)
    app.state.suspicious_activity = SuspiciousActivityTracker(
        threshold=settings.suspicious_failure_threshold,
        window_seconds=settings.suspicious_window_seconds,
        retention_seconds=settings.suspicious_retention_seconds,
    )

    # Global ceiling
    app.state.limiter = create_global_limiter(settings)
    app.add_exception_handler(RateLimitExceeded, global_rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    setup_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, tags=["Health"])
    app.include_router(access.router)

    return app


app = create_app()
