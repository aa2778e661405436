"""FastAPI application factory.

Creates the app with logging middleware, Sentry, a lifespan that wires the
sync engine (database, stores, AI collaborator, scheduler), and the v1 API
router.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.pmsync.api.middleware import LoggingMiddleware
from src.pmsync.api.v1.router import router as v1_router
from src.pmsync.config import get_settings
from src.pmsync.core.database import close_db, get_session, init_db
from src.pmsync.core.logging import configure_structlog
from src.pmsync.core.monitoring import get_metrics_response, init_sentry


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: wire the sync engine on startup, stop it on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()

    if settings.SENTRY_DSN:
        init_sentry(dsn=settings.SENTRY_DSN, environment=settings.ENVIRONMENT.value)

    await init_db()

    # AI collaborator (optional -- ai_suggest falls back to latest_wins without it)
    advisor = None
    try:
        from src.pmsync.services.llm import get_llm_service
        from src.pmsync.sync.advisor import LLMConflictAdvisor

        llm_service = get_llm_service()
        if llm_service.router is not None:
            advisor = LLMConflictAdvisor(llm_service)
            log.info("sync.ai_advisor_initialized")
    except Exception:
        log.warning("sync.ai_advisor_init_failed", exc_info=True)

    try:
        from src.pmsync.sync.repository import (
            SQLEntityRepository,
            SQLInstallationStore,
            SQLSyncLogStore,
        )
        from src.pmsync.sync.service import build_sync_service
        from src.pmsync.sync.store import EntityRegistry

        registry = EntityRegistry(
            SQLEntityRepository(entity_type, session_factory=get_session)
            for entity_type in settings.get_entity_types()
        )
        service = build_sync_service(
            registry=registry,
            installations=SQLInstallationStore(session_factory=get_session),
            logs=SQLSyncLogStore(session_factory=get_session),
            advisor=advisor,
            settings=settings,
        )
        app.state.sync_service = service
        log.info("sync.service_initialized", entity_types=registry.entity_types())

        if settings.SYNC_SCHEDULER_ENABLED:
            await service.restore_schedules()
    except Exception:
        log.warning("sync.service_init_failed", exc_info=True)
        app.state.sync_service = None

    yield

    service = getattr(app.state, "sync_service", None)
    if service is not None:
        await service.scheduler.shutdown()
        log.info("sync.scheduler_stopped")

    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="PM Sync API",
        version="0.1.0",
        description="Bidirectional sync between local entities and external PM tools",
        lifespan=lifespan,
    )

    # Logging middleware (logs every request with timing)
    app.add_middleware(LoggingMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


# Module-level app for uvicorn
app = create_app()
