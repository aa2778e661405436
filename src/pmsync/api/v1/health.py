"""Health check endpoints.

Provides liveness (/health) and readiness (/health/ready) checks. Readiness
covers the database, the AI collaborator's provider keys and the sync
scheduler.
"""

from __future__ import annotations

from fastapi import APIRouter, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from src.pmsync.config import get_settings
from src.pmsync.core.database import get_engine

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check():
    """Basic liveness check. No external dependencies are checked."""
    settings = get_settings()
    return {"status": "ok", "environment": settings.ENVIRONMENT.value}


async def _check_dependencies(request: Request) -> dict:
    """Check database, LiteLLM keys and scheduler state. Returns check results dict."""
    checks: dict = {"database": "ok", "litellm": "ok", "scheduler": "ok"}

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        checks["database"] = "error"
        checks["database_error"] = str(e)

    settings = get_settings()
    if not (settings.ANTHROPIC_API_KEY or settings.OPENAI_API_KEY):
        # ai_suggest still works, always falling back to latest_wins
        checks["litellm"] = "no_keys"

    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        checks["scheduler"] = "error"
        checks["scheduler_error"] = "PM sync not initialized"
    else:
        checks["active_schedules"] = len(service.scheduler.active_schedules())

    return checks


@router.get("/health/ready")
async def readiness_check(request: Request):
    """Readiness check: 200 if all critical dependencies pass, 503 otherwise."""
    checks = await _check_dependencies(request)
    all_healthy = (
        checks.get("database") == "ok"
        and checks.get("scheduler") == "ok"
        and checks.get("litellm") in ("ok", "no_keys")
    )

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ready" if all_healthy else "degraded",
            "checks": checks,
        },
    )
