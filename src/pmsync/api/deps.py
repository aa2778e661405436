"""FastAPI dependency injection for the sync API.

The actor performing an operation is passed explicitly in the X-Actor-ID
header and threaded through every write; there is no ambient current user.
"""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from src.pmsync.sync.service import PMIntegrationService

ACTOR_HEADER = "X-Actor-ID"


async def get_actor(request: Request) -> str:
    """Return the calling actor's identity.

    Raises:
        HTTPException(401): If the X-Actor-ID header is missing or blank.
    """
    actor = (request.headers.get(ACTOR_HEADER) or "").strip()
    if not actor:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{ACTOR_HEADER} header required",
        )
    return actor


def get_sync_service(request: Request) -> PMIntegrationService:
    """Retrieve PMIntegrationService from app.state, 503 if not available."""
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="PM sync not initialized",
        )
    return service
