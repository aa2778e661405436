"""Async HTTP client for the PM integration endpoints.

PMApiClient talks to one installation's api_endpoint:
- POST {api_endpoint}/pm/import  {resource, field_mappings} -> {items}
- POST {api_endpoint}/pm/export  {resource, items}          -> {count}

Retries follow the same tenacity pattern as the rest of the codebase
(3 attempts, exponential backoff 1-10s). Transport errors and 5xx answers
are retried; 4xx answers fail immediately. Whatever survives the retries
is raised as ExternalAPIError so the orchestrator can isolate it to one
mapping.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from src.pmsync.config import get_settings
from src.pmsync.core.exceptions import ExternalAPIError
from src.pmsync.sync.schemas import Installation

logger = structlog.get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


_pm_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception(_is_retryable),
    reraise=True,
)


class PMApiClient:
    """Async client for one installation's PM integration endpoint.

    Args:
        api_endpoint: Base URL of the integration endpoint.
        api_key: Bearer token sent on every request.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests inject MockTransport).
    """

    def __init__(
        self,
        api_endpoint: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = api_endpoint.rstrip("/")
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def for_installation(
        cls,
        installation: Installation,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> PMApiClient:
        """Build a client from an installation's endpoint and credentials."""
        settings = get_settings()
        return cls(
            api_endpoint=installation.api_endpoint,
            api_key=installation.api_key,
            timeout=settings.PM_HTTP_TIMEOUT,
            transport=transport,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self._headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    @_pm_retry
    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(f"{self._base_url}{path}", json=payload)
            response.raise_for_status()
            return response.json()

    async def _call(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        endpoint = f"{self._base_url}{path}"
        try:
            data = await self._post(path, payload)
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code
            logger.warning("pm_client.http_error", endpoint=endpoint, status_code=status_code)
            raise ExternalAPIError(
                f"PM tool answered {status_code} for {path}",
                status_code=status_code,
                endpoint=endpoint,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("pm_client.transport_error", endpoint=endpoint, error=str(exc))
            raise ExternalAPIError(
                f"PM tool unreachable at {path}: {type(exc).__name__}",
                endpoint=endpoint,
            ) from exc
        except ValueError as exc:
            raise ExternalAPIError(
                f"PM tool returned a non-JSON body for {path}", endpoint=endpoint
            ) from exc

        if not isinstance(data, dict):
            raise ExternalAPIError(
                f"PM tool returned {type(data).__name__} for {path}, expected an object",
                endpoint=endpoint,
            )
        return data

    async def fetch_items(
        self,
        resource: str,
        field_mappings: dict[str, str],
    ) -> list[Any]:
        """Fetch all items of one external resource.

        Items are returned as-is; a malformed item is the import pipeline's
        problem, not the transport's.

        Raises:
            ExternalAPIError: On network failure or an unusable response body.
        """
        data = await self._call(
            "/pm/import",
            {"resource": resource, "field_mappings": field_mappings},
        )
        items = data.get("items", [])
        if not isinstance(items, list):
            raise ExternalAPIError(
                f"PM tool returned malformed items for '{resource}'",
                endpoint=f"{self._base_url}/pm/import",
            )
        logger.info("pm_client.items_fetched", resource=resource, count=len(items))
        return items

    async def export_items(self, resource: str, items: list[dict[str, Any]]) -> int:
        """Submit one batch of items to the PM tool.

        Returns:
            Number of items the tool reports as accepted (defaults to the
            batch size when the tool does not report a count).

        Raises:
            ExternalAPIError: On network failure or an unusable response body.
        """
        data = await self._call("/pm/export", {"resource": resource, "items": items})
        count = data.get("count", len(items))
        if isinstance(count, bool) or not isinstance(count, int):
            raise ExternalAPIError(
                f"PM tool returned a malformed export count for '{resource}'",
                endpoint=f"{self._base_url}/pm/export",
            )
        logger.info("pm_client.items_exported", resource=resource, count=count)
        return count
