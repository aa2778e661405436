"""Tests for the PM sync REST API.

Uses a minimal FastAPI app with the sync router and a service wired over
in-memory stores and FakePMClient, set on app.state like the lifespan does.
"""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.pmsync.config import Settings, get_settings
from src.pmsync.sync.schemas import ConflictPolicy, LocalRecord
from src.pmsync.sync.service import build_sync_service
from src.pmsync.sync.store import (
    EntityRegistry,
    InMemoryEntityRepository,
    InMemoryInstallationStore,
    InMemorySyncLogStore,
)

from tests.conftest import TASK_FIELDS

ACTOR = {"X-Actor-ID": "user:kim"}
INSTALLATION_BODY = {
    "id": "inst-1",
    "provider": "jira",
    "api_key": "secret-token",
    "api_endpoint": "https://pm.example.com",
    "entity_mappings": [
        {"entity_type": "Task", "external_resource": "issues", "field_mappings": TASK_FIELDS}
    ],
    "sync_config": {"interval_minutes": 15, "conflict_resolution": "external_wins"},
}


def _make_app(service):
    """Minimal FastAPI app with the v1 routers."""
    from fastapi import FastAPI

    from src.pmsync.api.middleware import LoggingMiddleware
    from src.pmsync.api.v1.router import router

    app = FastAPI()
    app.add_middleware(LoggingMiddleware)
    app.include_router(router)
    app.state.sync_service = service
    return app


@pytest_asyncio.fixture
async def api(fake_client):
    """Yield (client, service, tasks) over in-memory collaborators."""
    tasks = InMemoryEntityRepository("Task")
    service = build_sync_service(
        registry=EntityRegistry([tasks]),
        installations=InMemoryInstallationStore(),
        logs=InMemorySyncLogStore(),
        client_factory=lambda _: fake_client,
        settings=Settings(),
    )
    transport = ASGITransport(app=_make_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, service, tasks
    await service.scheduler.shutdown()


# ── Actor And Availability ──────────────────────────────────────────────────


async def test_missing_actor_header_is_rejected(api):
    client, _, _ = api
    response = await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY)
    assert response.status_code == 401
    assert "X-Actor-ID" in response.json()["detail"]


async def test_503_when_service_not_initialized():
    transport = ASGITransport(app=_make_app(None))
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/pm-sync/installations/inst-1/logs", headers=ACTOR)
    assert response.status_code == 503
    assert "not initialized" in response.json()["detail"]


async def test_request_id_header_is_set(api):
    client, _, _ = api
    response = await client.get("/api/v1/pm-sync/installations/ghost/logs", headers=ACTOR)
    assert "X-Request-ID" in response.headers


# ── Installations ───────────────────────────────────────────────────────────


async def test_initialize_sync(api):
    client, service, _ = api

    response = await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)

    assert response.status_code == 201
    data = response.json()
    assert data["enabled"] is True
    assert data["display_name"] == "Jira"
    assert data["entity_types"] == ["Task"]
    assert "api_key" not in data
    assert service.scheduler.is_scheduled("inst-1")


async def test_initialize_sync_rejects_unknown_entity_type(api):
    client, _, _ = api
    body = {
        **INSTALLATION_BODY,
        "entity_mappings": [
            {"entity_type": "Invoice", "external_resource": "bills", "field_mappings": {"a": "b"}}
        ],
    }

    response = await client.post("/api/v1/pm-sync/installations", json=body, headers=ACTOR)

    assert response.status_code == 400
    assert "Invoice" in response.json()["detail"]


async def test_initialize_sync_uses_configured_default_interval(api, monkeypatch):
    client, _, _ = api
    monkeypatch.setenv("SYNC_DEFAULT_INTERVAL_MINUTES", "45")
    get_settings.cache_clear()
    body = {k: v for k, v in INSTALLATION_BODY.items() if k != "sync_config"}

    try:
        response = await client.post("/api/v1/pm-sync/installations", json=body, headers=ACTOR)
    finally:
        get_settings.cache_clear()

    assert response.status_code == 201
    assert response.json()["interval_minutes"] == 45


async def test_disable_sync(api):
    client, service, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)

    response = await client.post("/api/v1/pm-sync/installations/inst-1/disable", headers=ACTOR)

    assert response.status_code == 200
    assert response.json()["enabled"] is False
    assert not service.scheduler.is_scheduled("inst-1")


async def test_disable_unknown_installation(api):
    client, _, _ = api
    response = await client.post("/api/v1/pm-sync/installations/ghost/disable", headers=ACTOR)
    assert response.status_code == 404


# ── Sync Passes ─────────────────────────────────────────────────────────────


async def test_perform_sync_returns_log(api, fake_client):
    client, _, tasks = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)
    fake_client.items["issues"] = [{"id": "J-1", "summary": "A"}, {"id": "J-2", "summary": "B"}]

    response = await client.post(
        "/api/v1/pm-sync/installations/inst-1/sync", json={"direction": "import"}, headers=ACTOR
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "completed"
    assert data["direction"] == "import"
    assert data["items_imported"] == 2
    assert data["triggered_by"] == "user:kim"
    assert len(await tasks.list()) == 2


async def test_perform_sync_without_body_is_bidirectional(api):
    client, _, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)

    response = await client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)

    assert response.status_code == 200
    assert response.json()["direction"] == "bidirectional"


async def test_perform_sync_lists_unresolved_conflicts(api, fake_client):
    client, _, tasks = api
    body = {**INSTALLATION_BODY, "sync_config": {"conflict_resolution": ConflictPolicy.MANUAL.value}}
    await client.post("/api/v1/pm-sync/installations", json=body, headers=ACTOR)
    tasks.seed(LocalRecord(id="rec-1", entity_type="Task", data={"status": "in_review"},
                           external_id="J-1", external_source="jira"))
    fake_client.items["issues"] = [{"id": "J-1", "state": "done"}]

    response = await client.post(
        "/api/v1/pm-sync/installations/inst-1/sync", json={"direction": "import"}, headers=ACTOR
    )

    data = response.json()
    assert data["status"] == "partial"
    [conflict] = data["unresolved_conflicts"]
    assert conflict["field"] == "status"
    assert conflict["local_value"] == "in_review"
    assert conflict["external_value"] == "done"
    assert conflict["resolved"] is False


async def test_perform_sync_unknown_installation(api):
    client, _, _ = api
    response = await client.post("/api/v1/pm-sync/installations/ghost/sync", headers=ACTOR)
    assert response.status_code == 404


async def test_perform_sync_on_disabled_installation(api):
    client, _, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)
    await client.post("/api/v1/pm-sync/installations/inst-1/disable", headers=ACTOR)

    response = await client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)

    assert response.status_code == 400
    assert response.json()["detail"] == "PM sync not configured"


async def test_perform_sync_while_running_is_409(api, fake_client):
    client, _, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)
    fake_client.gate = asyncio.Event()
    first = asyncio.create_task(
        client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)
    )
    await asyncio.wait_for(fake_client.fetch_started.wait(), timeout=1.0)

    response = await client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)
    assert response.status_code == 409

    fake_client.gate.set()
    assert (await first).status_code == 200


@pytest.mark.parametrize("direction", ["sideways", ""])
async def test_invalid_direction_is_422(api, direction):
    client, _, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)

    response = await client.post(
        "/api/v1/pm-sync/installations/inst-1/sync", json={"direction": direction}, headers=ACTOR
    )

    assert response.status_code == 422


# ── Logs And Stats ──────────────────────────────────────────────────────────


async def test_logs_and_stats(api, fake_client):
    client, _, _ = api
    await client.post("/api/v1/pm-sync/installations", json=INSTALLATION_BODY, headers=ACTOR)
    fake_client.items["issues"] = [{"id": "J-1", "summary": "A"}]
    await client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)
    await client.post("/api/v1/pm-sync/installations/inst-1/sync", headers=ACTOR)

    logs = await client.get("/api/v1/pm-sync/installations/inst-1/logs?limit=1", headers=ACTOR)
    stats = await client.get("/api/v1/pm-sync/installations/inst-1/stats", headers=ACTOR)

    assert logs.status_code == 200
    assert len(logs.json()) == 1
    assert stats.status_code == 200
    data = stats.json()
    assert data["total_syncs"] == 2
    assert data["successful"] == 2
    assert data["total_imported"] == 2
    assert data["last_sync"] is not None


async def test_logs_for_unknown_installation(api):
    client, _, _ = api
    response = await client.get("/api/v1/pm-sync/installations/ghost/stats", headers=ACTOR)
    assert response.status_code == 404
