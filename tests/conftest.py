"""Shared fixtures for sync engine tests.

Provides:
- FakePMClient: in-memory stand-in for PMApiClient (items to serve,
  captured export batches, optional failure or gate)
- FakeAdvisor: scripted AI collaborator (fixed answer, exception or delay)
- In-memory stores and a registry with Task and Project repositories
- make_installation: factory for valid Installation objects
- build_engine: wires resolver, pipelines, orchestrator and scheduler
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest

from src.pmsync.core.exceptions import ExternalAPIError
from src.pmsync.sync.conflicts import ConflictResolver
from src.pmsync.sync.exporter import ExportPipeline
from src.pmsync.sync.importer import ImportPipeline
from src.pmsync.sync.orchestrator import SyncOrchestrator
from src.pmsync.sync.scheduler import SyncScheduler
from src.pmsync.sync.schemas import (
    ConflictPolicy,
    EntityMapping,
    Installation,
    MappingDirection,
    PMProvider,
    SyncConfig,
)
from src.pmsync.sync.store import (
    EntityRegistry,
    InMemoryEntityRepository,
    InMemoryInstallationStore,
    InMemorySyncLogStore,
)

TASK_FIELDS = {"title": "summary", "status": "state", "assignee": "owner"}
PROJECT_FIELDS = {"name": "project_name"}


# ── Test Doubles ────────────────────────────────────────────────────────────


class FakePMClient:
    """In-memory PM tool keyed by resource name."""

    def __init__(self) -> None:
        self.items: dict[str, list[Any]] = {}
        self.exported: dict[str, list[list[dict[str, Any]]]] = {}
        self.fetch_calls: list[str] = []
        self.fail_resources: set[str] = set()
        self.gate: asyncio.Event | None = None
        self.fetch_started = asyncio.Event()

    async def fetch_items(self, resource: str, field_mappings: dict[str, str]) -> list[Any]:
        self.fetch_calls.append(resource)
        self.fetch_started.set()
        if self.gate is not None:
            await self.gate.wait()
        if resource in self.fail_resources:
            raise ExternalAPIError(f"PM tool answered 502 for {resource}", status_code=502)
        return list(self.items.get(resource, []))

    async def export_items(self, resource: str, items: list[dict[str, Any]]) -> int:
        if resource in self.fail_resources:
            raise ExternalAPIError(f"PM tool answered 502 for {resource}", status_code=502)
        self.exported.setdefault(resource, []).append(items)
        return len(items)


class FakeAdvisor:
    """Scripted AI collaborator."""

    def __init__(
        self,
        answer: Any = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.answer = answer
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def suggest(self, description: dict[str, Any], schema: dict[str, Any]) -> Any:
        self.calls.append(description)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer


@dataclass
class Engine:
    """Wired sync engine over in-memory collaborators."""

    registry: EntityRegistry
    tasks: InMemoryEntityRepository
    projects: InMemoryEntityRepository
    installations: InMemoryInstallationStore
    logs: InMemorySyncLogStore
    client: FakePMClient
    resolver: ConflictResolver
    orchestrator: SyncOrchestrator
    scheduler: SyncScheduler


# ── Fixtures ────────────────────────────────────────────────────────────────


@pytest.fixture
def make_installation():
    """Factory for a valid Jira installation with a Task mapping."""

    def _make(**overrides: Any) -> Installation:
        sync_config = overrides.pop("sync_config", None) or SyncConfig(
            interval_minutes=15,
            conflict_resolution=overrides.pop("policy", ConflictPolicy.EXTERNAL_WINS),
        )
        mappings = overrides.pop(
            "entity_mappings",
            [
                EntityMapping(
                    entity_type="Task",
                    external_resource="issues",
                    field_mappings=dict(TASK_FIELDS),
                    sync_direction=overrides.pop("direction", MappingDirection.BIDIRECTIONAL),
                )
            ],
        )
        values: dict[str, Any] = {
            "id": "inst-1",
            "provider": PMProvider.JIRA,
            "api_key": "secret-token",
            "api_endpoint": "https://pm.example.com",
            "entity_mappings": mappings,
            "sync_config": sync_config,
            "enabled": True,
        }
        values.update(overrides)
        return Installation(**values)

    return _make


@pytest.fixture
def fake_client() -> FakePMClient:
    return FakePMClient()


@pytest.fixture
def build_engine(fake_client):
    """Factory wiring the engine; pass advisor= for ai_suggest tests."""

    def _build(advisor: Any = None, concurrency: int = 5, ai_timeout: float | None = 1.0) -> Engine:
        tasks = InMemoryEntityRepository("Task")
        projects = InMemoryEntityRepository("Project")
        registry = EntityRegistry([tasks, projects])
        installations = InMemoryInstallationStore()
        logs = InMemorySyncLogStore()
        resolver = ConflictResolver(advisor=advisor, confidence_threshold=0.8, ai_timeout=ai_timeout)

        def factory(installation: Installation) -> FakePMClient:
            return fake_client

        orchestrator = SyncOrchestrator(
            registry=registry,
            installations=installations,
            logs=logs,
            importer=ImportPipeline(registry, resolver, client_factory=factory, concurrency=concurrency),
            exporter=ExportPipeline(registry, client_factory=factory),
        )
        scheduler = SyncScheduler(orchestrator, installations, actor="system:scheduler")
        return Engine(
            registry=registry,
            tasks=tasks,
            projects=projects,
            installations=installations,
            logs=logs,
            client=fake_client,
            resolver=resolver,
            orchestrator=orchestrator,
            scheduler=scheduler,
        )

    return _build
