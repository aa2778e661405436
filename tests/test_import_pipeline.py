"""Tests for ImportPipeline: create, conflict update, deferral, item isolation."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from src.pmsync.core.exceptions import ConfigurationError, ExternalAPIError
from src.pmsync.sync.conflicts import ConflictResolver
from src.pmsync.sync.importer import ImportPipeline
from src.pmsync.sync.schemas import (
    ConflictPolicy,
    EntityMapping,
    ErrorScope,
    LocalRecord,
    SyncConfig,
)

from tests.conftest import TASK_FIELDS, FakeAdvisor

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(build_engine):
    return build_engine()


def _pipeline(engine, advisor=None) -> ImportPipeline:
    resolver = engine.resolver if advisor is None else ConflictResolver(
        advisor=advisor, confidence_threshold=0.8
    )
    return ImportPipeline(engine.registry, resolver, client_factory=lambda _: engine.client)


def _seed_task(engine, **data) -> LocalRecord:
    return engine.tasks.seed(
        LocalRecord(
            id="rec-1",
            entity_type="Task",
            data=data,
            external_id="J-1",
            external_source="jira",
            updated_at=T0,
        )
    )


# ── Creation ────────────────────────────────────────────────────────────────


class TestCreate:
    async def test_unknown_items_create_linked_records(self, engine, make_installation):
        installation = make_installation()
        engine.client.items["issues"] = [
            {"id": "J-1", "summary": "Fix login", "state": "open", "priority": "high"},
            {"id": 42, "summary": "Write docs"},
        ]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.count == 2
        assert result.conflicts == 0
        assert result.errors == []
        records = {r.external_id: r for r in await engine.tasks.list()}
        assert records["J-1"].data == {"title": "Fix login", "status": "open"}
        assert records["J-1"].external_source == "jira"
        assert records["42"].data == {"title": "Write docs"}
        assert {entry[2] for entry in engine.tasks.audit} == {"user:kim"}

    async def test_empty_resource_imports_nothing(self, engine, make_installation):
        installation = make_installation()
        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )
        assert engine.client.fetch_calls == ["issues"]
        assert result.count == 0
        assert await engine.tasks.list() == []

    async def test_duplicate_ids_in_one_batch_create_one_record(self, engine, make_installation):
        installation = make_installation()
        engine.client.items["issues"] = [
            {"id": "J-7", "summary": "First"},
            {"id": "J-7", "summary": "Second"},
        ]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        records = await engine.tasks.find({"external_id": "J-7"})
        assert len(records) == 1
        assert result.count == 2
        assert result.errors == []


# ── Conflicts ───────────────────────────────────────────────────────────────


class TestConflictUpdate:
    async def test_external_wins_updates_record(self, engine, make_installation):
        installation = make_installation(policy=ConflictPolicy.EXTERNAL_WINS)
        _seed_task(engine, title="Fix login", status="in_review", note="keep me")
        engine.client.items["issues"] = [{"id": "J-1", "summary": "Fix login", "state": "done"}]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="system:scheduler"
        )

        assert result.count == 1
        assert result.conflicts == 1
        assert result.conflicts_resolved == 1
        record = await engine.tasks.get("rec-1")
        assert record.data == {"title": "Fix login", "status": "done", "note": "keep me"}
        assert result.conflict_details[0].conflict.field == "status"

    async def test_latest_wins_keeps_newer_local_value(self, engine, make_installation):
        installation = make_installation(policy=ConflictPolicy.LATEST_WINS)
        _seed_task(engine, status="in_review")
        older = (T0 - timedelta(hours=1)).isoformat()
        engine.client.items["issues"] = [{"id": "J-1", "state": "done", "updated_at": older}]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.conflicts_resolved == 1
        record = await engine.tasks.get("rec-1")
        assert record.data["status"] == "in_review"

    async def test_other_provider_link_is_not_matched(self, engine, make_installation):
        installation = make_installation()
        engine.tasks.seed(
            LocalRecord(id="rec-a", entity_type="Task", data={"title": "A"},
                        external_id="J-1", external_source="asana", updated_at=T0)
        )
        engine.client.items["issues"] = [{"id": "J-1", "summary": "B"}]

        await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert len(await engine.tasks.find({"external_id": "J-1"})) == 2

    async def test_out_of_range_numeric_timestamp_still_imports(self, engine, make_installation):
        installation = make_installation(policy=ConflictPolicy.EXTERNAL_WINS)
        _seed_task(engine, title="Old")
        engine.client.items["issues"] = [{"id": "J-1", "summary": "New", "updated_at": 1e20}]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.errors == []
        assert result.count == 1
        assert (await engine.tasks.get("rec-1")).data["title"] == "New"


class TestDeferred:
    async def test_low_confidence_leaves_record_untouched(self, make_installation, build_engine):
        advisor = FakeAdvisor(answer={"choice": "external", "confidence": 0.62})
        engine = build_engine(advisor=advisor)
        installation = make_installation(
            sync_config=SyncConfig(conflict_resolution=ConflictPolicy.AI_SUGGEST)
        )
        _seed_task(engine, title="Fix login", status="in_review")
        engine.client.items["issues"] = [{"id": "J-1", "summary": "Fix login", "state": "done"}]

        result = await _pipeline(engine, advisor=advisor).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.count == 0
        assert result.conflicts == 1
        assert result.conflicts_resolved == 0
        assert result.unresolved == 1
        assert result.deferred_record_ids == ["rec-1"]
        detail = result.conflict_details[0]
        assert detail.ai_confidence == pytest.approx(0.62)
        record = await engine.tasks.get("rec-1")
        assert record.data["status"] == "in_review"
        assert record.updated_at == T0

    async def test_one_pending_conflict_defers_the_whole_record(self, engine, make_installation):
        installation = make_installation(policy=ConflictPolicy.MANUAL)
        _seed_task(engine, title="Old title", status="in_review")
        engine.client.items["issues"] = [{"id": "J-1", "summary": "New title", "state": "done"}]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.conflicts == 2
        assert all(not c.resolved for c in result.conflict_details)
        assert result.deferred_record_ids == ["rec-1"]
        record = await engine.tasks.get("rec-1")
        assert record.data == {"title": "Old title", "status": "in_review"}


# ── Failure Isolation ───────────────────────────────────────────────────────


class TestItemIsolation:
    async def test_malformed_items_become_item_errors(self, engine, make_installation):
        installation = make_installation()
        engine.client.items["issues"] = [
            {"id": "J-1", "summary": "Good"},
            "not-an-object",
            {"summary": "no id"},
            {"id": "J-2", "summary": "Also good"},
        ]

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.count == 2
        assert len(result.errors) == 2
        assert all(e.scope == ErrorScope.ITEM for e in result.errors)
        assert {e.error_type for e in result.errors} == {"ItemProcessingError"}

    async def test_repository_failure_on_one_item_is_isolated(self, engine, make_installation):
        installation = make_installation()
        engine.client.items["issues"] = [{"id": "J-1", "summary": "A"}, {"id": "J-2", "summary": "B"}]
        original_create = engine.tasks.create

        async def flaky_create(data, **kwargs):
            if kwargs.get("external_id") == "J-2":
                raise RuntimeError("disk full")
            return await original_create(data, **kwargs)

        engine.tasks.create = flaky_create

        result = await _pipeline(engine).import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.count == 1
        assert result.errors[0].external_id == "J-2"
        assert result.errors[0].message == "disk full"

    async def test_fetch_failure_propagates(self, engine, make_installation):
        installation = make_installation()
        engine.client.fail_resources.add("issues")

        with pytest.raises(ExternalAPIError):
            await _pipeline(engine).import_all(
                installation, installation.entity_mappings[0], actor="user:kim"
            )

    async def test_unknown_entity_type_raises_configuration_error(self, engine, make_installation):
        installation = make_installation()
        mapping = EntityMapping(entity_type="Invoice", external_resource="bills",
                                field_mappings=dict(TASK_FIELDS))

        with pytest.raises(ConfigurationError):
            await _pipeline(engine).import_all(installation, mapping, actor="user:kim")


# ── Concurrency ─────────────────────────────────────────────────────────────


class TestConcurrencyBound:
    async def test_items_in_flight_never_exceed_the_limit(self, engine, make_installation):
        installation = make_installation()
        engine.client.items["issues"] = [{"id": f"J-{n}", "summary": f"Task {n}"} for n in range(10)]
        original_find = engine.tasks.find
        active = 0
        peak = 0

        async def tracked_find(query):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            try:
                await asyncio.sleep(0.01)
                return await original_find(query)
            finally:
                active -= 1

        engine.tasks.find = tracked_find
        pipeline = ImportPipeline(
            engine.registry, engine.resolver, client_factory=lambda _: engine.client, concurrency=2
        )

        result = await pipeline.import_all(
            installation, installation.entity_mappings[0], actor="user:kim"
        )

        assert result.count == 10
        assert peak == 2
