"""Tests for ExportPipeline batch submission."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.pmsync.core.exceptions import ExternalAPIError
from src.pmsync.sync.exporter import ExportPipeline, build_export_item
from src.pmsync.sync.schemas import EntityMapping, LocalRecord

from tests.conftest import TASK_FIELDS

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
MAPPING = EntityMapping(entity_type="Task", external_resource="issues", field_mappings=dict(TASK_FIELDS))


@pytest.fixture
def engine(build_engine):
    return build_engine()


def _pipeline(engine) -> ExportPipeline:
    return ExportPipeline(engine.registry, client_factory=lambda _: engine.client)


class TestBuildExportItem:
    def test_linked_record_carries_external_id(self):
        record = LocalRecord(id="r", entity_type="Task", data={"title": "A", "secret": 1},
                             external_id="J-1", external_source="jira")
        assert build_export_item(record, MAPPING, "jira") == {"summary": "A", "id": "J-1"}

    def test_unlinked_or_foreign_record_has_no_id(self):
        unlinked = LocalRecord(id="r", entity_type="Task", data={"title": "A"})
        foreign = LocalRecord(id="r", entity_type="Task", data={"title": "A"},
                              external_id="AS-1", external_source="asana")
        assert build_export_item(unlinked, MAPPING, "jira") == {"summary": "A"}
        assert build_export_item(foreign, MAPPING, "jira") == {"summary": "A"}


class TestExportAll:
    async def test_empty_selection_makes_no_call(self, engine, make_installation):
        result = await _pipeline(engine).export_all(make_installation(), MAPPING)

        assert result.count == 0
        assert engine.client.exported == {}

    async def test_records_submitted_as_one_batch(self, engine, make_installation):
        await engine.tasks.create({"title": "A", "status": "open"}, actor="user:kim")
        await engine.tasks.create({"title": "B"}, actor="user:kim", external_id="J-9",
                                  external_source="jira")

        result = await _pipeline(engine).export_all(make_installation(), MAPPING)

        assert result.count == 2
        batches = engine.client.exported["issues"]
        assert len(batches) == 1
        assert sorted(batches[0], key=lambda i: i["summary"]) == [
            {"summary": "A", "state": "open"},
            {"summary": "B", "id": "J-9"},
        ]

    async def test_since_filters_unchanged_records(self, engine, make_installation):
        engine.tasks.seed(LocalRecord(id="old", entity_type="Task", data={"title": "Old"},
                                      updated_at=T0 - timedelta(days=1)))
        engine.tasks.seed(LocalRecord(id="new", entity_type="Task", data={"title": "New"},
                                      updated_at=T0 + timedelta(minutes=1)))

        result = await _pipeline(engine).export_all(make_installation(), MAPPING, since=T0)

        assert result.count == 1
        assert engine.client.exported["issues"][0] == [{"summary": "New"}]

    async def test_excluded_records_are_left_out_of_the_batch(self, engine, make_installation):
        engine.tasks.seed(LocalRecord(id="held", entity_type="Task", data={"title": "Held"},
                                      external_id="J-1", external_source="jira", updated_at=T0))
        engine.tasks.seed(LocalRecord(id="free", entity_type="Task", data={"title": "Free"},
                                      updated_at=T0))

        result = await _pipeline(engine).export_all(make_installation(), MAPPING, exclude={"held"})

        assert result.count == 1
        assert engine.client.exported["issues"] == [[{"summary": "Free"}]]

    async def test_excluding_every_record_makes_no_call(self, engine, make_installation):
        engine.tasks.seed(LocalRecord(id="held", entity_type="Task", data={"title": "Held"},
                                      updated_at=T0))

        result = await _pipeline(engine).export_all(make_installation(), MAPPING, exclude={"held"})

        assert result.count == 0
        assert engine.client.exported == {}

    async def test_batch_failure_raises(self, engine, make_installation):
        await engine.tasks.create({"title": "A"}, actor="user:kim")
        engine.client.fail_resources.add("issues")

        with pytest.raises(ExternalAPIError):
            await _pipeline(engine).export_all(make_installation(), MAPPING)
