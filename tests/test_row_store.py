from __future__ import annotations

import asyncio
import json

import pytest

from catalog_extraction.persistence import JOB_HISTORY_RECORD, SCHEMA_RECORD, MemoryRecordStore
from catalog_extraction.resources import ResourceRegistry
from catalog_extraction.services.extraction.errors import (
    InvalidTransitionError,
    UnknownJobError,
    UnknownKeyError,
)
from catalog_extraction.services.extraction.models import (
    DONE,
    ERROR,
    EXTRACTING,
    PENDING,
    AttributeDetail,
    ExtractionOutcome,
    Job,
)
from catalog_extraction.services.extraction.schemas import SchemaItem, SchemaRegistry
from catalog_extraction.services.extraction.store import RowStore


def _outcome(store: RowStore, **values) -> ExtractionOutcome:
    attributes = {key: None for key in store.registry.keys()}
    for key, value in values.items():
        attributes[key] = AttributeDetail(schema_value=value, raw_value=str(value), visual_confidence=80)
    return ExtractionOutcome(attributes=attributes, tokens_used=10, model_used="gpt-4o", processing_time_ms=5)


async def _add(store: RowStore, job_id: str, name: str = "") -> Job:
    ref = store.resources.acquire(b"image-bytes")
    return await store.upsert(Job.create(job_id, name or f"{job_id}.jpg", ref, store.registry.get()))


async def _finish(store: RowStore, job_id: str, **values) -> Job:
    await store.begin_extraction(job_id)
    return await store.complete(job_id, _outcome(store, **values))


def _persisted_ids(persistence: MemoryRecordStore) -> list:
    return [entry["id"] for entry in json.loads(persistence.records.get(JOB_HISTORY_RECORD, "[]"))]


def test_only_terminal_jobs_are_persisted(store: RowStore, persistence: MemoryRecordStore) -> None:
    async def scenario() -> None:
        await _add(store, "a")
        await _add(store, "b")
        await _add(store, "c")
        await _finish(store, "a", color="RED")
        await store.begin_extraction("b")
        await store.fail("b", "blurry", "image_quality_rejected")
        await store.begin_extraction("c")

    asyncio.run(scenario())

    assert sorted(_persisted_ids(persistence)) == ["a", "b"]
    assert store.get("c").status == EXTRACTING


def test_pending_only_mutations_do_not_write(store: RowStore, persistence: MemoryRecordStore) -> None:
    asyncio.run(_add(store, "a"))

    assert persistence.job_saves == 0


def test_load_restores_schema_before_jobs(persistence: MemoryRecordStore) -> None:
    first = RowStore(SchemaRegistry(), ResourceRegistry(), persistence)

    async def seed() -> None:
        await first.load()
        first.registry.add_allowed_value("color", "MAROON")
        await first.save_schema()
        await _add(first, "done")
        await _finish(first, "done", color="MAROON")
        await _add(first, "pending")

    asyncio.run(seed())

    second = RowStore(SchemaRegistry(), ResourceRegistry(), persistence)
    asyncio.run(second.load())

    assert "MAROON" in second.registry.find("color").allowed_values
    assert [job.id for job in second.list()] == ["done"]
    assert second.get("done").attributes["color"].schema_value == "MAROON"


def test_load_rekeys_jobs_to_current_schema(persistence: MemoryRecordStore) -> None:
    job = Job.create("old", "old.jpg", None, [SchemaItem(key="legacy", label="LEGACY")])
    job.start()
    job.fail("nope")
    persistence.records[SCHEMA_RECORD] = json.dumps([{"key": "fit", "label": "FIT"}, {"key": "legacy", "label": "L"}])
    persistence.records[JOB_HISTORY_RECORD] = json.dumps([job.to_dict()])

    store = RowStore(SchemaRegistry(), ResourceRegistry(), persistence)
    asyncio.run(store.load())

    assert store.registry.keys() == ["fit", "legacy"]
    assert list(store.get("old").attributes) == ["fit", "legacy"]


def test_load_writes_default_schema_when_missing(store: RowStore, persistence: MemoryRecordStore) -> None:
    asyncio.run(store.load())

    saved = json.loads(persistence.records[SCHEMA_RECORD])
    assert [entry["key"] for entry in saved] == store.registry.keys()


def test_bulk_edit_updates_every_selected_job(store: RowStore) -> None:
    async def scenario() -> int:
        for job_id in ("a", "b", "c"):
            await _add(store, job_id)
            await _finish(store, job_id, color="BLUE")
        return await store.apply_bulk_edit(["a", "c"], "color", "RED")

    assert asyncio.run(scenario()) == 2
    for job_id in ("a", "c"):
        detail = store.get(job_id).attributes["color"]
        assert detail.schema_value == "RED"
        assert detail.visual_confidence == 100
        assert detail.mapping_confidence == 100
        assert detail.is_new_discovery is False
    assert store.get("b").attributes["color"].schema_value == "BLUE"


def test_bulk_edit_is_all_or_nothing(store: RowStore) -> None:
    async def scenario() -> None:
        await _add(store, "a")
        await _finish(store, "a", color="BLUE")
        await store.apply_bulk_edit(["a", "missing"], "color", "RED")

    with pytest.raises(UnknownJobError):
        asyncio.run(scenario())
    assert store.get("a").attributes["color"].schema_value == "BLUE"

    with pytest.raises(UnknownKeyError):
        asyncio.run(store.apply_bulk_edit(["a"], "sleeve", "LONG"))


def test_delete_releases_preview_once(store: RowStore, resources: ResourceRegistry) -> None:
    job = asyncio.run(_add(store, "a"))
    assert job.preview_ref in resources

    asyncio.run(store.delete("a"))

    assert job.preview_ref not in resources
    assert resources.freed_total == 1
    with pytest.raises(UnknownJobError):
        asyncio.run(store.delete("a"))
    assert resources.freed_total == 1


def test_clear_releases_everything(store: RowStore, resources: ResourceRegistry, persistence: MemoryRecordStore) -> None:
    async def scenario() -> int:
        await _add(store, "a")
        await _add(store, "b")
        await _finish(store, "a")
        return await store.clear()

    assert asyncio.run(scenario()) == 2
    assert len(store) == 0
    assert len(resources) == 0
    assert JOB_HISTORY_RECORD not in persistence.records


def test_request_reextract_resets_terminal_jobs(store: RowStore) -> None:
    async def scenario():
        await _add(store, "a")
        await _finish(store, "a", color="RED")
        return await store.request_reextract(["a"])

    jobs = asyncio.run(scenario())

    assert jobs[0].status == PENDING
    assert all(value is None for value in jobs[0].attributes.values())
    assert [job.id for job in store.pending()] == ["a"]


def test_request_reextract_rejects_pending_jobs(store: RowStore) -> None:
    async def scenario():
        await _add(store, "a")
        await _add(store, "b")
        await _finish(store, "b")
        await store.request_reextract(["b", "a"])

    with pytest.raises(InvalidTransitionError):
        asyncio.run(scenario())
    assert store.get("b").status == DONE


def test_fail_pending_records_error(store: RowStore) -> None:
    async def scenario() -> Job:
        await _add(store, "a")
        return await store.fail_pending("a", "image missing", "precondition_missing")

    job = asyncio.run(scenario())

    assert job.status == ERROR
    assert job.error_kind == "precondition_missing"


def test_stats_and_export(store: RowStore) -> None:
    async def scenario() -> None:
        for job_id in ("a", "b", "c", "d"):
            await _add(store, job_id)
        await _finish(store, "a", color="RED")
        await _finish(store, "b")
        await store.begin_extraction("c")
        await store.fail("c", "timeout", "transient_network")

    asyncio.run(scenario())

    assert store.stats() == {
        "total": 4,
        "pending": 1,
        "extracting": 0,
        "done": 2,
        "error": 1,
        "success_rate": 50,
        "total_tokens": 20,
        "total_processing_ms": 10,
        "average_processing_ms": 5,
    }
    snapshot = store.export_snapshot()
    assert [job.id for job in snapshot.rows] == ["a", "b"]
    assert snapshot.schema == store.registry.get()


def test_queries_return_copies(store: RowStore) -> None:
    asyncio.run(_add(store, "a"))

    copy = store.get("a")
    copy.status = DONE
    copy.attributes["color"] = AttributeDetail(schema_value="RED", raw_value="red")

    assert store.get("a").status == PENDING
    assert store.get("a").attributes["color"] is None


def _discovered(store: RowStore, key: str, value: str, confidence: int) -> ExtractionOutcome:
    outcome = _outcome(store)
    outcome.attributes[key] = AttributeDetail(
        schema_value=value,
        raw_value=value.lower(),
        is_new_discovery=True,
        visual_confidence=confidence,
    )
    return outcome


def test_discoveries_group_unmatched_values_across_done_jobs(store: RowStore) -> None:
    async def scenario() -> None:
        plan = [
            ("a", "neck", "MANDARIN", 90),
            ("b", "neck", "MANDARIN", 70),
            ("c", "neck", "MANDARIN", 80),
            ("d", "color", "TEAL", 95),
        ]
        for job_id, key, value, confidence in plan:
            await _add(store, job_id)
            await store.begin_extraction(job_id)
            await store.complete(job_id, _discovered(store, key, value, confidence))
        await _add(store, "e")
        await store.begin_extraction("e")
        await store.complete("e", _discovered(store, "color", "TEAL", 95))
        await store.request_reextract(["e"])

    asyncio.run(scenario())

    found = store.discoveries()

    assert [(d.key, d.value, d.frequency) for d in found] == [("neck", "MANDARIN", 3), ("color", "TEAL", 1)]
    assert found[0].confidence == 80
    assert found[0].job_ids == ["a", "b", "c"]
    assert found[0].is_promotable is True
    assert found[1].is_promotable is False
    assert store.discoveries(min_frequency=1)[1].is_promotable is True


def test_discoveries_drop_values_promoted_to_the_schema(store: RowStore) -> None:
    async def scenario() -> None:
        await _add(store, "a")
        await store.begin_extraction("a")
        await store.complete("a", _discovered(store, "neck", "MANDARIN", 90))

    asyncio.run(scenario())
    assert len(store.discoveries()) == 1

    store.registry.add_allowed_value("neck", "MANDARIN")

    assert store.discoveries() == []


def test_upsert_with_new_preview_releases_the_old_one(store: RowStore, resources: ResourceRegistry) -> None:
    async def scenario() -> Job:
        job = await _add(store, "a")
        job.preview_ref = resources.acquire(b"recompressed")
        return await store.upsert(job)

    job = asyncio.run(scenario())

    assert len(resources) == 1
    assert resources.freed_total == 1
    assert job.preview_ref in resources

    asyncio.run(store.upsert(store.get("a")))
    assert resources.freed_total == 1
