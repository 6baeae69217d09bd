import json
import uuid

import pytest

from automation.changes import ChangeEvent, EntityType, Operation, normalize_change, validate_raw_change
from automation.errors import MalformedChangeEvent
from db.models import Job, ProductionSchedule

JOB_ID = uuid.UUID("6f0c3f0e-8a51-4a8e-9a55-1f2e0d1c0b01")


def test_normalize_redis_entry_with_bytes():
    raw = {
        b"entity": b"job",
        b"operation": b"update",
        b"id": str(JOB_ID).encode(),
        b"changed_fields": json.dumps(["stage", "timeline.quote_approved"]).encode(),
        b"snapshot": json.dumps({"stage": "ENGINEERING"}).encode(),
    }
    event = normalize_change(raw, stream_id=b"1730000000000-0")

    assert event.entity is EntityType.JOB
    assert event.operation is Operation.UPDATE
    assert event.id == JOB_ID
    assert event.changed_fields == {"stage", "timeline.quote_approved"}
    assert event.snapshot == {"stage": "ENGINEERING"}
    assert event.stream_id == "1730000000000-0"


def test_insert_without_fields_uses_snapshot_keys():
    event = normalize_change(
        {"entity": "inventory", "operation": "insert", "id": str(JOB_ID), "snapshot": {"status": "OK", "unit": "LB"}}
    )
    assert event.changed_fields == {"status", "unit"}


def test_changed_matches_sub_paths():
    event = ChangeEvent(
        entity=EntityType.JOB,
        operation=Operation.UPDATE,
        id=JOB_ID,
        changed_fields=frozenset({"timeline.quote_approved"}),
    )
    assert event.changed("timeline")
    assert event.changed("timeline.quote_approved")
    assert not event.changed("time")
    assert not event.changed("stage")


def test_to_raw_round_trips_through_normalize():
    event = ChangeEvent(
        entity=EntityType.PRODUCTION_SCHEDULE,
        operation=Operation.UPDATE,
        id=JOB_ID,
        changed_fields=frozenset({"production_stage"}),
        snapshot={"production_stage": "IN_PROGRESS"},
    )
    assert normalize_change(event.to_raw()) == event


@pytest.mark.parametrize(
    "raw,message",
    [
        ({"operation": "update", "id": str(JOB_ID)}, "Missing required field: entity"),
        ({"entity": "customer", "operation": "update", "id": str(JOB_ID)}, "Unknown entity"),
        ({"entity": "job", "operation": "delete", "id": str(JOB_ID)}, "Unsupported operation"),
        ({"entity": "job", "operation": "update", "id": "JOB-2025-100"}, "Invalid id"),
        ({"entity": "job", "operation": "update", "id": str(JOB_ID), "changed_fields": "{not json"}, "not valid JSON"),
        ({"entity": "job", "operation": "update", "id": str(JOB_ID), "changed_fields": "[1, 2]"}, "list of field paths"),
        ({"entity": "job", "operation": "update", "id": str(JOB_ID), "snapshot": "[]"}, "snapshot must be an object"),
    ],
)
def test_malformed_records_raise(raw, message):
    with pytest.raises(MalformedChangeEvent, match=message):
        normalize_change(raw)


def test_validate_raw_change_lists_every_missing_field():
    assert validate_raw_change({"entity": "", "id": None}) == [
        "Missing required field: entity",
        "Missing required field: operation",
        "Missing required field: id",
    ]


@pytest.mark.asyncio
async def test_store_publishes_only_changed_paths(store, feed, make_job):
    job = await make_job()
    await store.update_by_id(Job, job.id, {"timeline.due_date": "2031-06-30", "notes": "Crane on site"})
    await store.update_by_id(Job, job.id, {"notes": "Crane on site"})

    insert, update = [normalize_change(fields) for fields in feed.events(EntityType.JOB)]
    assert insert.operation is Operation.INSERT
    assert "job_number" in insert.changed_fields
    assert update.changed_fields == {"timeline.due_date", "notes", "days_offset"}
    assert update.snapshot["timeline"]["due_date"] == "2031-06-30"


@pytest.mark.asyncio
async def test_quality_check_append_publishes_history(store, feed, make_job, make_schedule):
    job = await make_job()
    schedule = await make_schedule(job)

    await store.append_quality_check(schedule.id, passed=True, inspector="R. Lee")
    await store.append_quality_check(schedule.id, passed=False, failure_reason="Cracking at lift inserts")

    events = [normalize_change(fields) for fields in feed.events(EntityType.PRODUCTION_SCHEDULE)]
    last = events[-1]
    assert last.changed_fields == {"quality_checks"}
    assert [c["sequence"] for c in last.snapshot["quality_checks"]] == [1, 2]
    assert last.snapshot["quality_checks"][-1]["failure_reason"] == "Cracking at lift inserts"

    reloaded = await store.find_by_id(ProductionSchedule, schedule.id)
    assert [c.passed for c in reloaded.quality_checks] == [True, False]
