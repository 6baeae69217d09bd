import uuid

import pytest

from automation.automations import AutomationKind
from db.models import Inventory, Job, ProductionSchedule, WorkflowTracking
from db.store import RecordNotFoundError


@pytest.mark.asyncio
async def test_sequential_job_and_production_numbers(store, make_job, make_schedule):
    assert await store.next_job_number(2025) == "JOB-2025-001"

    job = await make_job("JOB-2025-001")
    await make_job("JOB-2025-002")
    await make_job("JOB-2024-031")
    await make_schedule(job, production_id="PROD-2025-001")

    assert await store.next_job_number(2025) == "JOB-2025-003"
    assert await store.next_production_id(2025) == "PROD-2025-002"


@pytest.mark.asyncio
async def test_aggregate_counts_tracking_by_stage_and_status(dispatcher, store, make_job):
    for number in ("JOB-2025-101", "JOB-2025-102"):
        job = await make_job(number)
        await dispatcher.trigger(AutomationKind.JOB_CREATED, job.id)

    rows = await store.aggregate(WorkflowTracking, ["stage", "status"], WorkflowTracking.stage.in_(["QUOTE", "ENGINEERING"]))

    assert sorted((r["stage"], r["status"], r["count"]) for r in rows) == [
        ("ENGINEERING", "PENDING", 2),
        ("QUOTE", "IN_PROGRESS", 2),
    ]


@pytest.mark.asyncio
async def test_find_supports_order_limit_and_skip(store, make_job):
    for n in range(1, 5):
        await make_job(f"JOB-2025-00{n}")

    page = await store.find(Job, order_by=Job.job_number, limit=2, skip=1)

    assert [j.job_number for j in page] == ["JOB-2025-002", "JOB-2025-003"]
    assert (await store.find_one(Job, Job.job_number == "JOB-2025-004")).job_name


@pytest.mark.asyncio
async def test_update_missing_row_raises(store):
    with pytest.raises(RecordNotFoundError):
        await store.update_by_id(Job, uuid.uuid4(), {"notes": "gone"})


@pytest.mark.asyncio
async def test_stage_changed_at_tracks_production_stage(store, make_job, make_schedule):
    job = await make_job()
    schedule = await make_schedule(job)
    first = schedule.stage_changed_at

    schedule = await store.update_by_id(ProductionSchedule, schedule.id, {"notes": "Forms oiled"})
    assert schedule.stage_changed_at == first

    schedule = await store.update_by_id(ProductionSchedule, schedule.id, {"production_stage": "IN_PROGRESS"})
    assert schedule.stage_changed_at >= first

    with pytest.raises(ValueError, match="derived"):
        await store.update_by_id(ProductionSchedule, schedule.id, {"stage_changed_at": first})


@pytest.mark.asyncio
async def test_low_stock_items_are_ordered_by_severity(store):
    for material, current in (("Rebar #5", 300), ("Strand 0.6in", 0), ("Cement Type III", 100), ("Form Oil", 900)):
        await store.create(Inventory, material_type=material, current_quantity=current, minimum_quantity=500, unit="UNITS")

    items = await store.low_stock_items()

    assert [(i.material_type, i.status) for i in items] == [
        ("Strand 0.6in", "OUT_OF_STOCK"),
        ("Cement Type III", "CRITICAL"),
        ("Rebar #5", "LOW"),
    ]
