import pytest
from conftest import PM_ID, audits, notifications_for

from automation.effects import AppendAudit, CreateNotification, CreateTracking, Effects
from automation.executor import EffectExecutor
from db.models import AuditLog


def _alert_and_audit(job, key: str) -> Effects:
    effects = Effects()
    effects.notifications.append(
        CreateNotification(
            recipient_id=PM_ID,
            type="INFO",
            priority="NORMAL",
            title="New Job Assigned",
            message=f"You have been assigned to {job.job_number}",
            related_entity={"entity_type": "JOB", "entity_id": str(job.id)},
        )
    )
    effects.audits.append(
        AppendAudit(
            event_type="JOB_CREATED",
            entity_type="JOB",
            entity_id=job.id,
            entity_name=job.job_number,
            action="Automation: New job created",
            dedupe_key=key,
        )
    )
    return effects


@pytest.mark.asyncio
async def test_duplicate_dedupe_key_is_not_appended(audit, store, make_job):
    job = await make_job()

    first = await audit.append("JOB_CREATED", "JOB", job.id, job.job_number, None, "created", dedupe_key="job_created:x")
    second = await audit.append("JOB_CREATED", "JOB", job.id, job.job_number, None, "created", dedupe_key="job_created:x")

    assert first is not None
    assert second is None
    assert await store.count(AuditLog, AuditLog.dedupe_key == "job_created:x") == 1


@pytest.mark.asyncio
async def test_unkeyed_entries_may_repeat(audit, store, make_job):
    job = await make_job()

    for _ in range(2):
        assert await audit.append("STATUS_CHANGED", "JOB", job.id, job.job_number, None, "edited") is not None

    assert len(await audits(store, "STATUS_CHANGED")) == 2


@pytest.mark.asyncio
async def test_recorded_key_drops_notifications_and_audits(store, audit, notifications, make_job):
    job = await make_job()
    executor = EffectExecutor(store, audit, notifications)

    assert await executor.apply(_alert_and_audit(job, "job_created:1")) == 2
    assert await executor.apply(_alert_and_audit(job, "job_created:1")) == 0

    assert len(await notifications_for(store, PM_ID)) == 1
    assert len(await audits(store, "JOB_CREATED")) == 1


@pytest.mark.asyncio
async def test_lost_tracking_race_drops_notifications_and_audits(store, audit, notifications, make_job):
    job = await make_job()
    executor = EffectExecutor(store, audit, notifications)
    quote = CreateTracking(job_id=job.id, job_number=job.job_number, stage="QUOTE", status="IN_PROGRESS")

    winner = _alert_and_audit(job, "job_created:winner")
    winner.tracking_creates.append(quote)
    loser = _alert_and_audit(job, "job_created:loser")
    loser.tracking_creates.append(quote)

    assert await executor.apply(winner) == 3
    assert await executor.apply(loser) == 0

    assert len(await notifications_for(store, PM_ID)) == 1
    assert [a.dedupe_key for a in await audits(store, "JOB_CREATED")] == ["job_created:winner"]
