"""
Automation kinds — the reactions the engine can run.

Every kind is one Automation subclass registered against a closed
AutomationKind enum. A reaction is two steps:

    state   = await automation.load(store, ctx)    # None → referenced row gone, no effect
    effects = automation.plan(state, ctx)          # pure; empty → target already reached

| Kind                   | Trigger                                   | Audit               |
|------------------------|-------------------------------------------|---------------------|
| JOB_CREATED            | Job inserted                              | JOB_CREATED         |
| QUOTE_APPROVED         | Job.status→APPROVED or Job.stage→ENGINEERING | STATUS_CHANGED   |
| ENGINEERING_COMPLETE   | Job.stage→PRODUCTION                      | STAGE_CHANGED       |
| PRODUCTION_STARTED     | Schedule.production_stage→IN_PROGRESS     | PRODUCTION_STARTED  |
| QUALITY_CHECK_FAILED   | newest quality check did not pass         | QUALITY_CHECK       |
| SHIP_READY             | Schedule.production_stage→FINISHED        | PRODUCTION_COMPLETE |
| DELIVERY_COMPLETE      | Job.stage→COMPLETE                        | DELIVERY_COMPLETE   |
| OVERDUE_MILESTONE      | overdue sweep (time-driven)               | AUTOMATION_TRIGGERED|
| MATERIAL_LOW           | Inventory.status→LOW or CRITICAL          | MATERIAL_ORDERED    |
| JOB_CANCELLED          | Job.status→CANCELLED                      | STATUS_CHANGED      |

Idempotence: stage-advance kinds diff against current rows, so a replay
plans nothing. Event-style kinds also stamp their audit entry with a
dedupe key and skip notify/audit once that key is recorded.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, ClassVar

from automation.changes import ChangeEvent
from automation.effects import (
    AppendAudit,
    CreateNotification,
    Effects,
    UpdateJob,
    UpdateSchedule,
    TransitionTracking,
)
from automation.errors import UnknownAutomation
from automation.workflow import (
    STAGE_ORDER,
    initial_tracking,
    plan_cancellation,
    plan_stage_advance,
    stage_index,
)
from db.models import (
    AuditLog,
    Inventory,
    InventoryStatus,
    Job,
    JobStatus,
    ProductionSchedule,
    Stage,
    TrackingStatus,
    WorkflowTracking,
)
from db.store import EntityStore


class AutomationKind(str, Enum):
    JOB_CREATED = "job_created"
    QUOTE_APPROVED = "quote_approved"
    ENGINEERING_COMPLETE = "engineering_complete"
    PRODUCTION_STARTED = "production_started"
    QUALITY_CHECK_FAILED = "quality_check_failed"
    SHIP_READY = "ship_ready"
    DELIVERY_COMPLETE = "delivery_complete"
    OVERDUE_MILESTONE = "overdue_milestone"
    MATERIAL_LOW = "material_low"
    JOB_CANCELLED = "job_cancelled"


@dataclass(frozen=True)
class AutomationContext:
    entity_id: uuid.UUID
    now: datetime = field(default_factory=datetime.utcnow)
    event: ChangeEvent | None = None
    sweep_id: str | None = None
    cure_days: int = 7


# ── State loaded before planning ──────────────────────────────────────────


@dataclass
class JobState:
    job: Job
    trackings: dict[str, WorkflowTracking]
    recorded: bool = False


@dataclass
class ProductionState:
    schedule: ProductionSchedule
    job: Job
    trackings: dict[str, WorkflowTracking]
    recorded: bool = False


@dataclass
class OverdueState:
    item: WorkflowTracking
    job: Job
    recorded: bool = False


@dataclass
class InventoryState:
    item: Inventory
    recorded: bool = False


async def _trackings(store: EntityStore, job_id: uuid.UUID) -> dict[str, WorkflowTracking]:
    rows = await store.find(WorkflowTracking, WorkflowTracking.job_id == job_id)
    return {row.stage: row for row in rows}


async def _recorded(store: EntityStore, dedupe_key: str) -> bool:
    return await store.count(AuditLog, AuditLog.dedupe_key == dedupe_key) > 0


def _job_ref(job: Job) -> dict[str, Any]:
    return {"entity_type": "JOB", "entity_id": str(job.id), "entity_name": job.job_number}


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


# ── Registry ──────────────────────────────────────────────────────────────


class Automation(ABC):
    kind: ClassVar[AutomationKind]

    @abstractmethod
    async def load(self, store: EntityStore, ctx: AutomationContext) -> Any | None:
        """Read the state the plan needs; None if the referenced row is gone."""
        ...

    @abstractmethod
    def plan(self, state: Any, ctx: AutomationContext) -> Effects:
        ...

    def dedupe_key(self, state: Any, ctx: AutomationContext) -> str | None:
        return None


_AUTOMATION_REGISTRY: dict[AutomationKind, type[Automation]] = {}


def register_automation(cls: type[Automation]) -> type[Automation]:
    """Decorator: register an automation class for its kind."""
    _AUTOMATION_REGISTRY[cls.kind] = cls
    return cls


def get_automation(kind: AutomationKind | str) -> Automation:
    try:
        kind = AutomationKind(kind)
    except ValueError as exc:
        raise UnknownAutomation(f"Unknown automation kind: {kind!r}") from exc
    return _AUTOMATION_REGISTRY[kind]()


# ── Stage advances (2, 3, 6, 7) ───────────────────────────────────────────


def plan_job_advance(
    job: Job,
    trackings: dict[str, WorkflowTracking],
    target: Stage,
    timeline_key: str,
    now: datetime,
    audit: dict[str, Any],
    complete_target: bool = False,
    status: str | None = None,
) -> Effects:
    """
    Shared plan for reactions that move a job to `target`.

    `audit` carries event_type/entity_type/entity_id/entity_name/action/
    details; it is only emitted when some state actually changes.
    """
    effects = Effects()
    patch: dict[str, Any] = {}
    if stage_index(job.stage) < STAGE_ORDER.index(target):
        patch["stage"] = target.value
    if not (job.timeline or {}).get(timeline_key):
        patch[f"timeline.{timeline_key}"] = now
    if status and job.status != status:
        patch["status"] = status
    if patch:
        effects.job_updates.append(UpdateJob(job_id=job.id, patch=patch))

    effects.tracking_transitions.extend(
        plan_stage_advance(job.stage, trackings, target, now, complete_target=complete_target)
    )

    if effects.changes_state:
        effects.audits.append(
            AppendAudit(
                previous_value={"stage": job.stage, "status": job.status},
                new_value={"stage": patch.get("stage", job.stage), "status": patch.get("status", job.status)},
                **audit,
            )
        )
    return effects


class _JobAutomation(Automation):
    async def load(self, store: EntityStore, ctx: AutomationContext) -> JobState | None:
        job = await store.find_by_id(Job, ctx.entity_id)
        if job is None:
            return None
        state = JobState(job=job, trackings=await _trackings(store, job.id))
        key = self.dedupe_key(state, ctx)
        if key:
            state.recorded = await _recorded(store, key)
        return state


class _ProductionAutomation(Automation):
    async def load(self, store: EntityStore, ctx: AutomationContext) -> ProductionState | None:
        schedule = await store.find_by_id(ProductionSchedule, ctx.entity_id)
        if schedule is None or schedule.job_id is None:
            return None
        job = await store.find_by_id(Job, schedule.job_id)
        if job is None:
            return None
        state = ProductionState(schedule=schedule, job=job, trackings=await _trackings(store, job.id))
        key = self.dedupe_key(state, ctx)
        if key:
            state.recorded = await _recorded(store, key)
        return state


# ── 1. New job created ────────────────────────────────────────────────────


@register_automation
class JobCreated(_JobAutomation):
    kind = AutomationKind.JOB_CREATED

    def dedupe_key(self, state: JobState, ctx: AutomationContext) -> str:
        return f"job_created:{state.job.id}"

    def plan(self, state: JobState, ctx: AutomationContext) -> Effects:
        job = state.job
        effects = Effects()
        effects.tracking_creates.extend(initial_tracking(job.id, job.job_number, ctx.now, existing=state.trackings))
        if state.recorded:
            return effects

        if job.project_manager_id:
            effects.notifications.append(
                CreateNotification(
                    recipient_id=job.project_manager_id,
                    type="INFO",
                    priority="NORMAL",
                    title="New Job Assigned",
                    message=f"You have been assigned to {job.job_number} - {job.job_name}",
                    related_entity=_job_ref(job),
                )
            )
        effects.audits.append(
            AppendAudit(
                event_type="JOB_CREATED",
                entity_type="JOB",
                entity_id=job.id,
                entity_name=job.job_number,
                action="Automation: New job created",
                details={"job_number": job.job_number},
                dedupe_key=self.dedupe_key(state, ctx),
            )
        )
        return effects


# ── 2. Quote approved ─────────────────────────────────────────────────────


@register_automation
class QuoteApproved(_JobAutomation):
    kind = AutomationKind.QUOTE_APPROVED

    def plan(self, state: JobState, ctx: AutomationContext) -> Effects:
        job = state.job
        return plan_job_advance(
            job,
            state.trackings,
            Stage.ENGINEERING,
            "quote_approved",
            ctx.now,
            status=JobStatus.ON_TRACK.value if job.status == "APPROVED" else None,
            audit={
                "event_type": "STATUS_CHANGED",
                "entity_type": "JOB",
                "entity_id": job.id,
                "entity_name": job.job_number,
                "action": "Automation: Quote approved",
                "details": {"stage": Stage.ENGINEERING.value},
            },
        )


# ── 3. Engineering complete ───────────────────────────────────────────────


@register_automation
class EngineeringComplete(_JobAutomation):
    kind = AutomationKind.ENGINEERING_COMPLETE

    def plan(self, state: JobState, ctx: AutomationContext) -> Effects:
        job = state.job
        return plan_job_advance(
            job,
            state.trackings,
            Stage.PRODUCTION,
            "engineering_complete",
            ctx.now,
            audit={
                "event_type": "STAGE_CHANGED",
                "entity_type": "JOB",
                "entity_id": job.id,
                "entity_name": job.job_number,
                "action": "Automation: Engineering complete, moved to production",
                "details": {"stage": Stage.PRODUCTION.value},
            },
        )


# ── 4. Production started ─────────────────────────────────────────────────


@register_automation
class ProductionStarted(_ProductionAutomation):
    kind = AutomationKind.PRODUCTION_STARTED

    def dedupe_key(self, state: ProductionState, ctx: AutomationContext) -> str:
        schedule = state.schedule
        started = schedule.stage_changed_at or schedule.created_at
        return f"production_started:{schedule.id}:{started.isoformat()}"

    def plan(self, state: ProductionState, ctx: AutomationContext) -> Effects:
        schedule, job = state.schedule, state.job
        effects = Effects()

        row = state.trackings.get(Stage.PRODUCTION.value)
        # Only the job's current stage may be in progress.
        if (
            row is not None
            and job.stage == Stage.PRODUCTION
            and row.status in (TrackingStatus.PENDING.value, TrackingStatus.BLOCKED.value)
        ):
            fields: dict[str, Any] = {"blocked_reason": None}
            if row.start_date is None:
                fields["start_date"] = ctx.now
            effects.tracking_transitions.append(
                TransitionTracking(
                    tracking_id=row.id,
                    stage=row.stage,
                    from_status=row.status,
                    to_status=TrackingStatus.IN_PROGRESS.value,
                    fields=fields,
                )
            )

        if schedule.pour_date is not None:
            cure_date = schedule.pour_date + timedelta(days=ctx.cure_days)
            if schedule.cure_complete_date != cure_date:
                effects.schedule_updates.append(
                    UpdateSchedule(schedule_id=schedule.id, patch={"cure_complete_date": cure_date})
                )

        if not state.recorded:
            effects.audits.append(
                AppendAudit(
                    event_type="PRODUCTION_STARTED",
                    entity_type="PRODUCTION",
                    entity_id=schedule.id,
                    entity_name=schedule.production_id,
                    action="Automation: Production started",
                    details={"production_id": schedule.production_id, "job_number": job.job_number},
                    dedupe_key=self.dedupe_key(state, ctx),
                )
            )
        return effects


# ── 5. Quality check failed ───────────────────────────────────────────────


@register_automation
class QualityCheckFailed(_ProductionAutomation):
    """
    Only the newest check is inspected: if several checks land in one
    write, the earlier ones are never evaluated.
    """

    kind = AutomationKind.QUALITY_CHECK_FAILED

    def dedupe_key(self, state: ProductionState, ctx: AutomationContext) -> str | None:
        checks = state.schedule.quality_checks
        return f"quality_check_failed:{checks[-1].id}" if checks else None

    def plan(self, state: ProductionState, ctx: AutomationContext) -> Effects:
        schedule, job = state.schedule, state.job
        effects = Effects()
        if not schedule.quality_checks:
            return effects
        check = schedule.quality_checks[-1]
        if check.passed:
            return effects

        reason = f"QC Failed: {check.failure_reason or 'unspecified'}"
        row = state.trackings.get(Stage.PRODUCTION.value)
        if row is not None and (
            row.status == TrackingStatus.IN_PROGRESS
            or (row.status == TrackingStatus.BLOCKED and row.blocked_reason != reason)
        ):
            effects.tracking_transitions.append(
                TransitionTracking(
                    tracking_id=row.id,
                    stage=row.stage,
                    from_status=row.status,
                    to_status=TrackingStatus.BLOCKED.value,
                    fields={"blocked_reason": reason},
                )
            )

        if schedule.production_stage != "DELAYED":
            effects.schedule_updates.append(UpdateSchedule(schedule_id=schedule.id, patch={"production_stage": "DELAYED"}))

        if state.recorded:
            return effects

        # Internal escalation only; the customer is never notified automatically.
        if job.project_manager_id:
            effects.notifications.append(
                CreateNotification(
                    recipient_id=job.project_manager_id,
                    type="ALERT",
                    priority="HIGH",
                    title="Quality Check Failed",
                    message=f"{job.job_number}: Quality check failed - {check.failure_reason or 'unspecified'}",
                    related_entity={
                        "entity_type": "PRODUCTION",
                        "entity_id": str(schedule.id),
                        "entity_name": schedule.production_id,
                    },
                    action_required=True,
                )
            )
        effects.audits.append(
            AppendAudit(
                event_type="QUALITY_CHECK",
                entity_type="PRODUCTION",
                entity_id=schedule.id,
                entity_name=schedule.production_id,
                action="Automation: Quality check failed",
                details={
                    "failure_reason": check.failure_reason,
                    "quality_check_id": str(check.id),
                    "sequence": check.sequence,
                },
                dedupe_key=self.dedupe_key(state, ctx),
            )
        )
        return effects


# ── 6. Products ship-ready ────────────────────────────────────────────────


@register_automation
class ShipReady(_ProductionAutomation):
    kind = AutomationKind.SHIP_READY

    def plan(self, state: ProductionState, ctx: AutomationContext) -> Effects:
        schedule, job = state.schedule, state.job
        return plan_job_advance(
            job,
            state.trackings,
            Stage.DELIVERY,
            "production_complete",
            ctx.now,
            audit={
                "event_type": "PRODUCTION_COMPLETE",
                "entity_type": "PRODUCTION",
                "entity_id": schedule.id,
                "entity_name": schedule.production_id,
                "action": "Automation: Products ship-ready",
                "details": {"job_number": job.job_number},
            },
        )


# ── 7. Delivery complete ──────────────────────────────────────────────────


@register_automation
class DeliveryComplete(_JobAutomation):
    kind = AutomationKind.DELIVERY_COMPLETE

    def plan(self, state: JobState, ctx: AutomationContext) -> Effects:
        job = state.job
        return plan_job_advance(
            job,
            state.trackings,
            Stage.COMPLETE,
            "delivery_complete",
            ctx.now,
            complete_target=True,
            status=JobStatus.COMPLETE.value,
            audit={
                "event_type": "DELIVERY_COMPLETE",
                "entity_type": "JOB",
                "entity_id": job.id,
                "entity_name": job.job_number,
                "action": "Automation: Delivery complete, job closed",
                "details": {"job_number": job.job_number},
            },
        )


# ── 8. Overdue milestone ──────────────────────────────────────────────────


@register_automation
class OverdueMilestone(Automation):
    """Runs per overdue WorkflowTracking row; ctx.entity_id is the tracking id."""

    kind = AutomationKind.OVERDUE_MILESTONE

    def dedupe_key(self, state: OverdueState, ctx: AutomationContext) -> str:
        return f"overdue:{state.item.id}:{ctx.sweep_id or ctx.now.isoformat()}"

    async def load(self, store: EntityStore, ctx: AutomationContext) -> OverdueState | None:
        item = await store.find_by_id(WorkflowTracking, ctx.entity_id)
        if item is None:
            return None
        job = await store.find_by_id(Job, item.job_id)
        if job is None:
            return None
        state = OverdueState(item=item, job=job)
        state.recorded = await _recorded(store, self.dedupe_key(state, ctx))
        return state

    def plan(self, state: OverdueState, ctx: AutomationContext) -> Effects:
        item, job = state.item, state.job
        effects = Effects()
        if not is_overdue(item, ctx.now) or state.recorded:
            return effects

        if job.project_manager_id:
            effects.notifications.append(
                CreateNotification(
                    recipient_id=job.project_manager_id,
                    type="ALERT",
                    priority="HIGH",
                    title="Overdue Milestone",
                    message=f"{item.job_number} - {item.stage} is overdue",
                    related_entity=_job_ref(job),
                    action_required=True,
                )
            )
        if job.status == JobStatus.ON_TRACK:
            effects.job_updates.append(UpdateJob(job_id=job.id, patch={"status": JobStatus.AT_RISK.value}))

        effects.audits.append(
            AppendAudit(
                event_type="AUTOMATION_TRIGGERED",
                entity_type="JOB",
                entity_id=job.id,
                entity_name=item.job_number,
                action="Automation: Overdue milestone alert",
                details={
                    "stage": item.stage,
                    "estimated_date": item.estimated_completion_date.isoformat(),
                    "sweep_id": ctx.sweep_id,
                },
                dedupe_key=self.dedupe_key(state, ctx),
            )
        )
        return effects


def is_overdue(item: WorkflowTracking, now: datetime) -> bool:
    """Past its estimated completion day and still open."""
    return (
        item.estimated_completion_date is not None
        and item.estimated_completion_date < _start_of_day(now)
        and item.status not in (TrackingStatus.COMPLETE.value, TrackingStatus.CANCELLED.value)
    )


# ── 9. Material low ───────────────────────────────────────────────────────


@register_automation
class MaterialLow(Automation):
    kind = AutomationKind.MATERIAL_LOW

    def dedupe_key(self, state: InventoryState, ctx: AutomationContext) -> str:
        item = state.item
        changed = item.status_changed_at or item.created_at
        return f"material_low:{item.id}:{item.status}:{changed.isoformat()}"

    async def load(self, store: EntityStore, ctx: AutomationContext) -> InventoryState | None:
        item = await store.find_by_id(Inventory, ctx.entity_id)
        if item is None:
            return None
        state = InventoryState(item=item)
        state.recorded = await _recorded(store, self.dedupe_key(state, ctx))
        return state

    def plan(self, state: InventoryState, ctx: AutomationContext) -> Effects:
        item = state.item
        effects = Effects()
        if item.status not in (InventoryStatus.LOW.value, InventoryStatus.CRITICAL.value) or state.recorded:
            return effects

        # No purchasing recipient is modelled; the audit entry is the order request.
        effects.audits.append(
            AppendAudit(
                event_type="MATERIAL_ORDERED",
                entity_type="INVENTORY",
                entity_id=item.id,
                entity_name=item.material_type,
                action="Automation: Low inventory alert",
                details={
                    "current_quantity": item.current_quantity,
                    "minimum_quantity": item.minimum_quantity,
                    "status": item.status,
                },
                dedupe_key=self.dedupe_key(state, ctx),
            )
        )
        return effects


# ── Job cancelled ─────────────────────────────────────────────────────────


@register_automation
class JobCancelled(_JobAutomation):
    kind = AutomationKind.JOB_CANCELLED

    def plan(self, state: JobState, ctx: AutomationContext) -> Effects:
        job = state.job
        effects = Effects()
        if job.status != JobStatus.CANCELLED:
            return effects
        effects.tracking_transitions.extend(plan_cancellation(state.trackings))
        if effects.changes_state:
            effects.audits.append(
                AppendAudit(
                    event_type="STATUS_CHANGED",
                    entity_type="JOB",
                    entity_id=job.id,
                    entity_name=job.job_number,
                    action="Automation: Job cancelled, open stages closed",
                    details={"cancelled_stages": [t.stage for t in effects.tracking_transitions]},
                )
            )
        return effects


_missing = set(AutomationKind) - set(_AUTOMATION_REGISTRY)
if _missing:
    raise RuntimeError(f"automation kinds without an implementation: {sorted(k.value for k in _missing)}")
