"""
Workflow state machine — per-job, per-stage WorkflowTracking lifecycle.

Stage status lifecycle:

    PENDING ──► IN_PROGRESS ──► COMPLETE
                  │    ▲
                  ▼    │ (re-assessment)
                BLOCKED ──► CANCELLED

A stage that a later reaction passes over is closed straight to COMPLETE,
and any open stage may be CANCELLED when the job is cancelled.

Invariant per job: at most one row is IN_PROGRESS and it matches
Job.stage; every earlier stage is COMPLETE; every later stage is PENDING.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Mapping

from automation.effects import CreateTracking, TransitionTracking
from automation.errors import InvalidTransition
from db.models import Stage, TrackingStatus

STAGE_ORDER: tuple[Stage, ...] = (
    Stage.QUOTE,
    Stage.ENGINEERING,
    Stage.PRODUCTION,
    Stage.DELIVERY,
    Stage.COMPLETE,
)

# Plain values so membership tests work on the strings loaded from the database.
OPEN_STATUSES = frozenset(
    s.value for s in (TrackingStatus.PENDING, TrackingStatus.IN_PROGRESS, TrackingStatus.BLOCKED)
)
TERMINAL_STATUSES = frozenset(s.value for s in (TrackingStatus.COMPLETE, TrackingStatus.CANCELLED))

ALLOWED_TRANSITIONS: dict[TrackingStatus, frozenset[TrackingStatus]] = {
    TrackingStatus.PENDING: frozenset(
        {
            TrackingStatus.IN_PROGRESS,
            TrackingStatus.COMPLETE,  # passed over by a later stage
            TrackingStatus.CANCELLED,
        }
    ),
    TrackingStatus.IN_PROGRESS: frozenset(
        {TrackingStatus.COMPLETE, TrackingStatus.BLOCKED, TrackingStatus.CANCELLED}
    ),
    TrackingStatus.BLOCKED: frozenset(
        {TrackingStatus.IN_PROGRESS, TrackingStatus.COMPLETE, TrackingStatus.CANCELLED}
    ),
    TrackingStatus.COMPLETE: frozenset(),
    TrackingStatus.CANCELLED: frozenset(),
}


def stage_index(stage: str) -> int:
    return STAGE_ORDER.index(Stage(stage))


def validate_transition(stage: str, from_status: str, to_status: str) -> None:
    """Raise InvalidTransition unless the lifecycle allows from → to.

    Same-status writes are field updates (e.g. a new blocked reason) and pass.
    """
    src, dst = TrackingStatus(from_status), TrackingStatus(to_status)
    if src == dst:
        return
    if dst not in ALLOWED_TRANSITIONS[src]:
        raise InvalidTransition(stage, src.value, dst.value)


def initial_tracking(job_id, job_number: str, now: datetime, existing: Iterable[str] = ()) -> list[CreateTracking]:
    """Rows for a new job: QUOTE in progress, everything else pending."""
    have = set(existing)
    rows = []
    for stage in STAGE_ORDER:
        if stage.value in have:
            continue
        first = stage is Stage.QUOTE
        rows.append(
            CreateTracking(
                job_id=job_id,
                job_number=job_number,
                stage=stage.value,
                status=(TrackingStatus.IN_PROGRESS if first else TrackingStatus.PENDING).value,
                start_date=now if first else None,
            )
        )
    return rows


def plan_stage_advance(
    job_stage: str,
    trackings: Mapping[str, Any],
    target: Stage,
    now: datetime,
    complete_target: bool = False,
) -> list[TransitionTracking]:
    """
    Transitions that move a job's tracking rows to `target`.

    Every open stage before `target` is completed; the target row is
    started if pending (or completed when `complete_target`). Rows already
    in their goal state produce nothing, so re-planning is a no-op. A job
    already past `target` never has its target row restarted.
    """
    target_idx = STAGE_ORDER.index(target)
    transitions: list[TransitionTracking] = []

    for stage in STAGE_ORDER[:target_idx]:
        row = trackings.get(stage.value)
        if row is not None and row.status in OPEN_STATUSES:
            transitions.append(_complete(row, now))

    row = trackings.get(target.value)
    if row is None:
        return transitions

    if complete_target:
        if row.status in OPEN_STATUSES:
            transitions.append(_complete(row, now))
    elif row.status == TrackingStatus.PENDING and stage_index(job_stage) <= target_idx:
        transitions.append(
            TransitionTracking(
                tracking_id=row.id,
                stage=row.stage,
                from_status=row.status,
                to_status=TrackingStatus.IN_PROGRESS.value,
                fields={"start_date": now},
            )
        )
    return transitions


def plan_cancellation(trackings: Mapping[str, Any]) -> list[TransitionTracking]:
    return [
        TransitionTracking(
            tracking_id=row.id,
            stage=row.stage,
            from_status=row.status,
            to_status=TrackingStatus.CANCELLED.value,
        )
        for stage in STAGE_ORDER
        if (row := trackings.get(stage.value)) is not None and row.status in OPEN_STATUSES
    ]


def check_invariant(job_stage: str, trackings: Mapping[str, Any]) -> list[str]:
    """Return human-readable violations of the single-active-stage rule."""
    violations: list[str] = []
    in_progress = [s for s, row in trackings.items() if row.status == TrackingStatus.IN_PROGRESS]
    if len(in_progress) > 1:
        violations.append(f"multiple stages in progress: {sorted(in_progress)}")
    if in_progress and in_progress[0] != job_stage:
        violations.append(f"in-progress stage {in_progress[0]} does not match job stage {job_stage}")

    current = stage_index(job_stage)
    for stage in STAGE_ORDER:
        row = trackings.get(stage.value)
        if row is None:
            violations.append(f"missing tracking row for {stage.value}")
            continue
        if row.status == TrackingStatus.CANCELLED:
            continue
        idx = STAGE_ORDER.index(stage)
        if idx < current and row.status != TrackingStatus.COMPLETE:
            violations.append(f"{stage.value} precedes {job_stage} but is {row.status}")
        if idx > current and row.status != TrackingStatus.PENDING:
            violations.append(f"{stage.value} follows {job_stage} but is {row.status}")
    return violations


def _complete(row: Any, now: datetime) -> TransitionTracking:
    return TransitionTracking(
        tracking_id=row.id,
        stage=row.stage,
        from_status=row.status,
        to_status=TrackingStatus.COMPLETE.value,
        fields={"actual_completion_date": now},
    )
