import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from automation.errors import InvalidTransition
from automation.workflow import (
    STAGE_ORDER,
    check_invariant,
    initial_tracking,
    plan_cancellation,
    plan_stage_advance,
    validate_transition,
)
from db.models import Stage

NOW = datetime(2025, 10, 27, 9, 30)


def _rows(**statuses):
    return {
        stage: SimpleNamespace(id=uuid.uuid4(), stage=stage, status=status)
        for stage, status in statuses.items()
    }


def _fresh_job_rows():
    return _rows(
        QUOTE="IN_PROGRESS",
        ENGINEERING="PENDING",
        PRODUCTION="PENDING",
        DELIVERY="PENDING",
        COMPLETE="PENDING",
    )


def test_initial_tracking_starts_quote_only():
    rows = initial_tracking(uuid.uuid4(), "JOB-2025-100", NOW)

    assert [r.stage for r in rows] == [s.value for s in STAGE_ORDER]
    assert rows[0].status == "IN_PROGRESS"
    assert rows[0].start_date == NOW
    assert all(r.status == "PENDING" and r.start_date is None for r in rows[1:])


def test_initial_tracking_skips_existing_stages():
    rows = initial_tracking(uuid.uuid4(), "JOB-2025-100", NOW, existing={"QUOTE", "ENGINEERING"})
    assert [r.stage for r in rows] == ["PRODUCTION", "DELIVERY", "COMPLETE"]


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        ("PENDING", "IN_PROGRESS"),
        ("IN_PROGRESS", "COMPLETE"),
        ("IN_PROGRESS", "BLOCKED"),
        ("BLOCKED", "IN_PROGRESS"),
        ("BLOCKED", "CANCELLED"),
        ("BLOCKED", "BLOCKED"),
    ],
)
def test_allowed_transitions(from_status, to_status):
    validate_transition("PRODUCTION", from_status, to_status)


@pytest.mark.parametrize(
    "from_status,to_status",
    [
        ("COMPLETE", "IN_PROGRESS"),
        ("CANCELLED", "PENDING"),
        ("PENDING", "BLOCKED"),
        ("IN_PROGRESS", "PENDING"),
    ],
)
def test_rejected_transitions(from_status, to_status):
    with pytest.raises(InvalidTransition) as exc:
        validate_transition("PRODUCTION", from_status, to_status)
    assert exc.value.from_status == from_status
    assert exc.value.to_status == to_status


def test_advance_completes_previous_and_starts_target():
    rows = _fresh_job_rows()
    transitions = plan_stage_advance("QUOTE", rows, Stage.ENGINEERING, NOW)

    assert [(t.stage, t.to_status) for t in transitions] == [
        ("QUOTE", "COMPLETE"),
        ("ENGINEERING", "IN_PROGRESS"),
    ]
    assert transitions[0].fields == {"actual_completion_date": NOW}
    assert transitions[1].fields == {"start_date": NOW}


def test_advance_is_empty_once_target_reached():
    rows = _rows(
        QUOTE="COMPLETE",
        ENGINEERING="IN_PROGRESS",
        PRODUCTION="PENDING",
        DELIVERY="PENDING",
        COMPLETE="PENDING",
    )
    assert plan_stage_advance("ENGINEERING", rows, Stage.ENGINEERING, NOW) == []


def test_advance_catches_up_skipped_stages():
    rows = _fresh_job_rows()
    transitions = plan_stage_advance("PRODUCTION", rows, Stage.PRODUCTION, NOW)

    assert [(t.stage, t.to_status) for t in transitions] == [
        ("QUOTE", "COMPLETE"),
        ("ENGINEERING", "COMPLETE"),
        ("PRODUCTION", "IN_PROGRESS"),
    ]


def test_advance_never_restarts_a_stage_the_job_has_left():
    rows = _rows(
        QUOTE="COMPLETE",
        ENGINEERING="PENDING",
        PRODUCTION="COMPLETE",
        DELIVERY="IN_PROGRESS",
        COMPLETE="PENDING",
    )
    transitions = plan_stage_advance("DELIVERY", rows, Stage.ENGINEERING, NOW)
    assert transitions == []


def test_advance_with_complete_target():
    rows = _rows(
        QUOTE="COMPLETE",
        ENGINEERING="COMPLETE",
        PRODUCTION="COMPLETE",
        DELIVERY="IN_PROGRESS",
        COMPLETE="PENDING",
    )
    transitions = plan_stage_advance("COMPLETE", rows, Stage.COMPLETE, NOW, complete_target=True)
    assert [(t.stage, t.to_status) for t in transitions] == [
        ("DELIVERY", "COMPLETE"),
        ("COMPLETE", "COMPLETE"),
    ]


def test_cancellation_closes_only_open_rows():
    rows = _rows(
        QUOTE="COMPLETE",
        ENGINEERING="BLOCKED",
        PRODUCTION="PENDING",
        DELIVERY="PENDING",
        COMPLETE="PENDING",
    )
    transitions = plan_cancellation(rows)
    assert [t.stage for t in transitions] == ["ENGINEERING", "PRODUCTION", "DELIVERY", "COMPLETE"]
    assert {t.to_status for t in transitions} == {"CANCELLED"}


def test_check_invariant_accepts_fresh_job():
    assert check_invariant("QUOTE", _fresh_job_rows()) == []


def test_check_invariant_reports_violations():
    rows = _rows(
        QUOTE="IN_PROGRESS",
        ENGINEERING="IN_PROGRESS",
        PRODUCTION="PENDING",
        DELIVERY="PENDING",
        COMPLETE="PENDING",
    )
    violations = check_invariant("ENGINEERING", rows)
    assert any("multiple stages in progress" in v for v in violations)
    assert any(v.startswith("QUOTE precedes ENGINEERING") for v in violations)
