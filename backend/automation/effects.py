"""
Effect records produced by automation plans.

Plans are pure: they read loaded state and return an Effects bundle. The
executor applies a bundle in a fixed order (tracking creates, tracking
transitions, job updates, schedule updates, notifications, audit) so the
audit entry is always the last write of a reaction.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class CreateTracking:
    job_id: uuid.UUID
    job_number: str
    stage: str
    status: str
    start_date: datetime | None = None


@dataclass(frozen=True)
class TransitionTracking:
    tracking_id: uuid.UUID
    stage: str
    from_status: str
    to_status: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UpdateJob:
    job_id: uuid.UUID
    patch: dict[str, Any]


@dataclass(frozen=True)
class UpdateSchedule:
    schedule_id: uuid.UUID
    patch: dict[str, Any]


@dataclass(frozen=True)
class CreateNotification:
    recipient_id: uuid.UUID
    type: str
    priority: str
    title: str
    message: str
    related_entity: dict[str, Any]
    action_required: bool = False


@dataclass(frozen=True)
class AppendAudit:
    event_type: str
    entity_type: str
    entity_id: uuid.UUID | None
    entity_name: str | None
    action: str
    details: dict[str, Any] = field(default_factory=dict)
    previous_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    dedupe_key: str | None = None


@dataclass
class Effects:
    tracking_creates: list[CreateTracking] = field(default_factory=list)
    tracking_transitions: list[TransitionTracking] = field(default_factory=list)
    job_updates: list[UpdateJob] = field(default_factory=list)
    schedule_updates: list[UpdateSchedule] = field(default_factory=list)
    notifications: list[CreateNotification] = field(default_factory=list)
    audits: list[AppendAudit] = field(default_factory=list)

    def __len__(self) -> int:
        return (
            len(self.tracking_creates)
            + len(self.tracking_transitions)
            + len(self.job_updates)
            + len(self.schedule_updates)
            + len(self.notifications)
            + len(self.audits)
        )

    @property
    def changes_state(self) -> bool:
        """True if any entity (not just notification/audit) would be written."""
        return bool(self.tracking_creates or self.tracking_transitions or self.job_updates or self.schedule_updates)
