"""Applies a planned Effects bundle against the store and the sinks."""

from __future__ import annotations

import structlog
from sqlalchemy.exc import IntegrityError

from alerts.audit import AuditSink
from alerts.notifications import NotificationSink
from automation.effects import Effects
from automation.workflow import validate_transition
from db.models import AuditLog, Job, ProductionSchedule, WorkflowTracking
from db.store import EntityStore

logger = structlog.get_logger()


class EffectExecutor:
    def __init__(self, store: EntityStore, audit: AuditSink, notifications: NotificationSink):
        self.store = store
        self.audit = audit
        self.notifications = notifications

    async def apply(self, effects: Effects) -> int:
        """
        Apply every effect in order; returns the number applied.

        Notifications and audits are dropped when a concurrent reaction got
        there first: either it created the tracking rows, or it already
        recorded one of this bundle's dedupe keys.
        """
        applied = 0
        superseded = False

        if effects.tracking_creates:
            rows = [
                {
                    "job_id": c.job_id,
                    "job_number": c.job_number,
                    "stage": c.stage,
                    "status": c.status,
                    "start_date": c.start_date,
                }
                for c in effects.tracking_creates
            ]
            try:
                await self.store.create_many(WorkflowTracking, rows)
                applied += len(rows)
            except IntegrityError:
                logger.info("automation.tracking_exists", job_id=str(effects.tracking_creates[0].job_id))
                superseded = True

        for t in effects.tracking_transitions:
            validate_transition(t.stage, t.from_status, t.to_status)
            await self.store.update_by_id(WorkflowTracking, t.tracking_id, {"status": t.to_status, **t.fields})
            applied += 1

        for update in effects.job_updates:
            await self.store.update_by_id(Job, update.job_id, update.patch)
            applied += 1

        for update in effects.schedule_updates:
            await self.store.update_by_id(ProductionSchedule, update.schedule_id, update.patch)
            applied += 1

        if superseded or await self._already_recorded(effects):
            return applied

        for n in effects.notifications:
            await self.notifications.create(
                recipient_id=n.recipient_id,
                type=n.type,
                priority=n.priority,
                title=n.title,
                message=n.message,
                related_entity=n.related_entity,
                action_required=n.action_required,
            )
            applied += 1

        for a in effects.audits:
            await self.audit.append(
                a.event_type,
                a.entity_type,
                a.entity_id,
                a.entity_name,
                None,
                a.action,
                a.details,
                previous_value=a.previous_value,
                new_value=a.new_value,
                dedupe_key=a.dedupe_key,
            )
            applied += 1

        return applied

    async def _already_recorded(self, effects: Effects) -> bool:
        keys = [a.dedupe_key for a in effects.audits if a.dedupe_key]
        if not keys:
            return False
        if await self.store.count(AuditLog, AuditLog.dedupe_key.in_(keys)):
            logger.info("automation.already_recorded", dedupe_keys=keys)
            return True
        return False

