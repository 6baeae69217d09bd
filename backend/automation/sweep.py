"""
Overdue Sweep — time-driven scan for stale workflow stages.

Each run finds every WorkflowTracking row whose estimated completion day
has passed and that is neither COMPLETE nor CANCELLED, and runs the
OVERDUE_MILESTONE automation on it under one sweep id. The automation's
dedupe key includes the sweep id, so each row alerts at most once per
sweep; the AT_RISK flip is state-based and happens at most once overall.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

import structlog

from automation.automations import AutomationKind
from automation.dispatcher import ReactionDispatcher
from db.models import TrackingStatus, WorkflowTracking
from db.store import EntityStore

logger = structlog.get_logger()


class OverdueSweep:
    def __init__(self, store: EntityStore, dispatcher: ReactionDispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def overdue_items(self, now: datetime) -> list[WorkflowTracking]:
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return await self.store.find(
            WorkflowTracking,
            WorkflowTracking.estimated_completion_date < start_of_day,
            WorkflowTracking.status.not_in([TrackingStatus.COMPLETE.value, TrackingStatus.CANCELLED.value]),
            order_by=WorkflowTracking.estimated_completion_date,
        )

    async def run_once(self, now: datetime | None = None, sweep_id: str | None = None) -> dict[str, Any]:
        now = now or datetime.utcnow()
        sweep_id = sweep_id or uuid.uuid4().hex
        items = await self.overdue_items(now)

        counts = {"applied": 0, "noop": 0, "skipped": 0, "failed": 0}
        for item in items:
            result = await self.dispatcher.trigger(AutomationKind.OVERDUE_MILESTONE, item.id, sweep_id=sweep_id, now=now)
            counts[result.status] += 1

        summary = {"sweep_id": sweep_id, "overdue_count": len(items), **counts}
        logger.info("sweep.completed", **summary)
        return summary
