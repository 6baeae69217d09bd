"""
Reaction Dispatcher — maps normalized change events to automation kinds.

The reaction table is ordered; the first matching rule wins, so each
event runs at most one automation. Conditions read the event's changed
field paths and post-write snapshot.

Every failure inside a reaction is caught and logged here. Stream loops,
the sweep and direct triggers only ever see a ReactionResult.

Reactions on the same entity run one at a time, so a feed delivery and a
direct trigger for one event cannot both pass the dedupe check.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable

import structlog

from alerts.audit import AuditSink
from alerts.notifications import NotificationSink
from automation.automations import AutomationContext, AutomationKind, get_automation
from automation.changes import ChangeEvent, EntityType, Operation
from automation.errors import UnknownAutomation
from automation.executor import EffectExecutor
from db.models import (
    Inventory,
    InventoryStatus,
    Job,
    JobStatus,
    ProductionSchedule,
    ProductionStage,
    Stage,
)
from db.store import EntityStore

logger = structlog.get_logger()

Condition = Callable[[ChangeEvent, dict[str, Any]], bool]

_SNAPSHOT_MODELS = {
    EntityType.JOB: Job,
    EntityType.PRODUCTION_SCHEDULE: ProductionSchedule,
    EntityType.INVENTORY: Inventory,
}


def _became(field: str, *values: str) -> Condition:
    def condition(event: ChangeEvent, doc: dict[str, Any]) -> bool:
        return event.operation is Operation.UPDATE and event.changed(field) and doc.get(field) in values

    return condition


def _inserted(event: ChangeEvent, doc: dict[str, Any]) -> bool:
    return event.operation is Operation.INSERT


def _quality_check_failed(event: ChangeEvent, doc: dict[str, Any]) -> bool:
    checks = doc.get("quality_checks") or []
    return event.changed("quality_checks") and bool(checks) and not checks[-1].get("passed", True)


REACTION_TABLE: list[tuple[EntityType, Condition, AutomationKind]] = [
    (EntityType.JOB, _inserted, AutomationKind.JOB_CREATED),
    (EntityType.JOB, _became("status", JobStatus.CANCELLED.value), AutomationKind.JOB_CANCELLED),
    (EntityType.JOB, _became("status", "APPROVED"), AutomationKind.QUOTE_APPROVED),
    (EntityType.JOB, _became("stage", Stage.ENGINEERING.value), AutomationKind.QUOTE_APPROVED),
    (EntityType.JOB, _became("stage", Stage.PRODUCTION.value), AutomationKind.ENGINEERING_COMPLETE),
    (EntityType.JOB, _became("stage", Stage.COMPLETE.value), AutomationKind.DELIVERY_COMPLETE),
    (
        EntityType.PRODUCTION_SCHEDULE,
        _became("production_stage", ProductionStage.IN_PROGRESS.value),
        AutomationKind.PRODUCTION_STARTED,
    ),
    (
        EntityType.PRODUCTION_SCHEDULE,
        _became("production_stage", ProductionStage.FINISHED.value),
        AutomationKind.SHIP_READY,
    ),
    (EntityType.PRODUCTION_SCHEDULE, _quality_check_failed, AutomationKind.QUALITY_CHECK_FAILED),
    (
        EntityType.INVENTORY,
        _became("status", InventoryStatus.LOW.value, InventoryStatus.CRITICAL.value),
        AutomationKind.MATERIAL_LOW,
    ),
]


def match(event: ChangeEvent, document: dict[str, Any]) -> AutomationKind | None:
    """First automation kind whose condition holds for the event, if any."""
    for entity, condition, kind in REACTION_TABLE:
        if entity is event.entity and condition(event, document):
            return kind
    return None


@dataclass
class ReactionResult:
    kind: AutomationKind | None
    entity_id: uuid.UUID
    status: str  # applied | noop | skipped | failed
    effects: int = 0
    error: str | None = None


@dataclass
class _EntityLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class ReactionDispatcher:
    def __init__(
        self,
        store: EntityStore,
        audit: AuditSink,
        notifications: NotificationSink,
        cure_days: int = 7,
    ):
        self.store = store
        self.executor = EffectExecutor(store, audit, notifications)
        self.cure_days = cure_days
        self._entity_locks: dict[uuid.UUID, _EntityLock] = {}

    @asynccontextmanager
    async def _serialized(self, entity_id: uuid.UUID) -> AsyncIterator[None]:
        entry = self._entity_locks.setdefault(entity_id, _EntityLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entity_locks[entity_id]

    async def dispatch(self, event: ChangeEvent) -> ReactionResult:
        """React to one change event; never raises."""
        try:
            document = event.snapshot
            if document is None:
                row = await self.store.find_by_id(_SNAPSHOT_MODELS[event.entity], event.id)
                if row is None:
                    return ReactionResult(kind=None, entity_id=event.id, status="skipped")
                document = row.to_document()

            kind = match(event, document)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "automation.dispatch_failed",
                entity=event.entity.value,
                entity_id=str(event.id),
                stream_id=event.stream_id,
                error=str(exc),
                exc_info=True,
            )
            return ReactionResult(kind=None, entity_id=event.id, status="failed", error=str(exc))

        if kind is None:
            return ReactionResult(kind=None, entity_id=event.id, status="skipped")
        return await self._run(kind, AutomationContext(entity_id=event.id, event=event, cure_days=self.cure_days))

    async def trigger(
        self,
        kind: AutomationKind | str,
        entity_id: Any,
        sweep_id: str | None = None,
        now: datetime | None = None,
    ) -> ReactionResult:
        """
        Run one automation directly, outside the change-feed path.

        Raises UnknownAutomation for an unknown kind or a malformed id;
        failures inside the reaction are logged and returned.
        """
        try:
            kind = AutomationKind(kind)
        except ValueError as exc:
            raise UnknownAutomation(f"Unknown automation kind: {kind!r}") from exc
        try:
            entity_id = entity_id if isinstance(entity_id, uuid.UUID) else uuid.UUID(str(entity_id))
        except ValueError as exc:
            raise UnknownAutomation(f"Invalid entity id: {entity_id!r}") from exc

        ctx = AutomationContext(
            entity_id=entity_id,
            now=now or datetime.utcnow(),
            sweep_id=sweep_id,
            cure_days=self.cure_days,
        )
        return await self._run(kind, ctx)

    async def _run(self, kind: AutomationKind, ctx: AutomationContext) -> ReactionResult:
        async with self._serialized(ctx.entity_id):
            return await self._react(kind, ctx)

    async def _react(self, kind: AutomationKind, ctx: AutomationContext) -> ReactionResult:
        automation = get_automation(kind)
        log = logger.bind(kind=kind.value, entity_id=str(ctx.entity_id))
        try:
            state = await automation.load(self.store, ctx)
            if state is None:
                log.info("automation.missing_reference")
                return ReactionResult(kind=kind, entity_id=ctx.entity_id, status="skipped")

            effects = automation.plan(state, ctx)
            if not effects:
                log.debug("automation.noop")
                return ReactionResult(kind=kind, entity_id=ctx.entity_id, status="noop")

            applied = await self.executor.apply(effects)
        except Exception as exc:  # noqa: BLE001
            log.error("automation.failed", error=str(exc), exc_info=True)
            return ReactionResult(kind=kind, entity_id=ctx.entity_id, status="failed", error=str(exc))

        if not applied:
            log.info("automation.superseded")
            return ReactionResult(kind=kind, entity_id=ctx.entity_id, status="noop")
        log.info(f"automation.{kind.value}", effects=applied)
        return ReactionResult(kind=kind, entity_id=ctx.entity_id, status="applied", effects=applied)
