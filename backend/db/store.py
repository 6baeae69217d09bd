"""
Entity Store — async SQLAlchemy repository with a change feed.

Every operation opens its own session, so concurrent stream consumers,
the sweep loop and API requests never share in-memory state; the
database is the only shared resource and concurrent writes to the same
row resolve last-writer-wins.

Writes to the watched collections (jobs, production_schedules,
inventory) publish a change event after commit:

    insert → changed_fields = every column, snapshot = new document
    update → changed_fields = paths whose value actually changed
             (derived columns included), snapshot = document after write

A write that changes nothing publishes nothing.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from automation.changes import ChangeEvent, EntityType, Operation
from automation.errors import ChangeFeedUnavailable
from automation.feed import ChangeFeed
from db.models import (
    Inventory,
    InventoryStatus,
    Job,
    ProductionSchedule,
    QualityCheck,
    _jsonable,
)

logger = structlog.get_logger()

ModelT = TypeVar("ModelT")

WATCHED_MODELS: dict[type, EntityType] = {
    Job: EntityType.JOB,
    ProductionSchedule: EntityType.PRODUCTION_SCHEDULE,
    Inventory: EntityType.INVENTORY,
}

# Columns maintained by the ORM itself; never reported as changes.
_IGNORED_FIELDS = {"updated_at"}

# Derived columns that callers may not write.
_DERIVED_FIELDS: dict[type, set[str]] = {
    Inventory: {"status", "status_changed_at"},
    ProductionSchedule: {"stage_changed_at"},
    Job: {"days_offset"},
}

LOW_STOCK_ORDER = {
    InventoryStatus.OUT_OF_STOCK.value: 0,
    InventoryStatus.CRITICAL.value: 1,
    InventoryStatus.LOW.value: 2,
}


class RecordNotFoundError(LookupError):
    """Raised when a write targets a row that does not exist."""


def as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def diff_documents(before: dict[str, Any], after: dict[str, Any]) -> set[str]:
    """Field paths whose values differ; JSON map columns diff per key."""
    changed: set[str] = set()
    for key in set(before) | set(after):
        if key in _IGNORED_FIELDS:
            continue
        old, new = before.get(key), after.get(key)
        if old == new:
            continue
        if isinstance(old, dict) and isinstance(new, dict):
            for sub in set(old) | set(new):
                if old.get(sub) != new.get(sub):
                    changed.add(f"{key}.{sub}")
        else:
            changed.add(key)
    return changed


class EntityStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], feed: ChangeFeed | None = None):
        self._sessions = session_factory
        self._feed = feed

    # ── Change feed ────────────────────────────────────────────────────

    def watch(self) -> ChangeFeed:
        """The feed watched collections publish to; unavailable without one."""
        if self._feed is None:
            raise ChangeFeedUnavailable("store has no change feed configured")
        return self._feed

    async def _publish(self, model: type, event: ChangeEvent) -> None:
        if self._feed is None or model not in WATCHED_MODELS:
            return
        try:
            await self._feed.publish(event)
        except Exception as exc:  # noqa: BLE001
            # The write is committed; only the reaction is lost, and the
            # direct-trigger path or the next sweep covers it.
            logger.error(
                "store.publish_failed",
                entity=event.entity.value,
                entity_id=str(event.id),
                error=str(exc),
            )

    # ── Reads ──────────────────────────────────────────────────────────

    async def find_by_id(self, model: type[ModelT], entity_id: Any) -> ModelT | None:
        async with self._sessions() as db:
            return await db.get(model, as_uuid(entity_id))

    async def find(
        self,
        model: type[ModelT],
        *criteria,
        order_by: Any = None,
        limit: int | None = None,
        skip: int | None = None,
    ) -> list[ModelT]:
        stmt = select(model).where(*criteria)
        if order_by is not None:
            clauses = order_by if isinstance(order_by, (list, tuple)) else [order_by]
            stmt = stmt.order_by(*clauses)
        if skip:
            stmt = stmt.offset(skip)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def find_one(self, model: type[ModelT], *criteria, order_by: Any = None) -> ModelT | None:
        rows = await self.find(model, *criteria, order_by=order_by, limit=1)
        return rows[0] if rows else None

    async def count(self, model: type, *criteria) -> int:
        async with self._sessions() as db:
            result = await db.execute(select(func.count()).select_from(model).where(*criteria))
            return int(result.scalar() or 0)

    async def aggregate(self, model: type, group_by: Iterable[str], *criteria) -> list[dict[str, Any]]:
        """Row counts grouped by the named columns."""
        columns = [getattr(model, name) for name in group_by]
        stmt = select(*columns, func.count().label("count")).where(*criteria).group_by(*columns)
        async with self._sessions() as db:
            result = await db.execute(stmt)
            return [dict(row._mapping) for row in result.all()]

    # ── Writes ─────────────────────────────────────────────────────────

    def _reject_derived(self, model: type, fields: Iterable[str]) -> None:
        derived = _DERIVED_FIELDS.get(model, set())
        blocked = sorted({f.split(".", 1)[0] for f in fields} & derived)
        if blocked:
            raise ValueError(f"{model.__name__} fields {blocked} are derived and cannot be written")

    async def create(self, model: type[ModelT], **values) -> ModelT:
        self._reject_derived(model, values)
        if model is ProductionSchedule:
            values.setdefault("quality_checks", [])
        async with self._sessions() as db:
            obj = model(**values)
            db.add(obj)
            await db.commit()
            document = obj.to_document()

        if model in WATCHED_MODELS:
            await self._publish(
                model,
                ChangeEvent(
                    entity=WATCHED_MODELS[model],
                    operation=Operation.INSERT,
                    id=obj.id,
                    changed_fields=frozenset(k for k in document if k not in _IGNORED_FIELDS),
                    snapshot=document,
                ),
            )
        return obj

    async def create_many(self, model: type[ModelT], rows: list[dict[str, Any]]) -> list[ModelT]:
        """Insert rows in one transaction. Intended for unwatched collections."""
        async with self._sessions() as db:
            objs = [model(**row) for row in rows]
            db.add_all(objs)
            await db.commit()
        return objs

    async def update_by_id(self, model: type[ModelT], entity_id: Any, patch: dict[str, Any]) -> ModelT:
        """
        Apply `patch` to one row. Keys are column names, or `column.key`
        paths that merge into a JSON map column (e.g. `timeline.quote_approved`).
        Raises RecordNotFoundError if the row does not exist.
        """
        self._reject_derived(model, patch)
        async with self._sessions() as db:
            obj = await db.get(model, as_uuid(entity_id))
            if obj is None:
                raise RecordNotFoundError(f"{model.__name__} {entity_id} not found")

            before = obj.to_document()
            for path, value in patch.items():
                if "." in path:
                    column, key = path.split(".", 1)
                    merged = dict(getattr(obj, column) or {})
                    merged[key] = _jsonable(value)
                    setattr(obj, column, merged)
                else:
                    setattr(obj, path, value)
            await db.commit()
            after = obj.to_document()

        changed = diff_documents(before, after)
        if changed and model in WATCHED_MODELS:
            await self._publish(
                model,
                ChangeEvent(
                    entity=WATCHED_MODELS[model],
                    operation=Operation.UPDATE,
                    id=obj.id,
                    changed_fields=frozenset(changed),
                    snapshot=after,
                ),
            )
        return obj

    async def append_quality_check(
        self,
        schedule_id: Any,
        *,
        passed: bool,
        failure_reason: str | None = None,
        inspector: str | None = None,
        notes: str | None = None,
        check_date: datetime | None = None,
    ) -> QualityCheck:
        """Append one QC attempt to a production run's check history."""
        async with self._sessions() as db:
            schedule = await db.get(ProductionSchedule, as_uuid(schedule_id))
            if schedule is None:
                raise RecordNotFoundError(f"ProductionSchedule {schedule_id} not found")

            check = QualityCheck(
                sequence=len(schedule.quality_checks) + 1,
                inspector=inspector,
                check_date=check_date or datetime.utcnow(),
                passed=passed,
                notes=notes,
                failure_reason=failure_reason,
            )
            schedule.quality_checks.append(check)
            await db.commit()
            document = schedule.to_document()

        await self._publish(
            ProductionSchedule,
            ChangeEvent(
                entity=EntityType.PRODUCTION_SCHEDULE,
                operation=Operation.UPDATE,
                id=schedule.id,
                changed_fields=frozenset({"quality_checks"}),
                snapshot=document,
            ),
        )
        return check

    # ── Identifiers & listings ─────────────────────────────────────────

    async def next_job_number(self, year: int | None = None) -> str:
        year = year or datetime.utcnow().year
        count = await self.count(Job, Job.job_number.like(f"JOB-{year}-%"))
        return f"JOB-{year}-{count + 1:03d}"

    async def next_production_id(self, year: int | None = None) -> str:
        year = year or datetime.utcnow().year
        count = await self.count(ProductionSchedule, ProductionSchedule.production_id.like(f"PROD-{year}-%"))
        return f"PROD-{year}-{count + 1:03d}"

    async def low_stock_items(self) -> list[Inventory]:
        items = await self.find(Inventory, Inventory.status.in_(list(LOW_STOCK_ORDER)))
        return sorted(items, key=lambda i: (LOW_STOCK_ORDER[i.status], i.material_type))
