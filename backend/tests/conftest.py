"""
Test Configuration — Fixtures for the async store, sinks, and engine.

Each test gets its own SQLite file database (aiosqlite), so the engine's
per-operation sessions and concurrent stream loops all see the same data.
The change feed is an in-memory double with Redis Streams semantics.
"""

import asyncio
import uuid
from datetime import datetime

import pytest

from alerts.audit import AuditSink
from alerts.notifications import NotificationSink
from automation.changes import ChangeEvent, EntityType
from automation.dispatcher import ReactionDispatcher
from automation.engine import AutomationEngine
from automation.errors import ChangeFeedUnavailable
from automation.feed import STREAM_START, ChangeFeed
from db.models import AuditLog, Job, Notification, ProductionSchedule, WorkflowTracking
from db.session import build_engine, build_session_factory, create_all
from db.store import EntityStore

PM_ID = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
CUSTOMER_ID = uuid.UUID("00000000-0000-0000-0000-0000000000c1")


class InMemoryChangeFeed(ChangeFeed):
    """
    Ordered per-stream log; read() blocks until entries after last_id exist.

    Like XREAD, a last_id of "$" means "after whatever is newest right now"
    and is resolved again on every call.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self.entries: dict[EntityType, list[tuple[str, dict]]] = {e: [] for e in EntityType}
        self.failing_reads = 0
        self.read_positions: list[str] = []
        self.closed = False
        self._seq = 0
        self._changed = asyncio.Condition()

    async def check_available(self) -> None:
        if not self.available:
            raise ChangeFeedUnavailable("store is not a replica set")

    async def tail_id(self, entity: EntityType) -> str:
        stream = self.entries[entity]
        return stream[-1][0] if stream else STREAM_START

    async def publish(self, event: ChangeEvent) -> None:
        await self.append_raw(event.entity, event.to_raw())

    async def append_raw(self, entity: EntityType, fields: dict) -> str:
        async with self._changed:
            self._seq += 1
            entry_id = f"{self._seq}-0"
            self.entries[entity].append((entry_id, fields))
            self._changed.notify_all()
            return entry_id

    async def read(self, entity: EntityType, last_id: str) -> list[tuple[str, dict]]:
        self.read_positions.append(last_id)
        if self.failing_reads:
            self.failing_reads -= 1
            raise ChangeFeedUnavailable("connection reset")
        after = self._seq if last_id == "$" else int(last_id.split("-")[0])
        async with self._changed:
            while True:
                pending = [(i, f) for i, f in self.entries[entity] if int(i.split("-")[0]) > after]
                if pending:
                    return pending
                await self._changed.wait()

    async def close(self) -> None:
        self.closed = True

    def events(self, entity: EntityType) -> list[dict]:
        return [fields for _, fields in self.entries[entity]]


async def eventually(check, timeout: float = 3.0):
    """Poll an async predicate until it returns something truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await check()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.02)


@pytest.fixture
async def db_engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'precastflow.db'}")
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def store(sessions, feed):
    return EntityStore(sessions, feed=feed)


@pytest.fixture
def audit(sessions):
    return AuditSink(sessions)


@pytest.fixture
def notifications(sessions):
    return NotificationSink(sessions)


@pytest.fixture
def dispatcher(store, audit, notifications):
    return ReactionDispatcher(store, audit, notifications)


@pytest.fixture
async def engine(store, audit, notifications):
    automation_engine = AutomationEngine(
        store,
        audit,
        notifications,
        reconnect_seconds=0.01,
        sweep_interval_seconds=3600,
    )
    yield automation_engine
    await automation_engine.stop()


@pytest.fixture
def make_job(store):
    async def _make(job_number: str = "JOB-2025-100", **overrides) -> Job:
        values = {
            "job_number": job_number,
            "job_name": "Riverside Parking Structure",
            "customer_id": CUSTOMER_ID,
            "customer_name": "Riverside Development",
            "project_manager_id": PM_ID,
            "pm_name": "Dana Ortiz",
            "products_description": "Double tees, 48 pcs",
            "quote_amount": 412000.0,
        }
        values.update(overrides)
        return await store.create(Job, **values)

    return _make


@pytest.fixture
def make_schedule(store):
    async def _make(job: Job, **overrides) -> ProductionSchedule:
        values = {
            "production_id": overrides.pop("production_id", "PROD-2025-001"),
            "job_id": job.id,
            "job_number": job.job_number,
            "scheduled_date": datetime(2025, 10, 20),
        }
        values.update(overrides)
        return await store.create(ProductionSchedule, **values)

    return _make


async def trackings_by_stage(store: EntityStore, job_id) -> dict[str, WorkflowTracking]:
    rows = await store.find(WorkflowTracking, WorkflowTracking.job_id == job_id)
    return {row.stage: row for row in rows}


async def audits(store: EntityStore, event_type: str | None = None) -> list[AuditLog]:
    criteria = [AuditLog.event_type == event_type] if event_type else []
    return await store.find(AuditLog, *criteria, order_by=AuditLog.timestamp)


async def notifications_for(store: EntityStore, recipient_id) -> list[Notification]:
    return await store.find(Notification, Notification.recipient_id == recipient_id)
