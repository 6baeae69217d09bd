"""
PrecastFlow Database Models

Seven tables for the precast job pipeline.

Tables:
  1. jobs                  - Customer jobs moving QUOTE → COMPLETE
  2. workflow_tracking     - One progress row per (job, stage)
  3. production_schedules  - Production runs (pour, cure, QC)
  4. quality_checks        - Append-only QC attempts per production run
  5. inventory             - Raw material levels, one row per material type
  6. notifications         - Point-in-time alerts to one recipient
  7. audit_logs            - Immutable record of every automation effect

Derived fields are recomputed by mapper events on every flush:
  - inventory.status (+ status_changed_at) from quantity vs minimum
  - production_schedules.stage_changed_at when production_stage changes
  - jobs.days_offset from timeline.due_date
"""

import uuid
from datetime import date, datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    inspect,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── Enumerations ──────────────────────────────────────────────────────────


class Stage(str, PyEnum):
    QUOTE = "QUOTE"
    ENGINEERING = "ENGINEERING"
    PRODUCTION = "PRODUCTION"
    DELIVERY = "DELIVERY"
    COMPLETE = "COMPLETE"


class JobStatus(str, PyEnum):
    ON_TRACK = "ON_TRACK"
    AT_RISK = "AT_RISK"
    DELAYED = "DELAYED"
    COMPLETE = "COMPLETE"
    CANCELLED = "CANCELLED"


class TrackingStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    BLOCKED = "BLOCKED"
    CANCELLED = "CANCELLED"


class ProductionStage(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    CURING = "CURING"
    QC = "QC"
    FINISHED = "FINISHED"
    DELAYED = "DELAYED"
    CANCELLED = "CANCELLED"


class InventoryStatus(str, PyEnum):
    OK = "OK"
    LOW = "LOW"
    CRITICAL = "CRITICAL"
    OUT_OF_STOCK = "OUT_OF_STOCK"


AUDIT_EVENT_TYPES = (
    "JOB_CREATED",
    "JOB_UPDATED",
    "STATUS_CHANGED",
    "STAGE_CHANGED",
    "PM_ASSIGNED",
    "PRODUCTION_SCHEDULED",
    "PRODUCTION_STARTED",
    "PRODUCTION_COMPLETE",
    "QUALITY_CHECK",
    "DELIVERY_SCHEDULED",
    "DELIVERY_COMPLETE",
    "INVENTORY_UPDATED",
    "MATERIAL_ORDERED",
    "NOTIFICATION_SENT",
    "AUTOMATION_TRIGGERED",
    "OTHER",
)

AUDIT_ENTITY_TYPES = ("JOB", "PRODUCTION", "INVENTORY", "WORKFLOW", "SYSTEM")


def _in_list(column: str, values) -> str:
    quoted = ", ".join(f"'{v.value if isinstance(v, PyEnum) else v}'" for v in values)
    return f"{column} IN ({quoted})"


def _jsonable(value: Any) -> Any:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, PyEnum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class DocumentMixin:
    """JSON-safe snapshot of a row, as published on the change feed."""

    def to_document(self) -> dict[str, Any]:
        mapper = inspect(type(self))
        return {attr.key: _jsonable(getattr(self, attr.key)) for attr in mapper.column_attrs}


# ─── 1. Jobs ───────────────────────────────────────────────────────────────


class Job(DocumentMixin, Base):
    __tablename__ = "jobs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    job_number = Column(String(32), nullable=False, unique=True)
    job_name = Column(String(255), nullable=False)
    customer_id = Column(GUID())
    customer_name = Column(String(255))
    project_manager_id = Column(GUID())
    pm_code = Column(String(50))
    pm_name = Column(String(255))
    stage = Column(String(20), nullable=False, default=Stage.QUOTE.value)
    status = Column(String(20), nullable=False, default=JobStatus.ON_TRACK.value)
    priority = Column(String(20), nullable=False, default="STANDARD")
    products_description = Column(String(255))
    quote_amount = Column(Float, default=0.0)
    timeline = Column(JSON, nullable=False, default=dict)
    days_offset = Column(Integer, default=0)
    progress = Column(Integer, default=0)
    active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_jobs_stage_status", "stage", "status"),
        CheckConstraint(_in_list("stage", Stage), name="ck_job_stage"),
        # APPROVED is a transient intake value; quote approval resets it to ON_TRACK.
        CheckConstraint(_in_list("status", [*JobStatus, "APPROVED"]), name="ck_job_status"),
        CheckConstraint("priority IN ('LOW', 'STANDARD', 'HIGH', 'URGENT')", name="ck_job_priority"),
    )

    tracking = relationship("WorkflowTracking", back_populates="job")
    production_schedules = relationship("ProductionSchedule", back_populates="job")


# ─── 2. Workflow Tracking ─────────────────────────────────────────────────


class WorkflowTracking(DocumentMixin, Base):
    __tablename__ = "workflow_tracking"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    job_id = Column(GUID(), ForeignKey("jobs.id"), nullable=False)
    job_number = Column(String(32))
    stage = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TrackingStatus.PENDING.value)
    assigned_to = Column(GUID())
    start_date = Column(DateTime)
    estimated_completion_date = Column(DateTime)
    actual_completion_date = Column(DateTime)
    blocked_reason = Column(Text)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("job_id", "stage", name="uq_tracking_job_stage"),
        Index("ix_tracking_due_status", "estimated_completion_date", "status"),
        CheckConstraint(_in_list("stage", Stage), name="ck_tracking_stage"),
        CheckConstraint(_in_list("status", TrackingStatus), name="ck_tracking_status"),
    )

    job = relationship("Job", back_populates="tracking")


# ─── 3. Production Schedules ──────────────────────────────────────────────


class ProductionSchedule(DocumentMixin, Base):
    __tablename__ = "production_schedules"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    production_id = Column(String(32), nullable=False, unique=True)
    job_id = Column(GUID(), ForeignKey("jobs.id"))
    job_number = Column(String(32))
    production_stage = Column(String(20), nullable=False, default=ProductionStage.SCHEDULED.value)
    stage_changed_at = Column(DateTime)
    scheduled_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    pour_date = Column(DateTime)
    cure_complete_date = Column(DateTime)
    expected_completion_date = Column(DateTime)
    actual_completion_date = Column(DateTime)
    temperature = Column(Float)
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_production_stage", "production_stage"),
        Index("ix_production_job", "job_id"),
        CheckConstraint(_in_list("production_stage", ProductionStage), name="ck_production_stage"),
    )

    job = relationship("Job", back_populates="production_schedules")
    quality_checks = relationship(
        "QualityCheck",
        back_populates="schedule",
        order_by="QualityCheck.sequence",
        lazy="selectin",
    )

    def to_document(self) -> dict[str, Any]:
        doc = super().to_document()
        doc["quality_checks"] = [qc.to_document() for qc in self.quality_checks]
        return doc


# ─── 4. Quality Checks ────────────────────────────────────────────────────


class QualityCheck(DocumentMixin, Base):
    __tablename__ = "quality_checks"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    schedule_id = Column(GUID(), ForeignKey("production_schedules.id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    inspector = Column(String(255))
    check_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    passed = Column(Boolean, nullable=False)
    notes = Column(Text)
    failure_reason = Column(Text)

    __table_args__ = (UniqueConstraint("schedule_id", "sequence", name="uq_quality_check_sequence"),)

    schedule = relationship("ProductionSchedule", back_populates="quality_checks")


# ─── 5. Inventory ─────────────────────────────────────────────────────────


class Inventory(DocumentMixin, Base):
    __tablename__ = "inventory"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    material_type = Column(String(100), nullable=False, unique=True)
    description = Column(Text)
    current_quantity = Column(Float, nullable=False, default=0.0)
    unit = Column(String(10), nullable=False)
    minimum_quantity = Column(Float, nullable=False)
    reorder_point = Column(Float)
    status = Column(String(20), nullable=False, default=InventoryStatus.OK.value)
    status_changed_at = Column(DateTime)
    supplier = Column(String(255))
    cost_per_unit = Column(Float)
    last_ordered = Column(DateTime)
    expected_delivery = Column(DateTime)
    location = Column(String(255))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("unit IN ('LB', 'YD3', 'UNITS', 'FT', 'GAL')", name="ck_inventory_unit"),
        CheckConstraint(_in_list("status", InventoryStatus), name="ck_inventory_status"),
    )


def derive_inventory_status(current_quantity: float, minimum_quantity: float) -> InventoryStatus:
    """Four-way stock rule; the only way Inventory.status is ever set."""
    if current_quantity <= 0:
        return InventoryStatus.OUT_OF_STOCK
    if current_quantity < minimum_quantity * 0.5:
        return InventoryStatus.CRITICAL
    if current_quantity < minimum_quantity:
        return InventoryStatus.LOW
    return InventoryStatus.OK


# ─── 6. Notifications ─────────────────────────────────────────────────────


class Notification(DocumentMixin, Base):
    __tablename__ = "notifications"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    recipient_id = Column(GUID(), nullable=False)
    recipient_email = Column(String(255))
    type = Column(String(20), nullable=False, default="INFO")
    priority = Column(String(20), nullable=False, default="NORMAL")
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    related_entity = Column(JSON, default=dict)
    read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime)
    action_required = Column(Boolean, nullable=False, default=False)
    action_url = Column(String(500))
    expires_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notifications_recipient_read", "recipient_id", "read"),
        CheckConstraint("type IN ('INFO', 'WARNING', 'ALERT', 'SUCCESS', 'ERROR')", name="ck_notification_type"),
        CheckConstraint("priority IN ('LOW', 'NORMAL', 'HIGH', 'URGENT')", name="ck_notification_priority"),
    )


# ─── 7. Audit Logs ────────────────────────────────────────────────────────


class AuditLog(DocumentMixin, Base):
    __tablename__ = "audit_logs"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    event_type = Column(String(40), nullable=False)
    entity_type = Column(String(20))
    entity_id = Column(GUID())
    entity_name = Column(String(255))
    user_id = Column(GUID())
    username = Column(String(255), nullable=False, default="system")
    action = Column(Text)
    details = Column(JSON, default=dict)
    previous_value = Column(JSON)
    new_value = Column(JSON)
    dedupe_key = Column(String(255))
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_audit_timestamp", "timestamp"),
        Index("ix_audit_entity", "entity_type", "entity_id"),
        Index("ix_audit_event_type", "event_type"),
        Index("ix_audit_dedupe_key", "dedupe_key", unique=True),
        CheckConstraint(_in_list("event_type", AUDIT_EVENT_TYPES), name="ck_audit_event_type"),
        CheckConstraint(_in_list("entity_type", AUDIT_ENTITY_TYPES), name="ck_audit_entity_type"),
    )


# ─── Derived field maintenance ────────────────────────────────────────────


def _parse_day(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        return None


@event.listens_for(Job, "before_insert")
@event.listens_for(Job, "before_update")
def _job_days_offset(mapper, connection, target: Job) -> None:
    due = _parse_day((target.timeline or {}).get("due_date"))
    if due is not None:
        target.days_offset = (due - datetime.utcnow().date()).days


@event.listens_for(Inventory, "before_insert")
@event.listens_for(Inventory, "before_update")
def _inventory_status(mapper, connection, target: Inventory) -> None:
    current = target.current_quantity if target.current_quantity is not None else 0.0
    minimum = target.minimum_quantity if target.minimum_quantity is not None else 0.0
    derived = derive_inventory_status(current, minimum).value
    if target.status_changed_at is None or inspect(target).attrs.status.value != derived:
        target.status_changed_at = datetime.utcnow()
    target.status = derived


@event.listens_for(ProductionSchedule, "before_insert")
def _schedule_stage_inserted(mapper, connection, target: ProductionSchedule) -> None:
    target.stage_changed_at = datetime.utcnow()


@event.listens_for(ProductionSchedule, "before_update")
def _schedule_stage_updated(mapper, connection, target: ProductionSchedule) -> None:
    if inspect(target).attrs.production_stage.history.has_changes():
        target.stage_changed_at = datetime.utcnow()
