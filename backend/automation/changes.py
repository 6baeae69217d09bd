"""
Change event normalization.

Raw change records arrive from the store's change feed (Redis stream
entries, or dicts from any other transport) and are normalized into one
canonical shape before the dispatcher sees them:

    ChangeEvent(entity, operation, id, changed_fields, snapshot)

Raw record (stream entry fields, values are strings):
    {
        "entity": "job",
        "operation": "update",
        "id": "6f0c...",
        "changed_fields": "[\"stage\", \"timeline.quote_approved\"]",
        "snapshot": "{...full document after the write...}"
    }

Records that cannot be normalized raise MalformedChangeEvent; the
subscriber logs and drops them.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from automation.errors import MalformedChangeEvent


class EntityType(str, Enum):
    """Watched entity streams and their collections."""

    JOB = "job"
    PRODUCTION_SCHEDULE = "production_schedule"
    INVENTORY = "inventory"

    @property
    def collection(self) -> str:
        return WATCHED_COLLECTIONS[self]


WATCHED_COLLECTIONS: dict[EntityType, str] = {
    EntityType.JOB: "jobs",
    EntityType.PRODUCTION_SCHEDULE: "production_schedules",
    EntityType.INVENTORY: "inventory",
}


class Operation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"


RAW_EVENT_SCHEMA = {
    "required_fields": ["entity", "operation", "id"],
}


@dataclass(frozen=True)
class ChangeEvent:
    entity: EntityType
    operation: Operation
    id: uuid.UUID
    changed_fields: frozenset[str] = field(default_factory=frozenset)
    snapshot: dict[str, Any] | None = None
    stream_id: str | None = None

    def changed(self, path: str) -> bool:
        """True if `path` or any of its sub-paths was written."""
        prefix = f"{path}."
        return any(f == path or f.startswith(prefix) for f in self.changed_fields)

    def to_raw(self) -> dict[str, str]:
        raw = {
            "entity": self.entity.value,
            "operation": self.operation.value,
            "id": str(self.id),
            "changed_fields": json.dumps(sorted(self.changed_fields)),
        }
        if self.snapshot is not None:
            raw["snapshot"] = json.dumps(self.snapshot)
        return raw


def validate_raw_change(raw: dict[str, Any]) -> list[str]:
    """Validate a raw change record, returning list of errors."""
    errors = []
    for key in RAW_EVENT_SCHEMA["required_fields"]:
        if key not in raw or raw[key] in (None, ""):
            errors.append(f"Missing required field: {key}")
    return errors


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _load_json(value: Any, label: str) -> Any:
    value = _decode(value)
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        raise MalformedChangeEvent(f"{label} is not valid JSON: {exc}") from exc


def normalize_change(raw: dict[Any, Any], stream_id: str | None = None) -> ChangeEvent:
    """
    Translate one raw change record into a ChangeEvent.

    Accepts bytes or str keys/values (redis-py returns bytes unless
    decode_responses is set). `changed_fields` and `snapshot` may be JSON
    strings or already-decoded Python objects.
    """
    if not isinstance(raw, dict):
        raise MalformedChangeEvent(f"Change record must be a mapping, got {type(raw).__name__}")

    record = {_decode(k): v for k, v in raw.items()}
    errors = validate_raw_change(record)
    if errors:
        raise MalformedChangeEvent("; ".join(errors))

    try:
        entity = EntityType(_decode(record["entity"]))
    except ValueError as exc:
        raise MalformedChangeEvent(f"Unknown entity: {record['entity']!r}") from exc

    try:
        operation = Operation(_decode(record["operation"]))
    except ValueError as exc:
        raise MalformedChangeEvent(f"Unsupported operation: {record['operation']!r}") from exc

    try:
        entity_id = uuid.UUID(str(_decode(record["id"])))
    except ValueError as exc:
        raise MalformedChangeEvent(f"Invalid id: {record['id']!r}") from exc

    fields = _load_json(record.get("changed_fields"), "changed_fields") or []
    if not isinstance(fields, (list, tuple, set, frozenset)) or not all(isinstance(f, str) for f in fields):
        raise MalformedChangeEvent("changed_fields must be a list of field paths")

    snapshot = _load_json(record.get("snapshot"), "snapshot")
    if snapshot is not None and not isinstance(snapshot, dict):
        raise MalformedChangeEvent("snapshot must be an object")

    if operation is Operation.INSERT and not fields and snapshot:
        fields = list(snapshot.keys())

    return ChangeEvent(
        entity=entity,
        operation=operation,
        id=entity_id,
        changed_fields=frozenset(fields),
        snapshot=snapshot,
        stream_id=_decode(stream_id),
    )
