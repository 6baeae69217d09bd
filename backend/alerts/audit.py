"""
Audit Sink — append-only writer of immutable AuditLog rows.

append() is fire-and-forget: a failed write is logged and never retried
or surfaced to the caller. Rows are never updated or deleted.

Automations that react to one-off events stamp their entry with a
`dedupe_key`, which later deliveries check before reacting again. Keys are
unique; appending a key that is already recorded is a logged no-op.
"""

import uuid
from typing import Any

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import AuditLog

logger = structlog.get_logger()

SYSTEM_ACTOR = "system"


class AuditSink:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._sessions = session_factory

    async def append(
        self,
        event_type: str,
        entity_type: str,
        entity_id: uuid.UUID | None,
        entity_name: str | None,
        actor: dict[str, Any] | None,
        action: str,
        details: dict[str, Any] | None = None,
        previous_value: Any = None,
        new_value: Any = None,
        dedupe_key: str | None = None,
    ) -> AuditLog | None:
        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            entity_name=entity_name,
            user_id=actor.get("id") if actor else None,
            username=actor.get("username", SYSTEM_ACTOR) if actor else SYSTEM_ACTOR,
            action=action,
            details=details or {},
            previous_value=previous_value,
            new_value=new_value,
            dedupe_key=dedupe_key,
        )
        try:
            async with self._sessions() as db:
                db.add(entry)
                await db.commit()
        except Exception as exc:  # noqa: BLE001
            if dedupe_key is not None and isinstance(exc, IntegrityError):
                logger.info("audit.duplicate_key", event_type=event_type, dedupe_key=dedupe_key)
                return None
            logger.error(
                "audit.append_failed",
                event_type=event_type,
                entity_type=entity_type,
                entity_id=str(entity_id) if entity_id else None,
                error=str(exc),
            )
            return None
        return entry

