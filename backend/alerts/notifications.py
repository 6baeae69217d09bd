"""
Notification Sink — persist user-facing alerts, then publish them.

Notifications are written to the database first. When publishing is
enabled they are also pushed to Redis pub/sub for real-time delivery:

    channel  notifications:<recipient_id>
    payload  {"type": "notification", "payload": {...}}

Persistence errors propagate to the caller, so the owning reaction is
retried on the next delivery. Publish errors are logged and dropped.
"""

import json
import uuid
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.models import Notification

logger = structlog.get_logger()


class NotificationSink:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        redis_url: str | None = None,
    ):
        self._sessions = session_factory
        self._redis_url = redis_url

    async def create(
        self,
        recipient_id: uuid.UUID,
        type: str,
        priority: str,
        title: str,
        message: str,
        related_entity: dict[str, Any] | None = None,
        action_required: bool = False,
    ) -> Notification:
        notification = Notification(
            recipient_id=recipient_id,
            type=type,
            priority=priority,
            title=title,
            message=message,
            related_entity=related_entity or {},
            action_required=action_required,
        )
        async with self._sessions() as db:
            db.add(notification)
            await db.commit()

        logger.info(
            "notification.created",
            notification_id=str(notification.id),
            recipient_id=str(recipient_id),
            priority=priority,
            title=title,
        )
        await self.publish(notification)
        return notification

    async def publish(self, notification: Notification) -> int:
        """Push to Redis pub/sub. Returns number of subscribers notified."""
        if not self._redis_url:
            return 0

        payload = json.dumps(
            {
                "type": "notification",
                "payload": {
                    "notification_id": str(notification.id),
                    "type": notification.type,
                    "priority": notification.priority,
                    "title": notification.title,
                    "message": notification.message,
                    "related_entity": notification.related_entity,
                    "action_required": notification.action_required,
                    "created_at": notification.created_at.isoformat(),
                },
            }
        )
        redis = aioredis.from_url(self._redis_url)
        try:
            return await redis.publish(f"notifications:{notification.recipient_id}", payload)
        except (RedisError, OSError) as exc:
            logger.warning("notification.publish_failed", notification_id=str(notification.id), error=str(exc))
            return 0
        finally:
            await redis.aclose()
