"""
Change Feed Subscriber — one ordered event stream per watched collection.

subscribe() never raises. If the store has no change feed, or the feed is
disabled or unreachable, it returns a degraded Subscription with no
streams and logs one warning; reactions then run only through direct
triggers and the overdue sweep.

Each stream is an async iterator of ChangeEvents that:
  - starts after the stream tail recorded when subscribe() ran,
  - resumes from the last processed id after a dropped connection,
  - drops malformed entries with a warning and keeps going.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Iterable

import structlog

from automation.changes import ChangeEvent, EntityType, normalize_change
from automation.errors import ChangeFeedUnavailable, MalformedChangeEvent
from automation.feed import ChangeFeed
from db.store import EntityStore

logger = structlog.get_logger()


class FeedMode(str, Enum):
    LIVE = "live"
    DEGRADED = "degraded"


@dataclass
class Subscription:
    mode: FeedMode
    streams: dict[EntityType, AsyncIterator[ChangeEvent]] = field(default_factory=dict)
    reason: str | None = None


class ChangeFeedSubscriber:
    def __init__(self, store: EntityStore, reconnect_seconds: float = 5.0, enabled: bool = True):
        self.store = store
        self.reconnect_seconds = reconnect_seconds
        self.enabled = enabled

    async def subscribe(self, entities: Iterable[EntityType]) -> Subscription:
        entities = list(entities)
        if not self.enabled:
            return self._degraded("change feed disabled by configuration")
        try:
            feed = self.store.watch()
            await feed.check_available()
            start_ids = {entity: await feed.tail_id(entity) for entity in entities}
        except ChangeFeedUnavailable as exc:
            return self._degraded(str(exc))
        except Exception as exc:  # noqa: BLE001
            return self._degraded(f"change feed probe failed: {exc}")

        logger.info("feed.subscribed", streams={e.value: start_ids[e] for e in entities})
        return Subscription(
            mode=FeedMode.LIVE,
            streams={entity: self._stream(feed, entity, start_ids[entity]) for entity in entities},
        )

    def _degraded(self, reason: str) -> Subscription:
        logger.warning("feed.degraded", reason=reason)
        return Subscription(mode=FeedMode.DEGRADED, reason=reason)

    async def _stream(self, feed: ChangeFeed, entity: EntityType, start_id: str) -> AsyncIterator[ChangeEvent]:
        last_id = start_id
        while True:
            try:
                entries = await feed.read(entity, last_id)
            except ChangeFeedUnavailable as exc:
                logger.warning(
                    "feed.read_failed",
                    entity=entity.value,
                    last_id=last_id,
                    retry_in=self.reconnect_seconds,
                    error=str(exc),
                )
                await asyncio.sleep(self.reconnect_seconds)
                continue

            for entry_id, fields in entries:
                last_id = entry_id
                try:
                    event = normalize_change(fields, stream_id=entry_id)
                except MalformedChangeEvent as exc:
                    logger.warning("feed.malformed_event", entity=entity.value, stream_id=entry_id, error=str(exc))
                    continue
                if event.entity is not entity:
                    logger.warning(
                        "feed.malformed_event",
                        entity=entity.value,
                        stream_id=entry_id,
                        error=f"event for {event.entity.value} on the {entity.value} stream",
                    )
                    continue
                yield event
