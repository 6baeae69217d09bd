"""
Change feed transport — Redis Streams.

The store publishes one stream entry per committed write to a watched
collection; subscribers block on XREAD from the last id they processed.
Redis Streams give the per-source ordering the engine relies on and let a
consumer resume after a dropped connection without skipping entries.

    EntityStore.update_by_id → XADD changes:jobs * entity job operation update ...
    ChangeFeedSubscriber     → XINFO STREAM changes:jobs          (tail id at subscribe)
                             → XREAD BLOCK 0 STREAMS changes:jobs <last_id>

Reads always name a concrete id; `$` is never sent to XREAD.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError, ResponseError

from automation.changes import ChangeEvent, EntityType
from automation.errors import ChangeFeedUnavailable

logger = structlog.get_logger()

# Id before any entry; the start position of a stream that does not exist yet.
STREAM_START = "0-0"

RawEntry = tuple[str, dict[Any, Any]]


class ChangeFeed(ABC):
    """Transport used by the store to publish, and by subscribers to receive."""

    @abstractmethod
    async def check_available(self) -> None:
        """Raise ChangeFeedUnavailable if ordered change feeds cannot be served."""
        ...

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> None:
        ...

    @abstractmethod
    async def tail_id(self, entity: EntityType) -> str:
        """Id of the newest entry on the stream (STREAM_START if it is empty)."""
        ...

    @abstractmethod
    async def read(self, entity: EntityType, last_id: str) -> list[RawEntry]:
        """Block until entries after `last_id` exist; return them in order."""
        ...

    async def close(self) -> None:
        return None


class RedisStreamChangeFeed(ChangeFeed):
    def __init__(
        self,
        redis_url: str,
        prefix: str = "changes",
        block_ms: int = 0,
        batch_size: int = 100,
        maxlen: int = 100_000,
    ):
        self.redis_url = redis_url
        self.prefix = prefix
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.maxlen = maxlen
        self._publisher: aioredis.Redis | None = None
        self._readers: dict[EntityType, aioredis.Redis] = {}

    def stream_key(self, entity: EntityType) -> str:
        return f"{self.prefix}:{entity.collection}"

    def _publisher_client(self) -> aioredis.Redis:
        if self._publisher is None:
            self._publisher = aioredis.from_url(self.redis_url)
        return self._publisher

    def _reader_client(self, entity: EntityType) -> aioredis.Redis:
        # One connection per stream so a blocking XREAD never queues behind another.
        client = self._readers.get(entity)
        if client is None:
            client = aioredis.from_url(self.redis_url, single_connection_client=True)
            self._readers[entity] = client
        return client

    async def check_available(self) -> None:
        try:
            await self._publisher_client().ping()
        except (RedisError, OSError) as exc:
            raise ChangeFeedUnavailable(f"redis unreachable at {self.redis_url}: {exc}") from exc

    async def publish(self, event: ChangeEvent) -> None:
        await self._publisher_client().xadd(
            self.stream_key(event.entity),
            event.to_raw(),
            maxlen=self.maxlen,
            approximate=True,
        )

    async def tail_id(self, entity: EntityType) -> str:
        key = self.stream_key(entity)
        try:
            info = await self._publisher_client().xinfo_stream(key)
        except ResponseError as exc:
            if "no such key" in str(exc).lower():
                return STREAM_START
            raise ChangeFeedUnavailable(f"stream {key} info failed: {exc}") from exc
        except (RedisError, OSError) as exc:
            raise ChangeFeedUnavailable(f"stream {key} info failed: {exc}") from exc
        last = info.get("last-generated-id") or info.get(b"last-generated-id") or STREAM_START
        return last.decode("utf-8") if isinstance(last, bytes) else str(last)

    async def read(self, entity: EntityType, last_id: str) -> list[RawEntry]:
        key = self.stream_key(entity)
        try:
            response = await self._reader_client(entity).xread(
                {key: last_id},
                count=self.batch_size,
                block=self.block_ms,
            )
        except (RedisError, OSError) as exc:
            # Drop the connection so the next read reconnects.
            client = self._readers.pop(entity, None)
            if client is not None:
                await _quiet_close(client)
            raise ChangeFeedUnavailable(f"stream {key} read failed: {exc}") from exc

        entries: list[RawEntry] = []
        for _stream, messages in response or []:
            for entry_id, fields in messages:
                if isinstance(entry_id, bytes):
                    entry_id = entry_id.decode("utf-8")
                entries.append((entry_id, fields))
        return entries

    async def close(self) -> None:
        clients = list(self._readers.values())
        self._readers.clear()
        if self._publisher is not None:
            clients.append(self._publisher)
            self._publisher = None
        for client in clients:
            await _quiet_close(client)


async def _quiet_close(client: aioredis.Redis) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("feed.close_failed", error=str(exc))
