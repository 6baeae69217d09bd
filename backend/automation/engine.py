"""
Automation Engine — process-level owner of the reaction loops.

    start()  create missing tables (when it owns the database engine),
             subscribe to the jobs / production_schedules / inventory
             streams (one task each) and start the overdue sweep loop
    stop()   cancel the loops, close the feed, wait for in-flight
             reactions to finish

Events on one stream are handled strictly one after another; the three
streams and the sweep run independently. A reaction that is already
running when stop() is called is shielded from cancellation and awaited.

Neither start() nor stop() raises: a store without a change feed leaves
the engine in degraded mode, where trigger() and run_sweep() still work.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, AsyncIterator, Awaitable

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from alerts.audit import AuditSink
from alerts.notifications import NotificationSink
from automation.changes import ChangeEvent, EntityType
from automation.dispatcher import ReactionDispatcher, ReactionResult
from automation.errors import ChangeFeedUnavailable
from automation.feed import RedisStreamChangeFeed
from automation.subscriber import ChangeFeedSubscriber, FeedMode
from automation.sweep import OverdueSweep
from db.session import build_engine, build_session_factory, create_all
from db.store import EntityStore

logger = structlog.get_logger()

WATCHED_STREAMS = (EntityType.JOB, EntityType.PRODUCTION_SCHEDULE, EntityType.INVENTORY)


class AutomationEngine:
    def __init__(
        self,
        store: EntityStore,
        audit: AuditSink,
        notifications: NotificationSink,
        *,
        feed_enabled: bool = True,
        reconnect_seconds: float = 5.0,
        sweep_interval_seconds: float = 3600,
        cure_days: int = 7,
        db_engine: AsyncEngine | None = None,
    ):
        self.store = store
        self.dispatcher = ReactionDispatcher(store, audit, notifications, cure_days=cure_days)
        self.subscriber = ChangeFeedSubscriber(store, reconnect_seconds=reconnect_seconds, enabled=feed_enabled)
        self.sweep = OverdueSweep(store, self.dispatcher)
        self.sweep_interval_seconds = sweep_interval_seconds
        self._db_engine = db_engine

        self._mode: FeedMode | None = None
        self._loops: list[asyncio.Task] = []
        self._inflight: set[asyncio.Task] = set()
        self._started = False

    @property
    def mode(self) -> FeedMode | None:
        """LIVE or DEGRADED once started; None before start()."""
        return self._mode

    @property
    def running(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        try:
            if self._db_engine is not None:
                await create_all(self._db_engine)
            subscription = await self.subscriber.subscribe(WATCHED_STREAMS)
            self._mode = subscription.mode
            for entity, stream in subscription.streams.items():
                self._loops.append(asyncio.create_task(self._consume(entity, stream), name=f"feed:{entity.value}"))
            self._loops.append(asyncio.create_task(self._sweep_loop(), name="overdue-sweep"))
        except Exception as exc:  # noqa: BLE001
            self._mode = FeedMode.DEGRADED
            logger.error("engine.start_failed", error=str(exc), exc_info=True)
            return

        logger.info(
            "engine.started",
            mode=self._mode.value,
            streams=len(self._loops) - 1,
            sweep_interval_seconds=self.sweep_interval_seconds,
        )

    async def stop(self) -> None:
        if not self._started:
            return

        loops, self._loops = self._loops, []
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        try:
            await self.store.watch().close()
        except ChangeFeedUnavailable:
            pass
        except Exception as exc:  # noqa: BLE001
            logger.warning("engine.feed_close_failed", error=str(exc))

        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        if self._db_engine is not None:
            await self._db_engine.dispose()

        self._started = False
        logger.info("engine.stopped")

    # ── Direct invocation ──────────────────────────────────────────────

    async def trigger(self, kind: Any, entity_id: Any, now: datetime | None = None) -> ReactionResult:
        return await self.dispatcher.trigger(kind, entity_id, now=now)

    async def run_sweep(self, now: datetime | None = None) -> dict[str, Any]:
        return await self.sweep.run_once(now=now)

    # ── Loops ──────────────────────────────────────────────────────────

    async def _finish(self, work: Awaitable[Any]) -> Any:
        """Run `work` as a task that survives cancellation of its caller."""
        task = asyncio.ensure_future(work)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _consume(self, entity: EntityType, stream: AsyncIterator[ChangeEvent]) -> None:
        try:
            async for event in stream:
                result = await self._finish(self.dispatcher.dispatch(event))
                if result.status == "failed":
                    logger.warning(
                        "engine.reaction_failed",
                        entity=entity.value,
                        stream_id=event.stream_id,
                        kind=result.kind.value if result.kind else None,
                    )
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self._finish(self.sweep.run_once())
            except Exception as exc:  # noqa: BLE001
                logger.error("sweep.failed", error=str(exc), exc_info=True)


def create_automation_engine(settings) -> AutomationEngine:
    """Wire store, feed, sinks and engine from application settings."""
    db_engine = build_engine(settings.database_url, echo=settings.database_echo)
    sessions = build_session_factory(db_engine)

    feed = None
    if settings.change_feed_enabled:
        feed = RedisStreamChangeFeed(
            settings.redis_url,
            prefix=settings.change_feed_prefix,
            block_ms=settings.change_feed_block_ms,
        )
    store = EntityStore(sessions, feed=feed)
    notifications = NotificationSink(
        sessions,
        redis_url=settings.redis_url if settings.notification_publish_enabled else None,
    )
    return AutomationEngine(
        store,
        AuditSink(sessions),
        notifications,
        feed_enabled=settings.change_feed_enabled,
        reconnect_seconds=settings.change_feed_reconnect_seconds,
        sweep_interval_seconds=settings.overdue_sweep_interval_seconds,
        cure_days=settings.cure_days,
        db_engine=db_engine,
    )
