"""
Automation tasks — direct-trigger and sweep entry points for Celery.

These run one reaction (or one sweep) against the database without a
change feed, so they work the same in live and degraded deployments.
"""

from __future__ import annotations

import asyncio

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


def _build_dispatcher(settings):
    from alerts.audit import AuditSink
    from alerts.notifications import NotificationSink
    from automation.dispatcher import ReactionDispatcher
    from db.session import build_engine, build_session_factory
    from db.store import EntityStore

    engine = build_engine(settings.database_url)
    sessions = build_session_factory(engine)
    redis_url = settings.redis_url if settings.notification_publish_enabled else None
    dispatcher = ReactionDispatcher(
        EntityStore(sessions),
        AuditSink(sessions),
        NotificationSink(sessions, redis_url=redis_url),
        cure_days=settings.cure_days,
    )
    return engine, dispatcher


@celery_app.task(
    name="workers.automation.trigger_automation",
    bind=True,
    max_retries=2,
    default_retry_delay=30,
    acks_late=True,
)
def trigger_automation(self, kind: str, entity_id: str):
    """
    Run one automation for one entity.

    Raises UnknownAutomation for an unknown kind. A failed reaction is
    retried; reactions are idempotent, so a retry after a partial write
    only applies what is still missing.
    """
    from automation.errors import ReactionFailed, UnknownAutomation
    from core.config import get_settings

    run_id = self.request.id or "manual"

    async def _run():
        engine, dispatcher = _build_dispatcher(get_settings())
        try:
            result = await dispatcher.trigger(kind, entity_id)
        finally:
            await engine.dispose()

        return {
            "status": result.status,
            "kind": kind,
            "entity_id": str(entity_id),
            "effects": result.effects,
            "error": result.error,
            "run_id": run_id,
        }

    try:
        summary = asyncio.run(_run())
    except UnknownAutomation:
        raise
    except Exception as exc:  # noqa: BLE001
        logger.error("automation.task_failed", kind=kind, entity_id=str(entity_id), error=str(exc), exc_info=True)
        raise self.retry(exc=exc)

    if summary["status"] == "failed":
        logger.warning("automation.task_retry", **summary)
        raise self.retry(exc=ReactionFailed(summary["error"]))

    logger.info("automation.task_complete", **summary)
    return summary


@celery_app.task(
    name="workers.automation.run_overdue_sweep",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def run_overdue_sweep(self):
    """Flag every overdue workflow stage once for this sweep."""
    from automation.sweep import OverdueSweep
    from core.config import get_settings

    run_id = self.request.id or "manual"

    async def _sweep():
        engine, dispatcher = _build_dispatcher(get_settings())
        try:
            summary = await OverdueSweep(dispatcher.store, dispatcher).run_once(sweep_id=run_id if run_id != "manual" else None)
        finally:
            await engine.dispose()
        return {"status": "success", "run_id": run_id, **summary}

    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001
        logger.error("sweep.task_failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
