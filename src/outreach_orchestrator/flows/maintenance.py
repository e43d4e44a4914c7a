"""Prefect flows for scheduled retry maintenance.

An alternative to the long-running ``orchestrator-worker`` for deployments
that already schedule work through Prefect.
"""

from __future__ import annotations

from datetime import datetime, timezone

from prefect import flow, task

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.db_factory import create_database
from outreach_orchestrator.dialer.webhook import WebhookCallPlacer
from outreach_orchestrator.dispatcher import RetryDispatcher
from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline


@task(name="expire-stale-attempts")
async def expire_stale_task() -> int:
    settings = Settings()
    db = create_database(settings)
    placer = WebhookCallPlacer(settings)
    await db.connect()
    try:
        pipeline = OrchestrationPipeline(db, placer, settings)
        dispatcher = RetryDispatcher(db, pipeline, settings)
        return await dispatcher.expire_stale(datetime.now(timezone.utc))
    finally:
        await placer.close()
        await db.close()


@task(name="dispatch-due-attempts")
async def dispatch_due_task() -> dict:
    settings = Settings()
    db = create_database(settings)
    placer = WebhookCallPlacer(settings)
    await db.connect()
    try:
        pipeline = OrchestrationPipeline(db, placer, settings)
        dispatcher = RetryDispatcher(db, pipeline, settings)
        summary = await dispatcher.dispatch_due(datetime.now(timezone.utc))
        return summary.model_dump()
    finally:
        await placer.close()
        await db.close()


@flow(name="retry-maintenance", log_prints=True)
async def retry_maintenance_flow() -> dict:
    """Run the retry maintenance tasks once:
    1. Expire attempts stuck in calling with no outcome callback
    2. Dispatch scheduled attempts that are due
    """
    expired = await expire_stale_task()
    print(f"Stale attempts expired: {expired}")

    dispatched = await dispatch_due_task()
    print(
        f"Due attempts: {dispatched['due']} "
        f"outcomes={dispatched['outcomes']} "
        f"rescheduled={dispatched['rescheduled']} "
        f"errors={dispatched['errors']}"
    )

    return {
        "stale_expired": expired,
        "dispatch": dispatched,
    }
