"""Retry worker - polls for due and stale attempts.

Each cycle dispatches scheduled attempts whose time has come and expires
attempts that never received an outcome callback, so the in-flight count
the rate limiter reads stays honest.

Usage:
    orchestrator-worker                             # via pyproject.toml entrypoint
    python -m outreach_orchestrator.worker          # direct
"""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import datetime, timezone

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.db_factory import create_database
from outreach_orchestrator.dialer.base import CallPlacer
from outreach_orchestrator.dialer.webhook import WebhookCallPlacer
from outreach_orchestrator.dispatcher import RetryDispatcher
from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline

logger = logging.getLogger(__name__)


class RetryWorker:
    def __init__(self, settings: Settings | None = None, placer: CallPlacer | None = None):
        self.settings = settings or Settings()
        self._running = False
        self._closed = False

        self.db = create_database(self.settings)
        self.placer = placer or WebhookCallPlacer(self.settings)
        self.pipeline = OrchestrationPipeline(self.db, self.placer, self.settings)
        self.dispatcher = RetryDispatcher(self.db, self.pipeline, self.settings)

    async def start(self) -> None:
        """Connect to database and start polling."""
        await self.db.connect()
        if not await self.placer.health_check():
            logger.warning("Call placer %s is not configured; placements will fail", self.placer.name)

        self._running = True
        logger.info("Retry worker started, polling every %ds", self.settings.poll_interval)

        while self._running:
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Poll cycle error")
            await asyncio.sleep(self.settings.poll_interval)

    async def stop(self) -> None:
        """Graceful shutdown."""
        self._running = False
        if self._closed:
            return
        self._closed = True
        await self.placer.close()
        await self.db.close()
        logger.info("Retry worker stopped")

    async def poll_once(self, now: datetime | None = None) -> None:
        now = now or datetime.now(timezone.utc)
        expired = await self.dispatcher.expire_stale(now)
        if expired:
            logger.info("Expired %d stale attempt(s)", expired)

        summary = await self.dispatcher.dispatch_due(now)
        if summary.due:
            logger.info(
                "Dispatched %d attempt(s): %s (rescheduled=%d, errors=%d)",
                summary.due, summary.outcomes, summary.rescheduled, summary.errors,
            )


async def _run() -> None:
    settings = Settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = RetryWorker(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.create_task(worker.stop()))
        except NotImplementedError:
            pass  # Windows

    try:
        await worker.start()
    finally:
        await worker.stop()


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
