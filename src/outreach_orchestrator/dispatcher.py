"""Dispatches scheduled retry attempts once they come due.

Each due attempt is fed back through the pipeline as a trigger keyed on the
attempt id, so every gate is re-evaluated at dispatch time. Gate outcomes
that only delay the call move ``scheduled_for`` forward instead of burning
the attempt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from pydantic import BaseModel, Field

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.models import (
    Attempt,
    AttemptStatus,
    PipelineOutcome,
    PipelineResult,
    SessionStatus,
    Trigger,
)
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.pipeline.orchestrator import OrchestrationPipeline
from outreach_orchestrator.session_machine import TERMINAL_STATES

logger = logging.getLogger(__name__)


class DispatchSummary(BaseModel):
    due: int = 0
    outcomes: dict[str, int] = Field(default_factory=dict)
    rescheduled: int = 0
    errors: int = 0

    def count(self, outcome: PipelineOutcome) -> None:
        self.outcomes[outcome.value] = self.outcomes.get(outcome.value, 0) + 1


class RetryDispatcher:
    def __init__(
        self,
        db: Storage,
        pipeline: OrchestrationPipeline,
        settings: Settings | None = None,
    ):
        self.db = db
        self.pipeline = pipeline
        self.settings = settings or Settings()

    async def dispatch_due(self, now: datetime, limit: int = 100) -> DispatchSummary:
        """Run every scheduled attempt whose time has come."""
        summary = DispatchSummary()
        due = await self.db.get_due_attempts(now, limit=limit)
        summary.due = len(due)
        if due:
            logger.info("Dispatching %d due attempt(s)", len(due))

        for attempt in due:
            try:
                result = await self.pipeline.handle_trigger(
                    Trigger(
                        organization_id=attempt.organization_id,
                        contact_id=attempt.contact_id,
                        trigger_id=f"retry:{attempt.id}",
                    ),
                    now=now,
                )
                summary.count(result.outcome)
                if await self._settle(attempt, result):
                    summary.rescheduled += 1
            except Exception:
                summary.errors += 1
                logger.exception("Dispatch of attempt %s failed", attempt.id)

        return summary

    async def _settle(self, attempt: Attempt, result: PipelineResult) -> bool:
        """Apply a gate outcome to the still-scheduled attempt. True when rescheduled."""
        if result.outcome == PipelineOutcome.SKIPPED_WINDOW and result.next_opening:
            await self.db.update_attempt(attempt.id, scheduled_for=result.next_opening)
            logger.info(
                "Attempt %s outside call window; moved to %s",
                attempt.id, result.next_opening.isoformat(),
            )
            return True

        if result.outcome == PipelineOutcome.RATE_LIMITED and result.retry_after:
            await self.db.update_attempt(attempt.id, scheduled_for=result.retry_after)
            logger.info(
                "Attempt %s rate limited (%s); moved to %s",
                attempt.id, result.reason, result.retry_after.isoformat(),
            )
            return True

        if result.outcome == PipelineOutcome.SKIPPED_WINDOW:
            await self.db.update_attempt(
                attempt.id, status=AttemptStatus.FAILED, failure_reason="no_call_window"
            )
            logger.warning("Attempt %s has no future call window; failed", attempt.id)
        elif result.outcome == PipelineOutcome.BLOCKED_COMPLIANCE:
            await self.db.update_attempt(
                attempt.id, status=AttemptStatus.FAILED, failure_reason="do_not_contact"
            )
            logger.info("Attempt %s blocked by do-not-contact; failed", attempt.id)
        return False

    async def expire_stale(self, now: datetime) -> int:
        """Settle attempts whose outcome never arrived.

        A ``calling`` attempt whose session already ended is settled by that
        session's status. Otherwise the attempt fails with its open session
        closed as failed. The next attempt is then scheduled as for any other
        failed call. ``pending`` attempts left behind by an interrupted
        placement are treated the same way.
        """
        cutoff = now - timedelta(hours=self.settings.stale_attempt_hours)
        stale = await self.db.get_stale_attempts(cutoff)
        for attempt in stale:
            session = await self.db.get_session_by_attempt(attempt.id)
            if (
                attempt.status == AttemptStatus.CALLING
                and session is not None
                and session.status in TERMINAL_STATES
            ):
                logger.info(
                    "Attempt %s (#%d) settled from its %s session",
                    attempt.id, attempt.sequence_number, session.status.value,
                )
                await self.pipeline.close_attempt(session, now)
                continue

            reason = (
                "no_outcome_callback"
                if attempt.status == AttemptStatus.CALLING
                else "placement_interrupted"
            )
            await self.db.update_attempt(attempt.id, status=AttemptStatus.FAILED, failure_reason=reason)
            if session is not None and session.status not in TERMINAL_STATES:
                await self.pipeline.sessions.finish(session.id, SessionStatus.FAILED, None)
            logger.warning(
                "Attempt %s (#%d) for contact %s expired after %dh in %s",
                attempt.id, attempt.sequence_number, attempt.contact_id,
                self.settings.stale_attempt_hours, attempt.status.value,
            )
            await self.pipeline.schedule_retry(attempt.organization_id, attempt.contact_id, now)
        return len(stale)
