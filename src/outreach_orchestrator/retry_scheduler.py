"""Attempt numbering, retry delays and the max-attempts ceiling."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import MaxAttemptsReached
from outreach_orchestrator.core.models import Attempt, AttemptStatus, ContactProfile, RetryPlan
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.profiles import resolve_profile

logger = logging.getLogger(__name__)


def delay_minutes(profile: ContactProfile, attempt_number: int) -> int:
    """Delay before ``attempt_number``; the last configured delay repeats."""
    index = min(max(attempt_number - 1, 0), len(profile.retry_delays) - 1)
    return profile.retry_delays[index]


def ensure_within_ceiling(profile: ContactProfile, contact_id: str, attempt_number: int) -> None:
    if attempt_number > profile.max_attempts:
        raise MaxAttemptsReached(contact_id, attempt_number, profile.max_attempts)


class RetryScheduler:
    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def next_attempt_number(self, contact_id: str) -> int:
        latest = await self.db.get_latest_attempt(contact_id)
        return latest.sequence_number + 1 if latest else 1

    async def plan(
        self,
        organization_id: str,
        contact_id: str,
        now: datetime,
        profile: ContactProfile | None = None,
    ) -> RetryPlan:
        """Compute the next attempt for a contact without persisting it.

        Raises MaxAttemptsReached when the next number is past the ceiling.
        """
        profile = profile or await resolve_profile(self.db, organization_id, self.settings)
        number = await self.next_attempt_number(contact_id)
        return self.plan_for(profile, contact_id, number, now)

    def plan_for(
        self,
        profile: ContactProfile,
        contact_id: str,
        attempt_number: int,
        now: datetime,
    ) -> RetryPlan:
        ensure_within_ceiling(profile, contact_id, attempt_number)
        delay = delay_minutes(profile, attempt_number)
        return RetryPlan(
            contact_id=contact_id,
            next_attempt_number=attempt_number,
            delay_minutes=delay,
            scheduled_for=now + timedelta(minutes=delay),
        )

    async def schedule(
        self,
        organization_id: str,
        contact_id: str,
        now: datetime,
        profile: ContactProfile | None = None,
    ) -> RetryPlan:
        """Persist the next attempt as ``scheduled``.

        Re-running for the same contact finds the already-scheduled row
        instead of adding another.
        """
        profile = profile or await resolve_profile(self.db, organization_id, self.settings)
        latest = await self.db.get_latest_attempt(contact_id)
        if latest is not None and latest.status in (AttemptStatus.PENDING, AttemptStatus.SCHEDULED):
            return RetryPlan(
                contact_id=contact_id,
                next_attempt_number=latest.sequence_number,
                delay_minutes=delay_minutes(profile, latest.sequence_number),
                scheduled_for=latest.scheduled_for or now,
            )

        number = latest.sequence_number + 1 if latest else 1
        plan = self.plan_for(profile, contact_id, number, now)
        attempt, inserted = await self.db.insert_attempt_if_absent(
            Attempt(
                id=str(uuid.uuid4()),
                organization_id=organization_id,
                contact_id=contact_id,
                sequence_number=plan.next_attempt_number,
                status=AttemptStatus.SCHEDULED,
                scheduled_for=plan.scheduled_for,
            )
        )
        if inserted:
            logger.info(
                "Scheduled attempt %d for contact %s at %s (+%d min)",
                plan.next_attempt_number, contact_id,
                plan.scheduled_for.isoformat(), plan.delay_minutes,
            )
        elif attempt.scheduled_for is not None:
            plan = plan.model_copy(update={"scheduled_for": attempt.scheduled_for})
        return plan
