"""Per-organization concurrent and hourly attempt ceilings.

Counts are derived from the attempts table in a single aggregate read at
decision time and never cached.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import RateLimitExceeded
from outreach_orchestrator.core.models import ContactProfile, RateLimitState
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.profiles import resolve_profile

logger = logging.getLogger(__name__)

HOUR = timedelta(minutes=60)


class RateLimiter:
    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def snapshot(
        self,
        organization_id: str,
        now: datetime,
        profile: ContactProfile | None = None,
    ) -> RateLimitState:
        profile = profile or await resolve_profile(self.db, organization_id, self.settings)
        counts = await self.db.get_rate_counts(organization_id, now - HOUR)
        return RateLimitState(
            in_flight=counts.in_flight,
            last_hour=counts.last_hour,
            oldest_in_hour=counts.oldest_in_hour,
            max_concurrent=profile.max_concurrent,
            max_per_hour=profile.max_per_hour,
        )

    async def ensure_capacity(
        self,
        organization_id: str,
        now: datetime,
        profile: ContactProfile | None = None,
    ) -> RateLimitState:
        """Raise RateLimitExceeded if either ceiling is reached.

        Concurrent is checked first; its retry hint is short. The hourly hint
        is when the oldest attempt in the trailing hour ages out.
        """
        state = await self.snapshot(organization_id, now, profile)

        if state.in_flight >= state.max_concurrent:
            retry_after = now + timedelta(seconds=self.settings.concurrent_retry_seconds)
            logger.info(
                "Concurrent limit reached for org=%s: %d/%d in flight",
                organization_id, state.in_flight, state.max_concurrent,
            )
            raise RateLimitExceeded(
                organization_id, "concurrent", state.in_flight, state.max_concurrent, retry_after
            )

        if state.last_hour >= state.max_per_hour:
            oldest = state.oldest_in_hour or now
            retry_after = max(oldest + HOUR, now)
            logger.info(
                "Hourly limit reached for org=%s: %d/%d in the last hour, retry after %s",
                organization_id, state.last_hour, state.max_per_hour, retry_after.isoformat(),
            )
            raise RateLimitExceeded(
                organization_id, "hourly", state.last_hour, state.max_per_hour, retry_after
            )

        return state
