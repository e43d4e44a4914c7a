"""Contact profile lookup with the configured default."""

from __future__ import annotations

import logging

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.models import ContactProfile
from outreach_orchestrator.core.storage import Storage

logger = logging.getLogger(__name__)


def default_profile(organization_id: str, settings: Settings | None = None) -> ContactProfile:
    """Profile built from the ``default_*`` settings."""
    s = settings or Settings()
    return ContactProfile(
        organization_id=organization_id,
        timezone=s.default_timezone,
        window_start=s.default_window_start,
        window_end=s.default_window_end,
        allowed_days=list(s.default_allowed_days),
        max_concurrent=s.default_max_concurrent,
        max_per_hour=s.default_max_per_hour,
        max_attempts=s.default_max_attempts,
        retry_delays=list(s.default_retry_delays),
        caller_id=s.default_caller_id or None,
        is_default=True,
    )


async def resolve_profile(
    db: Storage, organization_id: str, settings: Settings | None = None
) -> ContactProfile:
    """Stored profile for the organization, or the default when none exists."""
    profile = await db.get_profile(organization_id)
    if profile is None:
        logger.debug("No contact profile for org=%s, using defaults", organization_id)
        return default_profile(organization_id, settings)
    return profile
