"""Timezone-aware contact window checks.

Weekdays are indexed 0=Sunday..6=Saturday. Both ends of the time-of-day
range are inclusive at minute resolution, so with a 20:00 end the whole
20:00 minute is allowed and 20:01 is not.
"""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone

import pytz

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import WindowViolation
from outreach_orchestrator.core.models import ContactProfile, WindowDecision
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.profiles import resolve_profile

logger = logging.getLogger(__name__)


def sunday_weekday(dt: datetime) -> int:
    """0=Sunday..6=Saturday (``datetime.weekday`` is 0=Monday)."""
    return (dt.weekday() + 1) % 7


def to_local(profile: ContactProfile, instant: datetime) -> datetime:
    tz = pytz.timezone(profile.timezone)
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(tz)


def _hhmm(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def evaluate(profile: ContactProfile, instant: datetime) -> WindowDecision:
    """Decide whether ``instant`` falls inside the profile's contact window."""
    local = to_local(profile, instant)
    weekday = sunday_weekday(local)

    if weekday not in profile.allowed_days:
        return WindowDecision(
            allowed=False,
            reason=f"day_not_allowed:{weekday}",
            local_time=local,
            weekday=weekday,
        )

    minutes = local.hour * 60 + local.minute
    start, end = profile.start_minutes, profile.end_minutes
    if minutes < start or minutes > end:
        return WindowDecision(
            allowed=False,
            reason=f"outside_hours:{_hhmm(minutes)} not in {_hhmm(start)}-{_hhmm(end)}",
            local_time=local,
            weekday=weekday,
        )

    return WindowDecision(allowed=True, reason="within_window", local_time=local, weekday=weekday)


def next_opening(profile: ContactProfile, instant: datetime) -> datetime | None:
    """Start of the next window at or after ``instant``, in UTC.

    Advisory; the pipeline reports it and leaves rescheduling to the caller.
    """
    if not profile.allowed_days:
        return None
    tz = pytz.timezone(profile.timezone)
    local = to_local(profile, instant)
    start_time = time(profile.start_minutes // 60, profile.start_minutes % 60)

    for offset in range(8):
        day = local.date() + timedelta(days=offset)
        candidate = tz.localize(datetime.combine(day, start_time))
        if sunday_weekday(candidate) not in profile.allowed_days:
            continue
        if candidate >= local:
            return candidate.astimezone(timezone.utc)
        if offset == 0 and evaluate(profile, instant).allowed:
            return instant.astimezone(timezone.utc)
    return None


class CallWindowGate:
    """Loads the organization's profile and checks the contact window."""

    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def check(self, organization_id: str, instant: datetime) -> WindowDecision:
        profile = await resolve_profile(self.db, organization_id, self.settings)
        return evaluate(profile, instant)

    async def ensure_open(self, organization_id: str, instant: datetime) -> WindowDecision:
        """Raise WindowViolation when ``instant`` is outside the window."""
        profile = await resolve_profile(self.db, organization_id, self.settings)
        decision = evaluate(profile, instant)
        if not decision.allowed:
            opening = next_opening(profile, instant)
            logger.info(
                "Window closed for org=%s: %s (local %s, next opening %s)",
                organization_id, decision.reason,
                decision.local_time.strftime("%a %H:%M"), opening,
            )
            raise WindowViolation(organization_id, decision.reason, next_opening=opening)
        return decision
