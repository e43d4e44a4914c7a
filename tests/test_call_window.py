"""Tests for contact window evaluation (0=Sunday, inclusive minutes)."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from outreach_orchestrator.call_window import CallWindowGate, evaluate, next_opening, sunday_weekday
from outreach_orchestrator.core.errors import WindowViolation


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


# New York is UTC-4 until 2026-11-01
TUESDAY_11AM = utc(2026, 10, 20, 15, 0)
SUNDAY_11AM = utc(2026, 10, 18, 15, 0)


class TestSundayWeekday:
    def test_sunday_is_zero(self):
        assert sunday_weekday(datetime(2026, 10, 18)) == 0

    def test_saturday_is_six(self):
        assert sunday_weekday(datetime(2026, 10, 24)) == 6


class TestEvaluate:
    def test_inside_window(self, make_profile):
        decision = evaluate(make_profile(), TUESDAY_11AM)
        assert decision.allowed
        assert decision.weekday == 2
        assert decision.local_time.hour == 11

    def test_sunday_not_allowed(self, make_profile):
        decision = evaluate(make_profile(), SUNDAY_11AM)
        assert not decision.allowed
        assert decision.reason == "day_not_allowed:0"

    def test_end_minute_is_inclusive(self, make_profile):
        # 20:00 and 20:00:59 local are both inside an 08:00-20:00 window
        assert evaluate(make_profile(), utc(2026, 10, 21, 0, 0)).allowed
        assert evaluate(make_profile(), utc(2026, 10, 21, 0, 0, 59)).allowed

    def test_one_minute_past_end_flips(self, make_profile):
        decision = evaluate(make_profile(), utc(2026, 10, 21, 0, 1))
        assert not decision.allowed
        assert decision.reason == "outside_hours:20:01 not in 08:00-20:00"

    def test_before_start(self, make_profile):
        decision = evaluate(make_profile(), utc(2026, 10, 20, 11, 59))
        assert not decision.allowed
        assert decision.reason.startswith("outside_hours:07:59")

    def test_uses_profile_timezone(self, make_profile):
        # 11:00 in New York is 08:00 in Los Angeles
        profile = make_profile(timezone="America/Los_Angeles", window_start="09:00")
        assert not evaluate(profile, TUESDAY_11AM).allowed

    def test_naive_instant_treated_as_utc(self, make_profile):
        assert evaluate(make_profile(), datetime(2026, 10, 20, 15, 0)).allowed

    def test_after_dst_change(self, make_profile):
        # 2026-11-03 is EST (UTC-5): 13:00 UTC is 08:00 local
        assert evaluate(make_profile(), utc(2026, 11, 3, 13, 0)).allowed
        assert not evaluate(make_profile(), utc(2026, 11, 3, 12, 59)).allowed


class TestNextOpening:
    def test_sunday_rolls_to_monday_start(self, make_profile):
        assert next_opening(make_profile(), SUNDAY_11AM) == utc(2026, 10, 19, 12, 0)

    def test_after_hours_rolls_to_next_morning(self, make_profile):
        assert next_opening(make_profile(), utc(2026, 10, 21, 1, 0)) == utc(2026, 10, 21, 12, 0)

    def test_before_start_same_day(self, make_profile):
        assert next_opening(make_profile(), utc(2026, 10, 20, 10, 0)) == utc(2026, 10, 20, 12, 0)

    def test_inside_window_is_now(self, make_profile):
        assert next_opening(make_profile(), TUESDAY_11AM) == TUESDAY_11AM

    def test_no_allowed_days(self, make_profile):
        assert next_opening(make_profile(allowed_days=[]), TUESDAY_11AM) is None


class TestCallWindowGate:
    @pytest.mark.asyncio
    async def test_default_profile_when_none_stored(self, db, settings):
        gate = CallWindowGate(db, settings)
        decision = await gate.check("org_without_profile", TUESDAY_11AM)
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_stored_profile_used(self, db, settings, make_profile):
        await db.upsert_profile(make_profile(allowed_days=[0]))
        gate = CallWindowGate(db, settings)
        assert (await gate.check("org_1", SUNDAY_11AM)).allowed
        assert not (await gate.check("org_1", TUESDAY_11AM)).allowed

    @pytest.mark.asyncio
    async def test_ensure_open_raises_with_next_opening(self, db, settings):
        gate = CallWindowGate(db, settings)
        with pytest.raises(WindowViolation) as exc_info:
            await gate.ensure_open("org_1", SUNDAY_11AM)
        assert exc_info.value.reason == "day_not_allowed:0"
        assert exc_info.value.next_opening == utc(2026, 10, 19, 12, 0)
        assert not exc_info.value.retryable
