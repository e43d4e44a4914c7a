"""Tests for due-attempt dispatch and stale attempt expiry."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from outreach_orchestrator.core.models import (
    Attempt,
    AttemptStatus,
    HandoffConfirmation,
    PipelineOutcome,
    SessionStatus,
    SuppressionScope,
    Trigger,
)
from outreach_orchestrator.dispatcher import RetryDispatcher


@pytest.fixture
def dispatcher(db, pipeline, settings) -> RetryDispatcher:
    return RetryDispatcher(db, pipeline, settings)


async def scheduled_attempt(db, scheduled_for, sequence_number=2):
    attempt, _ = await db.insert_attempt_if_absent(
        Attempt(
            id=str(uuid.uuid4()),
            organization_id="org_1",
            contact_id="contact_1",
            sequence_number=sequence_number,
            status=AttemptStatus.SCHEDULED,
            scheduled_for=scheduled_for,
        )
    )
    return attempt


class TestDispatchDue:
    @pytest.mark.asyncio
    async def test_due_attempt_is_placed(self, dispatcher, db, placer, make_contact, now):
        await db.upsert_contact(make_contact())
        attempt = await scheduled_attempt(db, now - timedelta(minutes=1))

        summary = await dispatcher.dispatch_due(now)
        assert summary.due == 1
        assert summary.outcomes == {"placed": 1}
        assert summary.errors == 0

        placed = await db.get_attempt(attempt.id)
        assert placed.status == AttemptStatus.CALLING
        assert placed.sequence_number == 2
        assert placed.session_id is not None
        assert placer.placed[0].conversation_context["attempt_number"] == 2

    @pytest.mark.asyncio
    async def test_future_attempt_left_alone(self, dispatcher, db, placer, make_contact, now):
        await db.upsert_contact(make_contact())
        await scheduled_attempt(db, now + timedelta(minutes=1))

        summary = await dispatcher.dispatch_due(now)
        assert summary.due == 0
        assert placer.placed == []

    @pytest.mark.asyncio
    async def test_outside_window_moves_to_next_opening(self, dispatcher, db, placer, make_contact, now):
        sunday = now - timedelta(days=2)
        await db.upsert_contact(make_contact())
        attempt = await scheduled_attempt(db, sunday - timedelta(minutes=1))

        summary = await dispatcher.dispatch_due(sunday)
        assert summary.outcomes == {"skipped_window": 1}
        assert summary.rescheduled == 1
        assert placer.placed == []

        moved = await db.get_attempt(attempt.id)
        assert moved.status == AttemptStatus.SCHEDULED
        # Monday 08:00 in New York
        assert moved.scheduled_for == datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_no_future_window_fails_attempt(
        self, dispatcher, db, make_contact, make_profile, now
    ):
        await db.upsert_profile(make_profile(allowed_days=[]))
        await db.upsert_contact(make_contact())
        attempt = await scheduled_attempt(db, now - timedelta(minutes=1))

        await dispatcher.dispatch_due(now)
        failed = await db.get_attempt(attempt.id)
        assert failed.status == AttemptStatus.FAILED
        assert failed.failure_reason == "no_call_window"

    @pytest.mark.asyncio
    async def test_suppressed_contact_fails_attempt(self, dispatcher, db, pipeline, make_contact, now):
        await db.upsert_contact(make_contact())
        await pipeline.compliance.add_record("org_1", phone="+12125550100", scope=SuppressionScope.CALL)
        attempt = await scheduled_attempt(db, now - timedelta(minutes=1))

        summary = await dispatcher.dispatch_due(now)
        assert summary.outcomes == {"blocked_compliance": 1}
        failed = await db.get_attempt(attempt.id)
        assert failed.status == AttemptStatus.FAILED
        assert failed.failure_reason == "do_not_contact"

    @pytest.mark.asyncio
    async def test_rate_limited_moves_to_retry_after(
        self, dispatcher, db, pipeline, make_contact, make_profile, now
    ):
        await db.upsert_profile(make_profile(max_concurrent=1))
        await db.upsert_contact(make_contact("contact_2", phone="+12125550101"))
        await pipeline.handle_trigger(
            Trigger(organization_id="org_1", contact_id="contact_2", trigger_id="t-other"), now=now
        )
        await db.upsert_contact(make_contact())
        attempt = await scheduled_attempt(db, now - timedelta(minutes=1))

        summary = await dispatcher.dispatch_due(now)
        assert summary.outcomes == {"rate_limited": 1}
        moved = await db.get_attempt(attempt.id)
        assert moved.status == AttemptStatus.SCHEDULED
        assert moved.scheduled_for == now + timedelta(seconds=60)


class TestExpireStale:
    @pytest.mark.asyncio
    async def test_stuck_attempt_failed_and_retried(self, dispatcher, db, pipeline, make_contact, now):
        await db.upsert_contact(make_contact())
        placed = await pipeline.handle_trigger(
            Trigger(organization_id="org_1", contact_id="contact_1", trigger_id="t1"), now=now
        )
        assert placed.outcome == PipelineOutcome.PLACED

        later = now + timedelta(hours=5)
        assert await dispatcher.expire_stale(later) == 1

        expired = await db.get_attempt(placed.attempt.id)
        assert expired.status == AttemptStatus.FAILED
        assert expired.failure_reason == "no_outcome_callback"
        assert (await db.get_session(placed.session_id)).status == SessionStatus.FAILED

        latest = await db.get_latest_attempt("contact_1")
        assert latest.sequence_number == 2
        assert latest.status == AttemptStatus.SCHEDULED
        assert latest.scheduled_for == later + timedelta(minutes=120)

    @pytest.mark.asyncio
    async def test_recent_attempt_untouched(self, dispatcher, db, pipeline, make_contact, now):
        await db.upsert_contact(make_contact())
        await pipeline.handle_trigger(
            Trigger(organization_id="org_1", contact_id="contact_1", trigger_id="t1"), now=now
        )
        assert await dispatcher.expire_stale(now + timedelta(hours=1)) == 0

    @pytest.mark.asyncio
    async def test_confirmed_handoff_is_not_expired(self, dispatcher, db, pipeline, make_contact, now):
        await db.upsert_contact(make_contact())
        placed = await pipeline.handle_trigger(
            Trigger(organization_id="org_1", contact_id="contact_1", trigger_id="t1"), now=now
        )
        await pipeline.sessions.transition(placed.session_id, SessionStatus.IN_PROGRESS)
        await pipeline.sessions.mark_transferring(placed.session_id, "rep_a")
        await pipeline.handle_handoff_confirmed(
            HandoffConfirmation(session_id=placed.session_id), now=now
        )

        assert await dispatcher.expire_stale(now + timedelta(hours=5)) == 0
        assert (await db.get_attempt(placed.attempt.id)).status == AttemptStatus.COMPLETED
        assert await db.count_attempts("org_1") == 1

    @pytest.mark.asyncio
    async def test_ended_session_settles_attempt_by_its_status(
        self, dispatcher, db, pipeline, make_contact, now
    ):
        await db.upsert_contact(make_contact())
        placed = await pipeline.handle_trigger(
            Trigger(organization_id="org_1", contact_id="contact_1", trigger_id="t1"), now=now
        )
        await pipeline.sessions.transition(placed.session_id, SessionStatus.IN_PROGRESS)
        await pipeline.sessions.mark_transferring(placed.session_id, "rep_a")
        await pipeline.sessions.confirm_handoff(placed.session_id)

        assert await dispatcher.expire_stale(now + timedelta(hours=5)) == 1

        settled = await db.get_attempt(placed.attempt.id)
        assert settled.status == AttemptStatus.COMPLETED
        assert settled.failure_reason is None
        assert (await db.get_session(placed.session_id)).status == SessionStatus.TRANSFERRED
        assert await db.count_attempts("org_1") == 1

    @pytest.mark.asyncio
    async def test_interrupted_pending_attempt_failed_and_retried(self, dispatcher, db, make_contact):
        await db.upsert_contact(make_contact())
        attempt, _ = await db.insert_attempt_if_absent(
            Attempt(
                id=str(uuid.uuid4()),
                organization_id="org_1",
                contact_id="contact_1",
                sequence_number=1,
                status=AttemptStatus.PENDING,
            )
        )

        # Pending attempts age by their last write, which uses the wall clock
        later = datetime.now(timezone.utc) + timedelta(hours=5)
        assert await dispatcher.expire_stale(later) == 1

        expired = await db.get_attempt(attempt.id)
        assert expired.status == AttemptStatus.FAILED
        assert expired.failure_reason == "placement_interrupted"
        latest = await db.get_latest_attempt("contact_1")
        assert latest.sequence_number == 2
        assert latest.status == AttemptStatus.SCHEDULED
