"""Tests for the call session state machine."""

from __future__ import annotations

import pytest

from outreach_orchestrator.core.errors import NotFoundError, TransitionError
from outreach_orchestrator.core.models import SessionOutcome, SessionStatus
from outreach_orchestrator.session_machine import (
    PROVIDER_STATUS_MAP,
    TERMINAL_STATES,
    TRANSITIONS,
    SessionStateMachine,
    transition_path,
)


# ---------------------------------------------------------------------------
# Transition map (no DB required)
# ---------------------------------------------------------------------------


class TestTransitionRules:
    def test_initiated_to_ringing(self):
        assert SessionStatus.RINGING in TRANSITIONS[SessionStatus.INITIATED]

    def test_initiated_cannot_transfer(self):
        assert SessionStatus.TRANSFERRING not in TRANSITIONS[SessionStatus.INITIATED]

    def test_transferring_can_fall_back_to_in_progress(self):
        assert SessionStatus.IN_PROGRESS in TRANSITIONS[SessionStatus.TRANSFERRING]

    def test_in_progress_cannot_go_back_to_ringing(self):
        assert SessionStatus.RINGING not in TRANSITIONS[SessionStatus.IN_PROGRESS]


class TestTerminalStates:
    def test_terminal_set(self):
        assert TERMINAL_STATES == {
            SessionStatus.TRANSFERRED,
            SessionStatus.COMPLETED,
            SessionStatus.FAILED,
            SessionStatus.NO_ANSWER,
            SessionStatus.BUSY,
            SessionStatus.VOICEMAIL,
        }

    def test_terminal_states_have_no_exits(self):
        for state in TERMINAL_STATES:
            assert len(TRANSITIONS[state]) == 0

    def test_every_state_mapped(self):
        assert set(TRANSITIONS) == set(SessionStatus)


class TestProviderStatusMap:
    def test_dashed_names(self):
        assert PROVIDER_STATUS_MAP["in-progress"] == SessionStatus.ANSWERED
        assert PROVIDER_STATUS_MAP["no-answer"] == SessionStatus.NO_ANSWER

    def test_canceled_is_failed(self):
        assert PROVIDER_STATUS_MAP["canceled"] == SessionStatus.FAILED


class TestTransitionPath:
    def test_direct(self):
        assert transition_path(SessionStatus.INITIATED, SessionStatus.RINGING) == [SessionStatus.RINGING]

    def test_walks_through_in_progress_to_transferred(self):
        path = transition_path(SessionStatus.INITIATED, SessionStatus.TRANSFERRED)
        assert path[-1] == SessionStatus.TRANSFERRED
        assert SessionStatus.TRANSFERRING in path

    def test_unreachable(self):
        with pytest.raises(TransitionError):
            transition_path(SessionStatus.COMPLETED, SessionStatus.RINGING)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


@pytest.fixture
def machine(db, settings) -> SessionStateMachine:
    return SessionStateMachine(db, settings)


async def open_session(machine, attempt_id="attempt_1"):
    return await machine.open("org_1", "contact_1", attempt_id, "+15550001000", "+12125550100")


class TestSessionLifecycle:
    @pytest.mark.asyncio
    async def test_open_starts_initiated(self, machine):
        session = await open_session(machine)
        assert session.status == SessionStatus.INITIATED
        assert session.initiated_at is not None

    @pytest.mark.asyncio
    async def test_open_is_idempotent_per_attempt(self, machine):
        first = await open_session(machine)
        second = await open_session(machine)
        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_open_reuses_session_created_concurrently(self, machine, db, monkeypatch):
        first = await open_session(machine)
        lookups = []
        real_lookup = db.get_session_by_attempt

        async def stale_first_lookup(attempt_id):
            lookups.append(attempt_id)
            if len(lookups) == 1:
                return None
            return await real_lookup(attempt_id)

        monkeypatch.setattr(db, "get_session_by_attempt", stale_first_lookup)
        second = await open_session(machine)
        assert second.id == first.id
        assert len(lookups) == 2

    @pytest.mark.asyncio
    async def test_get_unknown_raises(self, machine):
        with pytest.raises(NotFoundError):
            await machine.get("missing")

    @pytest.mark.asyncio
    async def test_answer_sets_answered_at(self, machine):
        session = await open_session(machine)
        session = await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        assert session.answered_at is not None
        assert session.ended_at is None

    @pytest.mark.asyncio
    async def test_illegal_transition_rejected(self, machine):
        session = await open_session(machine)
        with pytest.raises(TransitionError, match="Illegal transition"):
            await machine.transition(session.id, SessionStatus.TRANSFERRED)

    @pytest.mark.asyncio
    async def test_terminal_sets_ended_at(self, machine):
        session = await open_session(machine)
        session = await machine.transition(session.id, SessionStatus.NO_ANSWER)
        assert session.ended_at is not None

    @pytest.mark.asyncio
    async def test_terminal_session_cannot_change(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.BUSY)
        with pytest.raises(TransitionError):
            await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        with pytest.raises(TransitionError):
            await machine.transition(session.id, SessionStatus.BUSY, duration_seconds=3)

    @pytest.mark.asyncio
    async def test_same_state_without_fields_is_noop(self, machine):
        session = await open_session(machine)
        again = await machine.transition(session.id, SessionStatus.INITIATED)
        assert again.status == SessionStatus.INITIATED


class TestFinish:
    @pytest.mark.asyncio
    async def test_walks_implied_states(self, machine):
        session = await open_session(machine)
        session = await machine.finish(
            session.id, SessionStatus.COMPLETED, SessionOutcome.QUALIFIED, duration_seconds=95
        )
        assert session.status == SessionStatus.COMPLETED
        assert session.outcome == SessionOutcome.QUALIFIED
        assert session.duration_seconds == 95
        assert session.answered_at is not None

    @pytest.mark.asyncio
    async def test_already_terminal_returns_unchanged(self, machine):
        session = await open_session(machine)
        await machine.finish(session.id, SessionStatus.NO_ANSWER, SessionOutcome.NO_ANSWER)
        again = await machine.finish(session.id, SessionStatus.COMPLETED, SessionOutcome.QUALIFIED)
        assert again.status == SessionStatus.NO_ANSWER

    @pytest.mark.asyncio
    async def test_agent_outcome_recorded_after_provider_completed(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        await machine.transition(session.id, SessionStatus.COMPLETED)

        updated = await machine.finish(
            session.id, SessionStatus.COMPLETED, SessionOutcome.APPOINTMENT_SET, duration_seconds=200
        )
        assert updated.status == SessionStatus.COMPLETED
        assert updated.outcome == SessionOutcome.APPOINTMENT_SET
        assert updated.duration_seconds == 200

    @pytest.mark.asyncio
    async def test_late_outcome_keeps_provider_status(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.FAILED)

        updated = await machine.finish(session.id, SessionStatus.NO_ANSWER, SessionOutcome.NO_ANSWER)
        assert updated.status == SessionStatus.FAILED
        assert updated.outcome == SessionOutcome.NO_ANSWER

    @pytest.mark.asyncio
    async def test_non_terminal_target_rejected(self, machine):
        session = await open_session(machine)
        with pytest.raises(TransitionError):
            await machine.finish(session.id, SessionStatus.RINGING, None)


class TestProviderStatus:
    @pytest.mark.asyncio
    async def test_applies_known_status(self, machine, db):
        session = await open_session(machine)
        await db.update_session_fields(session.id, call_ref="CA123")
        updated = await machine.apply_provider_status("CA123", "ringing")
        assert updated.status == SessionStatus.RINGING

    @pytest.mark.asyncio
    async def test_unknown_status_ignored(self, machine, db):
        session = await open_session(machine)
        await db.update_session_fields(session.id, call_ref="CA123")
        assert await machine.apply_provider_status("CA123", "teleported") is None
        assert (await machine.get(session.id)).status == SessionStatus.INITIATED

    @pytest.mark.asyncio
    async def test_unknown_call_ignored(self, machine):
        assert await machine.apply_provider_status("CA999", "ringing") is None

    @pytest.mark.asyncio
    async def test_out_of_order_ignored(self, machine, db):
        session = await open_session(machine)
        await db.update_session_fields(session.id, call_ref="CA123")
        await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        updated = await machine.apply_provider_status("CA123", "ringing")
        assert updated.status == SessionStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_terminal_records_duration(self, machine, db):
        session = await open_session(machine)
        await db.update_session_fields(session.id, call_ref="CA123")
        updated = await machine.apply_provider_status("CA123", "no-answer", duration_seconds=0)
        assert updated.status == SessionStatus.NO_ANSWER
        assert updated.duration_seconds == 0

    @pytest.mark.asyncio
    async def test_in_progress_status_means_answered(self, machine, db):
        session = await open_session(machine)
        await db.update_session_fields(session.id, call_ref="CA123")
        updated = await machine.apply_provider_status("CA123", "in-progress")
        assert updated.status == SessionStatus.ANSWERED
        assert updated.answered_at is not None


class TestHandoff:
    @pytest.mark.asyncio
    async def test_cannot_transfer_before_answer(self, machine):
        session = await open_session(machine)
        with pytest.raises(TransitionError):
            await machine.mark_transferring(session.id, "rep_a")

    @pytest.mark.asyncio
    async def test_transfer_then_confirm(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.IN_PROGRESS)

        transferring = await machine.mark_transferring(session.id, "rep_a")
        assert transferring.status == SessionStatus.TRANSFERRING
        assert transferring.transferred_to_recipient_id == "rep_a"
        assert not transferring.handoff_completed

        done = await machine.confirm_handoff(session.id)
        assert done.status == SessionStatus.TRANSFERRED
        assert done.handoff_completed
        assert done.outcome == SessionOutcome.TRANSFERRED

    @pytest.mark.asyncio
    async def test_abandoned_handoff_returns_to_conversation(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        await machine.mark_transferring(session.id, "rep_a")

        resumed = await machine.abandon_handoff(session.id, "no_answer")
        assert resumed.status == SessionStatus.IN_PROGRESS
        assert resumed.transferred_to_recipient_id is None
        assert resumed.metadata["abandoned_handoffs"] == [
            {"recipient_id": "rep_a", "reason": "no_answer"}
        ]

    @pytest.mark.asyncio
    async def test_confirm_without_handoff_rejected(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.IN_PROGRESS)
        with pytest.raises(TransitionError):
            await machine.confirm_handoff(session.id)


class TestEnrichment:
    @pytest.mark.asyncio
    async def test_qualification_merges(self, machine):
        session = await open_session(machine)
        await machine.record_qualification(session.id, {"timeline": "this week"})
        session = await machine.record_qualification(session.id, {"budget": 30000})
        qualification = session.metadata["qualification"]
        assert qualification["timeline"] == "this week"
        assert qualification["budget"] == 30000
        assert "logged_at" in qualification

    @pytest.mark.asyncio
    async def test_qualification_closed_on_terminal(self, machine):
        session = await open_session(machine)
        await machine.transition(session.id, SessionStatus.FAILED)
        with pytest.raises(TransitionError):
            await machine.record_qualification(session.id, {"budget": 1})

    @pytest.mark.asyncio
    async def test_transcript_and_summary_allowed_after_end(self, machine):
        session = await open_session(machine)
        await machine.finish(session.id, SessionStatus.COMPLETED, SessionOutcome.QUALIFIED)

        transcript = await machine.attach_transcript(session.id, "Hello there", [{"role": "agent"}])
        summary = await machine.attach_summary(session.id, "Wants a truck", ["truck"], "positive")
        assert transcript.id is not None
        assert transcript.turns == [{"role": "agent"}]
        assert summary.key_points == ["truck"]
