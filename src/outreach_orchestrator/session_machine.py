"""Call session lifecycle with transition validation.

A session enters at ``initiated`` and ends in one of the terminal states.
Terminal sessions are never mutated again except to append a transcript or
summary, or to record the agent outcome when the provider closed the call
first. A session with a handoff recipient set but ``handoff_completed``
false is a normal in-flight handoff.
"""

from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import ConflictError, NotFoundError, TransitionError
from outreach_orchestrator.core.models import (
    CallSummary,
    Session,
    SessionOutcome,
    SessionStatus,
    Transcript,
)
from outreach_orchestrator.core.storage import Storage

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Legal transition map
# ---------------------------------------------------------------------------

TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.INITIATED: {
        SessionStatus.RINGING,
        SessionStatus.ANSWERED,
        SessionStatus.IN_PROGRESS,
        SessionStatus.FAILED,
        SessionStatus.NO_ANSWER,
        SessionStatus.BUSY,
        SessionStatus.VOICEMAIL,
    },
    SessionStatus.RINGING: {
        SessionStatus.ANSWERED,
        SessionStatus.IN_PROGRESS,
        SessionStatus.FAILED,
        SessionStatus.NO_ANSWER,
        SessionStatus.BUSY,
        SessionStatus.VOICEMAIL,
    },
    SessionStatus.ANSWERED: {
        SessionStatus.IN_PROGRESS,
        SessionStatus.TRANSFERRING,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.VOICEMAIL,
    },
    SessionStatus.IN_PROGRESS: {
        SessionStatus.TRANSFERRING,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.VOICEMAIL,
    },
    SessionStatus.TRANSFERRING: {
        SessionStatus.TRANSFERRED,
        SessionStatus.IN_PROGRESS,  # handoff abandoned, conversation continues
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
    },
    SessionStatus.TRANSFERRED: set(),  # terminal
    SessionStatus.COMPLETED: set(),  # terminal
    SessionStatus.FAILED: set(),  # terminal
    SessionStatus.NO_ANSWER: set(),  # terminal
    SessionStatus.BUSY: set(),  # terminal
    SessionStatus.VOICEMAIL: set(),  # terminal
}

TERMINAL_STATES = {s for s, allowed in TRANSITIONS.items() if not allowed}

# Telephony provider status names -> session states
PROVIDER_STATUS_MAP: dict[str, SessionStatus] = {
    "queued": SessionStatus.INITIATED,
    "initiated": SessionStatus.INITIATED,
    "ringing": SessionStatus.RINGING,
    "answered": SessionStatus.ANSWERED,
    # Provider "in-progress" only means the line connected; the agent's
    # session-started moves the session on to in_progress.
    "in-progress": SessionStatus.ANSWERED,
    "in_progress": SessionStatus.ANSWERED,
    "completed": SessionStatus.COMPLETED,
    "failed": SessionStatus.FAILED,
    "busy": SessionStatus.BUSY,
    "no-answer": SessionStatus.NO_ANSWER,
    "no_answer": SessionStatus.NO_ANSWER,
    "canceled": SessionStatus.FAILED,
    "voicemail": SessionStatus.VOICEMAIL,
    "machine": SessionStatus.VOICEMAIL,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def transition_path(current: SessionStatus, target: SessionStatus) -> list[SessionStatus]:
    """Shortest legal path of states from ``current`` to ``target`` (excluding current).

    Empty when already there; raises TransitionError when unreachable.
    """
    if current == target:
        return []
    queue: deque[tuple[SessionStatus, list[SessionStatus]]] = deque([(current, [])])
    seen = {current}
    while queue:
        state, path = queue.popleft()
        for nxt in sorted(TRANSITIONS[state], key=lambda s: s.value):
            if nxt in seen:
                continue
            if nxt == target:
                return path + [nxt]
            seen.add(nxt)
            queue.append((nxt, path + [nxt]))
    raise TransitionError(f"Illegal transition: {current.value} -> {target.value}")


class SessionStateMachine:
    """Owns every mutation of a call session."""

    def __init__(self, db: Storage, settings: Settings | None = None):
        self.db = db
        self.settings = settings or Settings()

    async def open(
        self,
        organization_id: str,
        contact_id: str,
        attempt_id: str | None,
        from_number: str | None = None,
        to_number: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Session:
        """Create the session in ``initiated``. Re-opening for the same attempt returns the existing one."""
        if attempt_id:
            existing = await self.db.get_session_by_attempt(attempt_id)
            if existing is not None:
                return existing

        try:
            session = await self.db.create_session(
                Session(
                    id=str(uuid.uuid4()),
                    organization_id=organization_id,
                    contact_id=contact_id,
                    attempt_id=attempt_id,
                    from_number=from_number,
                    to_number=to_number,
                    status=SessionStatus.INITIATED,
                    initiated_at=_now(),
                    metadata=metadata or {},
                )
            )
        except ConflictError:
            if not attempt_id:
                raise
            existing = await self.db.get_session_by_attempt(attempt_id)
            if existing is None:
                raise
            logger.info("Session for attempt %s opened concurrently; reusing %s", attempt_id, existing.id)
            return existing
        logger.info("Session %s opened for contact %s (attempt %s)", session.id, contact_id, attempt_id)
        return session

    async def get(self, session_id: str) -> Session:
        session = await self.db.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def transition(
        self,
        session_id: str,
        new_status: SessionStatus,
        reason: str | None = None,
        **fields: Any,
    ) -> Session:
        """Move a session to ``new_status`` and persist any extra fields with it."""
        session = await self.get(session_id)
        current = session.status
        self._validate_transition(current, new_status)
        if current == new_status:
            if not fields:
                return session
            if current in TERMINAL_STATES:
                raise TransitionError(
                    f"Session {session_id} is {current.value} and can no longer change",
                    current=current.value,
                )

        now = _now()
        updates: dict[str, Any] = {"status": new_status, **fields}
        if new_status in (SessionStatus.ANSWERED, SessionStatus.IN_PROGRESS) and session.answered_at is None:
            updates.setdefault("answered_at", now)
        if new_status in TERMINAL_STATES and session.ended_at is None:
            updates.setdefault("ended_at", now)

        updated = await self.db.update_session_fields(session_id, **updates)
        assert updated is not None
        logger.info(
            "Session %s: %s -> %s%s",
            session_id, current.value, new_status.value, f" ({reason})" if reason else "",
        )
        return updated

    def _validate_transition(self, current: SessionStatus, target: SessionStatus) -> None:
        """Check if the transition is legal."""
        if current == target:
            return  # no-op is always allowed
        allowed = TRANSITIONS.get(current, set())
        if target not in allowed:
            raise TransitionError(
                f"Illegal transition: {current.value} -> {target.value}. "
                f"Allowed from {current.value}: {sorted(s.value for s in allowed)}",
                current=current.value,
                target=target.value,
            )

    # -----------------------------------------------------------------------
    # Provider callbacks
    # -----------------------------------------------------------------------

    async def apply_provider_status(
        self,
        call_ref: str,
        provider_status: str,
        duration_seconds: int | None = None,
    ) -> Session | None:
        """Apply a provider status callback.

        Unknown status names, unknown call references, terminal sessions and
        out-of-order statuses are logged and ignored.
        """
        target = PROVIDER_STATUS_MAP.get(provider_status.lower())
        if target is None:
            logger.warning("Ignoring unknown provider status %r for call %s", provider_status, call_ref)
            return None

        session = await self.db.get_session_by_call_ref(call_ref)
        if session is None:
            logger.warning("Provider status %s for unknown call %s", provider_status, call_ref)
            return None

        if session.status in TERMINAL_STATES:
            logger.info(
                "Session %s already terminal (%s); ignoring provider status %s",
                session.id, session.status.value, provider_status,
            )
            return session

        if target != session.status and target not in TRANSITIONS[session.status]:
            logger.warning(
                "Out-of-order provider status %s for session %s in %s; ignored",
                provider_status, session.id, session.status.value,
            )
            return session

        fields: dict[str, Any] = {}
        if duration_seconds is not None and target in TERMINAL_STATES:
            fields["duration_seconds"] = duration_seconds
        return await self.transition(session.id, target, reason=f"provider:{provider_status}", **fields)

    async def finish(
        self,
        session_id: str,
        status: SessionStatus,
        outcome: SessionOutcome | None,
        duration_seconds: int | None = None,
        recording_ref: str | None = None,
        **extra: Any,
    ) -> Session:
        """Drive a session to a terminal state reported by the collaborator.

        Intermediate states the callbacks skipped (e.g. straight from
        ``initiated`` to ``completed``) are walked through in order.
        """
        if status not in TERMINAL_STATES:
            raise TransitionError(f"{status.value} is not a terminal state")
        session = await self.get(session_id)
        if session.status in TERMINAL_STATES:
            if session.outcome is None and outcome is not None:
                return await self._record_late_outcome(session, outcome, duration_seconds, recording_ref)
            logger.info("Session %s already ended as %s", session_id, session.status.value)
            return session

        path = transition_path(session.status, status)
        for step in path[:-1]:
            session = await self.transition(session_id, step, reason="implied")

        fields: dict[str, Any] = {"outcome": outcome, **extra}
        if duration_seconds is not None:
            fields["duration_seconds"] = duration_seconds
        if recording_ref is not None:
            fields["recording_ref"] = recording_ref
        return await self.transition(session_id, status, reason="session_ended", **fields)

    async def _record_late_outcome(
        self,
        session: Session,
        outcome: SessionOutcome,
        duration_seconds: int | None,
        recording_ref: str | None,
    ) -> Session:
        """The provider closed the session first; keep its status and add what the agent reported."""
        fields: dict[str, Any] = {"outcome": outcome}
        if duration_seconds is not None:
            fields["duration_seconds"] = duration_seconds
        if recording_ref is not None and session.recording_ref is None:
            fields["recording_ref"] = recording_ref
        updated = await self.db.update_session_fields(session.id, **fields)
        assert updated is not None
        logger.info(
            "Session %s already %s; recorded agent outcome %s",
            session.id, session.status.value, outcome.value,
        )
        return updated

    # -----------------------------------------------------------------------
    # Handoff
    # -----------------------------------------------------------------------

    async def mark_transferring(self, session_id: str, recipient_id: str) -> Session:
        session = await self.get(session_id)
        if session.status in (SessionStatus.INITIATED, SessionStatus.RINGING):
            raise TransitionError(
                f"Cannot hand off session {session_id} before it is answered",
                current=session.status.value,
            )
        return await self.transition(
            session_id,
            SessionStatus.TRANSFERRING,
            reason=f"handoff:{recipient_id}",
            transferred_to_recipient_id=recipient_id,
            handoff_completed=False,
        )

    async def confirm_handoff(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session.status == SessionStatus.TRANSFERRED:
            return session
        if session.transferred_to_recipient_id is None:
            raise TransitionError(f"Session {session_id} has no handoff in progress")
        return await self.transition(
            session_id,
            SessionStatus.TRANSFERRED,
            reason="handoff_confirmed",
            handoff_completed=True,
            outcome=SessionOutcome.TRANSFERRED,
        )

    async def abandon_handoff(self, session_id: str, reason: str | None = None) -> Session:
        """Recipient never joined; the agent keeps the conversation."""
        session = await self.get(session_id)
        metadata = dict(session.metadata)
        metadata.setdefault("abandoned_handoffs", []).append(
            {"recipient_id": session.transferred_to_recipient_id, "reason": reason}
        )
        return await self.transition(
            session_id,
            SessionStatus.IN_PROGRESS,
            reason=f"handoff_abandoned:{reason or 'unspecified'}",
            transferred_to_recipient_id=None,
            handoff_completed=False,
            metadata=metadata,
        )

    # -----------------------------------------------------------------------
    # Enrichment
    # -----------------------------------------------------------------------

    async def record_qualification(self, session_id: str, facts: dict[str, Any]) -> Session:
        """Merge qualification facts into the session metadata bag."""
        session = await self.get(session_id)
        if session.status in TERMINAL_STATES:
            raise TransitionError(
                f"Session {session_id} is {session.status.value}; qualification is closed",
                current=session.status.value,
            )
        metadata = dict(session.metadata)
        qualification = dict(metadata.get("qualification", {}))
        qualification.update(facts)
        qualification["logged_at"] = _now().isoformat()
        metadata["qualification"] = qualification
        updated = await self.db.update_session_fields(session_id, metadata=metadata)
        assert updated is not None
        return updated

    async def attach_transcript(
        self,
        session_id: str,
        full_text: str,
        turns: list[dict[str, Any]] | None = None,
    ) -> Transcript:
        await self.get(session_id)
        return await self.db.insert_transcript(
            Transcript(session_id=session_id, full_text=full_text, turns=turns or [])
        )

    async def attach_summary(
        self,
        session_id: str,
        summary: str,
        key_points: list[str] | None = None,
        sentiment: str | None = None,
        qualification: dict[str, Any] | None = None,
    ) -> CallSummary:
        await self.get(session_id)
        return await self.db.insert_summary(
            CallSummary(
                session_id=session_id,
                summary=summary,
                key_points=key_points or [],
                sentiment=sentiment,
                qualification=qualification or {},
            )
        )
