"""Orchestration pipeline: trigger -> gates -> attempt -> session -> placement,
and the collaborator callbacks that drive a session to its outcome.

Gate failures surface as a PipelineResult rather than an exception so the
caller (HTTP handler, retry dispatcher, flow) can act on the outcome code.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from outreach_orchestrator.call_window import CallWindowGate
from outreach_orchestrator.compliance import ComplianceGate, normalize_phone
from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import (
    AttemptInFlight,
    ComplianceViolation,
    MaxAttemptsReached,
    NotFoundError,
    OrchestrationError,
    RateLimitExceeded,
    StepFailed,
    WindowViolation,
)
from outreach_orchestrator.core.models import (
    Attempt,
    AttemptStatus,
    CallbackResult,
    Channel,
    Contact,
    ContactProfile,
    HandoffConfirmation,
    PipelineOutcome,
    PipelineResult,
    PlaceAttemptInstruction,
    PlacementReceipt,
    ProviderStatusEvent,
    RetryPlan,
    Session,
    SessionEndedEvent,
    SessionOutcome,
    SessionStartedEvent,
    SessionStatus,
    SuppressionScope,
    Trigger,
)
from outreach_orchestrator.core.storage import Storage
from outreach_orchestrator.dialer.base import CallPlacer
from outreach_orchestrator.pipeline.steps import StepRunner
from outreach_orchestrator.profiles import resolve_profile
from outreach_orchestrator.rate_limiter import RateLimiter
from outreach_orchestrator.retry_scheduler import RetryScheduler, ensure_within_ceiling
from outreach_orchestrator.session_machine import TERMINAL_STATES, SessionStateMachine

logger = logging.getLogger(__name__)

# Agent-reported outcome code -> (terminal session state, recorded outcome)
AGENT_OUTCOME_MAP: dict[str, tuple[SessionStatus, SessionOutcome | None]] = {
    "completed": (SessionStatus.COMPLETED, SessionOutcome.QUALIFIED),
    "qualified": (SessionStatus.COMPLETED, SessionOutcome.QUALIFIED),
    "transferred": (SessionStatus.TRANSFERRED, SessionOutcome.TRANSFERRED),
    "appointment_set": (SessionStatus.COMPLETED, SessionOutcome.APPOINTMENT_SET),
    "callback_requested": (SessionStatus.COMPLETED, SessionOutcome.CALLBACK_REQUESTED),
    "not_interested": (SessionStatus.COMPLETED, SessionOutcome.NOT_INTERESTED),
    "wrong_number": (SessionStatus.COMPLETED, SessionOutcome.WRONG_NUMBER),
    "no_answer": (SessionStatus.NO_ANSWER, SessionOutcome.NO_ANSWER),
    "busy": (SessionStatus.BUSY, SessionOutcome.NO_ANSWER),
    "failed": (SessionStatus.FAILED, SessionOutcome.NO_ANSWER),
    "voicemail": (SessionStatus.VOICEMAIL, SessionOutcome.VOICEMAIL_LEFT),
    "opted_out": (SessionStatus.COMPLETED, SessionOutcome.NOT_INTERESTED),
}

# Terminal session states that schedule another attempt
RETRYABLE_SESSION_STATES = {
    SessionStatus.NO_ANSWER,
    SessionStatus.BUSY,
    SessionStatus.FAILED,
    SessionStatus.VOICEMAIL,
}

RESULT_STEP = "pipeline-result"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrchestrationPipeline:
    def __init__(
        self,
        db: Storage,
        placer: CallPlacer,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
        steps: StepRunner | None = None,
    ):
        self.db = db
        self.placer = placer
        self.settings = settings or Settings()
        self.clock = clock
        self.steps = steps or StepRunner(db, self.settings)
        self.compliance = ComplianceGate(db)
        self.window = CallWindowGate(db, self.settings)
        self.rate_limiter = RateLimiter(db, self.settings)
        self.retry = RetryScheduler(db, self.settings)
        self.sessions = SessionStateMachine(db, self.settings)
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, organization_id: str) -> asyncio.Lock:
        return self._locks.setdefault(organization_id, asyncio.Lock())

    # -----------------------------------------------------------------------
    # Trigger handling
    # -----------------------------------------------------------------------

    async def handle_trigger(self, trigger: Trigger, now: datetime | None = None) -> PipelineResult:
        """Evaluate one trigger end to end.

        A trigger that already produced a placement (or a terminal placement
        failure) returns the stored result on redelivery.
        """
        now = now or self.clock()
        job_id = f"trigger:{trigger.trigger_id}"

        found, stored = await self.db.get_step_result(job_id, RESULT_STEP)
        if found:
            logger.info("Trigger %s already processed, returning stored result", trigger.trigger_id)
            return PipelineResult.model_validate(stored)

        try:
            result = await self._run(trigger, job_id, now)
        except ComplianceViolation as e:
            result = self._result(trigger, PipelineOutcome.BLOCKED_COMPLIANCE, e.reason, e)
        except WindowViolation as e:
            result = self._result(trigger, PipelineOutcome.SKIPPED_WINDOW, e.reason, e)
            result.next_opening = e.next_opening
        except RateLimitExceeded as e:
            result = self._result(trigger, PipelineOutcome.RATE_LIMITED, e.cause, e)
            result.retry_after = e.retry_after
        except MaxAttemptsReached as e:
            logger.info(
                "Automated contact exhausted for contact %s (max %d attempts)",
                trigger.contact_id, e.max_attempts,
            )
            result = self._result(trigger, PipelineOutcome.MAX_ATTEMPTS, "max_attempts_reached", e)
        except AttemptInFlight as e:
            logger.info("Contact %s already has an attempt in flight; skipping", trigger.contact_id)
            result = self._result(trigger, PipelineOutcome.IN_FLIGHT, "attempt_in_flight", e)
        except NotFoundError as e:
            logger.warning("Trigger %s: %s", trigger.trigger_id, e.message)
            result = self._result(trigger, PipelineOutcome.FAILED, "not_found", e)
        except StepFailed as e:
            result = self._result(trigger, PipelineOutcome.FAILED, e.reason, e)

        if result.outcome in (PipelineOutcome.PLACED, PipelineOutcome.FAILED) and result.attempt:
            await self.db.save_step_result(job_id, RESULT_STEP, result.model_dump(mode="json"))
        return result

    def _result(
        self,
        trigger: Trigger,
        outcome: PipelineOutcome,
        reason: str | None,
        error: Any = None,
    ) -> PipelineResult:
        return PipelineResult(
            trigger_id=trigger.trigger_id,
            outcome=outcome,
            reason=reason,
            retryable=bool(getattr(error, "retryable", False)),
            error=error.to_dict() if error is not None else None,
        )

    async def _run(self, trigger: Trigger, job_id: str, now: datetime) -> PipelineResult:
        org = trigger.organization_id

        contact = await self.steps.run(
            job_id, "load-contact", lambda: self._load_contact(trigger), memoize=False
        )
        profile = await resolve_profile(self.db, org, self.settings)

        await self.steps.run(
            job_id,
            "check-compliance",
            lambda: self.compliance.ensure_permitted(org, contact.phone, contact.email, Channel.CALL),
            memoize=False,
        )
        await self.steps.run(
            job_id, "check-window", lambda: self.window.ensure_open(org, now), memoize=False
        )
        # Capacity check through the calling mark is serialized per organization
        async with self._lock_for(org):
            await self.steps.run(
                job_id,
                "check-rate-limits",
                lambda: self.rate_limiter.ensure_capacity(org, now, profile),
                memoize=False,
            )

            latest = await self.db.get_latest_attempt(contact.id)
            if (
                latest is not None
                and latest.status == AttemptStatus.SCHEDULED
                and latest.scheduled_for is not None
                and latest.scheduled_for > now
            ):
                logger.info(
                    "Contact %s has attempt %d scheduled for %s; deferring",
                    contact.id, latest.sequence_number, latest.scheduled_for.isoformat(),
                )
                return PipelineResult(
                    trigger_id=trigger.trigger_id,
                    outcome=PipelineOutcome.DEFERRED,
                    reason="retry_scheduled",
                    attempt=latest,
                    retry_after=latest.scheduled_for,
                )

            attempt = await self.steps.run(
                job_id,
                "create-attempt",
                lambda: self._create_attempt(contact, profile),
                model=Attempt,
            )
            if attempt.status in (AttemptStatus.COMPLETED, AttemptStatus.FAILED):
                return PipelineResult(
                    trigger_id=trigger.trigger_id,
                    outcome=PipelineOutcome.FAILED,
                    reason=attempt.failure_reason or "attempt_closed",
                    attempt=attempt,
                )

            from_number = profile.caller_id or self.settings.default_caller_id or None
            to_number = normalize_phone(contact.phone)
            if not from_number or not to_number:
                reason = "no_outbound_number" if not from_number else "no_contact_phone"
                return await self._fail_attempt(trigger, attempt, reason, now, profile, retry=False)

            session: Session | None = None
            try:
                session = await self.steps.run(
                    job_id,
                    "open-session",
                    lambda: self._open_session(trigger, contact, attempt, from_number, to_number),
                    model=Session,
                )
                # Counted as in flight before the lock is released
                await self.db.update_attempt(attempt.id, status=AttemptStatus.CALLING, executed_at=now)
            except Exception as e:
                return await self._placement_failed(trigger, attempt, session, e, now, profile)

        instruction = self._build_instruction(
            trigger, contact, attempt, session, from_number, to_number
        )
        try:
            await self.steps.run(
                job_id,
                "place-attempt",
                lambda: self._place(attempt, session, instruction),
                model=PlacementReceipt,
            )
        except Exception as e:
            return await self._placement_failed(trigger, attempt, session, e, now, profile)

        placed = await self.db.get_attempt(attempt.id)
        return PipelineResult(
            trigger_id=trigger.trigger_id,
            outcome=PipelineOutcome.PLACED,
            attempt=placed,
            session_id=session.id,
            instruction=instruction,
        )

    async def _load_contact(self, trigger: Trigger) -> Contact:
        contact = await self.db.get_contact(trigger.contact_id)
        if contact is None or contact.organization_id != trigger.organization_id:
            raise NotFoundError("contact", trigger.contact_id)
        return contact

    async def _create_attempt(self, contact: Contact, profile: ContactProfile) -> Attempt:
        """Reuse a pending/due attempt or insert the next one (checked insert)."""
        latest = await self.db.get_latest_attempt(contact.id)
        if latest is not None:
            if latest.status == AttemptStatus.CALLING:
                raise AttemptInFlight(contact.id, latest.id)
            if latest.status == AttemptStatus.PENDING:
                return latest
            if latest.status == AttemptStatus.SCHEDULED:
                promoted = await self.db.update_attempt(latest.id, status=AttemptStatus.PENDING)
                assert promoted is not None
                logger.info("Attempt %s (#%d) promoted to pending", latest.id, latest.sequence_number)
                return promoted

        number = latest.sequence_number + 1 if latest else 1
        ensure_within_ceiling(profile, contact.id, number)

        attempt, inserted = await self.db.insert_attempt_if_absent(
            Attempt(
                id=str(uuid.uuid4()),
                organization_id=contact.organization_id,
                contact_id=contact.id,
                sequence_number=number,
                status=AttemptStatus.PENDING,
            )
        )
        if not inserted and attempt.status == AttemptStatus.CALLING:
            raise AttemptInFlight(contact.id, attempt.id)
        if inserted:
            logger.info("Attempt %s (#%d) created for contact %s", attempt.id, number, contact.id)
        return attempt

    async def _open_session(
        self,
        trigger: Trigger,
        contact: Contact,
        attempt: Attempt,
        from_number: str,
        to_number: str,
    ) -> Session:
        session = await self.sessions.open(
            trigger.organization_id,
            contact.id,
            attempt.id,
            from_number=from_number,
            to_number=to_number,
            metadata={"trigger_id": trigger.trigger_id, "signal_score": trigger.signal_score},
        )
        await self.db.update_attempt(attempt.id, session_id=session.id)
        return session

    def _build_instruction(
        self,
        trigger: Trigger,
        contact: Contact,
        attempt: Attempt,
        session: Session,
        from_number: str,
        to_number: str,
    ) -> PlaceAttemptInstruction:
        context: dict[str, Any] = {
            "first_name": contact.first_name,
            "last_name": contact.last_name,
            "category_of_interest": contact.category_of_interest,
            "signal_score": trigger.signal_score,
            "attempt_number": attempt.sequence_number,
        }
        context.update(trigger.context)
        return PlaceAttemptInstruction(
            organization_id=trigger.organization_id,
            contact_id=contact.id,
            session_id=session.id,
            attempt_id=attempt.id,
            from_channel=from_number,
            to_channel=to_number,
            agent_id=self.settings.agent_id or None,
            callback_url=f"{self.settings.api_base_url.rstrip('/')}/callbacks",
            conversation_context={k: v for k, v in context.items() if v is not None},
        )

    async def _place(
        self,
        attempt: Attempt,
        session: Session,
        instruction: PlaceAttemptInstruction,
    ) -> PlacementReceipt:
        receipt = await self.placer.place(instruction)
        await self.db.update_session_fields(
            session.id,
            agent_session_ref=receipt.agent_session_ref,
            call_ref=receipt.call_ref,
        )
        logger.info(
            "Attempt %s (#%d) calling, session %s", attempt.id, attempt.sequence_number, session.id
        )
        return receipt

    async def _placement_failed(
        self,
        trigger: Trigger,
        attempt: Attempt,
        session: Session | None,
        error: Exception,
        now: datetime,
        profile: ContactProfile,
    ) -> PipelineResult:
        if isinstance(error, StepFailed):
            reason = error.reason
        elif isinstance(error, OrchestrationError):
            reason = error.message
        else:
            reason = f"{type(error).__name__}: {error}"
        logger.error(
            "Placement failed for attempt %s: %s", attempt.id, reason,
            exc_info=not isinstance(error, OrchestrationError),
        )
        if session is not None:
            await self.sessions.finish(session.id, SessionStatus.FAILED, None)
        return await self._fail_attempt(
            trigger, attempt, reason, now, profile, retry=True,
            session_id=session.id if session else None,
        )

    async def _fail_attempt(
        self,
        trigger: Trigger,
        attempt: Attempt,
        reason: str,
        now: datetime,
        profile: ContactProfile,
        retry: bool,
        session_id: str | None = None,
    ) -> PipelineResult:
        """Record a terminal failure on the attempt, optionally scheduling the next one."""
        failed = await self.db.update_attempt(
            attempt.id, status=AttemptStatus.FAILED, failure_reason=reason
        )
        logger.info("Attempt %s (#%d) failed: %s", attempt.id, attempt.sequence_number, reason)
        result = PipelineResult(
            trigger_id=trigger.trigger_id,
            outcome=PipelineOutcome.FAILED,
            reason=reason,
            attempt=failed,
            session_id=session_id,
        )
        if retry:
            plan, _ = await self.schedule_retry(trigger.organization_id, attempt.contact_id, now, profile)
            if plan is not None:
                result.retryable = True
                result.retry_after = plan.scheduled_for
        return result

    async def schedule_retry(
        self,
        organization_id: str,
        contact_id: str,
        now: datetime,
        profile: ContactProfile | None = None,
    ) -> tuple[RetryPlan | None, bool]:
        """(plan, exhausted). Max attempts is surfaced, not raised."""
        try:
            plan = await self.retry.schedule(organization_id, contact_id, now, profile)
        except MaxAttemptsReached as e:
            logger.info(
                "Contact %s reached %d attempts; handing off to manual follow-up",
                contact_id, e.max_attempts,
            )
            return None, True
        return plan, False

    # -----------------------------------------------------------------------
    # Collaborator callbacks
    # -----------------------------------------------------------------------

    @asynccontextmanager
    async def _claim(self, ref: str, event: str) -> AsyncIterator[bool]:
        """Claim a callback once. A claim whose handling raises is released for redelivery."""
        claimed = await self.db.claim_callback(ref, event)
        try:
            yield claimed
        except Exception:
            if claimed:
                await self.db.release_callback(ref, event)
            raise

    async def handle_session_started(self, event: SessionStartedEvent) -> CallbackResult:
        session = await self.db.get_session_by_agent_ref(event.agent_session_ref)
        if session is None:
            logger.warning("session-started for unknown agent session %s", event.agent_session_ref)
            return CallbackResult(applied=False)

        async with self._claim(event.agent_session_ref, "session-started") as claimed:
            if not claimed:
                logger.info("Duplicate session-started for %s ignored", event.agent_session_ref)
                return CallbackResult(applied=False, session=session)
            if session.status in TERMINAL_STATES:
                return CallbackResult(applied=False, session=session)

            fields: dict[str, Any] = {"call_ref": event.call_ref}
            if event.from_number:
                fields["from_number"] = event.from_number
            if event.to_number:
                fields["to_number"] = event.to_number
            await self.db.update_session_fields(session.id, **fields)
            if session.status in (
                SessionStatus.INITIATED, SessionStatus.RINGING, SessionStatus.ANSWERED
            ):
                session = await self.sessions.transition(
                    session.id, SessionStatus.IN_PROGRESS, reason="session_started"
                )
            else:
                session = await self.sessions.get(session.id)
            return CallbackResult(applied=True, session=session)

    async def handle_session_ended(
        self, event: SessionEndedEvent, now: datetime | None = None
    ) -> CallbackResult:
        now = now or self.clock()
        session = await self.db.get_session_by_agent_ref(event.agent_session_ref)
        if session is None:
            logger.warning("session-ended for unknown agent session %s", event.agent_session_ref)
            return CallbackResult(applied=False)

        async with self._claim(event.agent_session_ref, "session-ended") as claimed:
            if not claimed:
                logger.info("Duplicate session-ended for %s ignored", event.agent_session_ref)
                return CallbackResult(applied=False, session=session)

            mapped = AGENT_OUTCOME_MAP.get(event.outcome.lower())
            if mapped is None:
                logger.warning(
                    "Unknown agent outcome %r for session %s; recording as completed",
                    event.outcome, session.id,
                )
                mapped = (SessionStatus.COMPLETED, None)
            status, outcome = mapped

            extra: dict[str, Any] = {}
            if event.call_ref and not session.call_ref:
                extra["call_ref"] = event.call_ref
            if status == SessionStatus.TRANSFERRED:
                extra["handoff_completed"] = True

            session = await self.sessions.finish(
                session.id,
                status,
                outcome,
                duration_seconds=event.duration_seconds,
                recording_ref=event.recording_ref,
                **extra,
            )

            if event.transcript is not None and (event.transcript.full_text or event.transcript.turns):
                await self.sessions.attach_transcript(
                    session.id, event.transcript.full_text, event.transcript.turns
                )

            if event.outcome.lower() == "opted_out":
                await self._record_opt_out(session)

            plan, exhausted = await self.close_attempt(session, now)
            return CallbackResult(
                applied=True, session=session, retry_plan=plan, automation_exhausted=exhausted
            )

    async def handle_provider_status(
        self, event: ProviderStatusEvent, now: datetime | None = None
    ) -> CallbackResult:
        now = now or self.clock()
        if await self.db.get_session_by_call_ref(event.call_ref) is None:
            logger.warning("Provider status %s for unknown call %s", event.status, event.call_ref)
            return CallbackResult(applied=False)

        async with self._claim(event.call_ref, f"status:{event.status.lower()}") as claimed:
            if not claimed:
                logger.info("Duplicate status %s for call %s ignored", event.status, event.call_ref)
                return CallbackResult(applied=False)

            session = await self.sessions.apply_provider_status(
                event.call_ref, event.status, event.duration_seconds
            )
            if session is None:
                return CallbackResult(applied=False)

            plan, exhausted = None, False
            if session.status in TERMINAL_STATES:
                plan, exhausted = await self.close_attempt(session, now)
            return CallbackResult(
                applied=True, session=session, retry_plan=plan, automation_exhausted=exhausted
            )

    async def handle_handoff_confirmed(
        self, confirmation: HandoffConfirmation, now: datetime | None = None
    ) -> CallbackResult:
        """Record whether the recipient joined. A completed handoff settles the attempt."""
        now = now or self.clock()
        event = "handoff-confirmed" if confirmation.completed else "handoff-abandoned"
        session = await self.sessions.get(confirmation.session_id)

        async with self._claim(confirmation.session_id, event) as claimed:
            if not claimed:
                return CallbackResult(applied=False, session=session)

            if not confirmation.completed:
                session = await self.sessions.abandon_handoff(
                    confirmation.session_id, confirmation.reason
                )
                return CallbackResult(applied=True, session=session)

            session = await self.sessions.confirm_handoff(confirmation.session_id)
            await self.close_attempt(session, now)
            return CallbackResult(applied=True, session=session)

    async def _record_opt_out(self, session: Session) -> None:
        contact = await self.db.get_contact(session.contact_id)
        phone = (contact.phone if contact else None) or session.to_number
        if not phone:
            logger.warning("Opt-out on session %s but no phone to suppress", session.id)
            return
        await self.compliance.add_record(
            session.organization_id,
            phone=phone,
            scope=SuppressionScope.CALL,
            reason="opted_out_during_call",
        )

    async def close_attempt(self, session: Session, now: datetime) -> tuple[RetryPlan | None, bool]:
        """Settle the attempt behind a terminal session once.

        Retryable outcomes fail the attempt and schedule the next one.
        """
        if not session.attempt_id:
            return None, False
        attempt = await self.db.get_attempt(session.attempt_id)
        if attempt is None or attempt.status != AttemptStatus.CALLING:
            return None, False

        if session.status in RETRYABLE_SESSION_STATES:
            await self.db.update_attempt(
                attempt.id, status=AttemptStatus.FAILED, failure_reason=session.status.value
            )
            logger.info(
                "Attempt %s (#%d) ended %s", attempt.id, attempt.sequence_number, session.status.value
            )
            return await self.schedule_retry(session.organization_id, attempt.contact_id, now)

        await self.db.update_attempt(attempt.id, status=AttemptStatus.COMPLETED)
        logger.info(
            "Attempt %s (#%d) completed (%s)",
            attempt.id, attempt.sequence_number, session.outcome.value if session.outcome else "no outcome",
        )
        return None, False
