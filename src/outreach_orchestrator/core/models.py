"""Pydantic models for the orchestration system."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

import pytz
from pydantic import BaseModel, Field, field_validator, model_validator

from outreach_orchestrator.routing.conditions import Condition, canonical_field, parse_conditions


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Channel(str, enum.Enum):
    CALL = "call"
    SMS = "sms"
    EMAIL = "email"


class SuppressionScope(str, enum.Enum):
    CALL = "call"
    SMS = "sms"
    EMAIL = "email"
    ALL = "all"


class AttemptStatus(str, enum.Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionStatus(str, enum.Enum):
    INITIATED = "initiated"
    RINGING = "ringing"
    ANSWERED = "answered"
    IN_PROGRESS = "in_progress"
    TRANSFERRING = "transferring"
    TRANSFERRED = "transferred"
    COMPLETED = "completed"
    FAILED = "failed"
    NO_ANSWER = "no_answer"
    BUSY = "busy"
    VOICEMAIL = "voicemail"


class SessionOutcome(str, enum.Enum):
    QUALIFIED = "qualified"
    NOT_INTERESTED = "not_interested"
    CALLBACK_REQUESTED = "callback_requested"
    TRANSFERRED = "transferred"
    APPOINTMENT_SET = "appointment_set"
    VOICEMAIL_LEFT = "voicemail_left"
    NO_ANSWER = "no_answer"
    WRONG_NUMBER = "wrong_number"


class TargetKind(str, enum.Enum):
    PERSON = "person"
    DEPARTMENT = "department"
    VOICEMAIL = "voicemail"


class RecipientStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    DND = "dnd"


class PipelineOutcome(str, enum.Enum):
    PLACED = "placed"
    SKIPPED_WINDOW = "skipped_window"
    BLOCKED_COMPLIANCE = "blocked_compliance"
    RATE_LIMITED = "rate_limited"
    MAX_ATTEMPTS = "max_attempts"
    IN_FLIGHT = "in_flight"
    DEFERRED = "deferred"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def parse_hhmm(value: str) -> int:
    """'HH:MM' or 'HH:MM:SS' -> minutes since midnight."""
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Invalid time of day: {value!r}")
    return hour * 60 + minute


# ---------------------------------------------------------------------------
# Operator configuration
# ---------------------------------------------------------------------------

class ContactProfile(BaseModel):
    """Per-organization contact window, rate ceilings and retry cadence.

    Windows crossing midnight (start > end) are rejected; split them into
    two organizations' worth of policy or move the window.
    """

    organization_id: str
    timezone: str = "America/New_York"
    window_start: str = "08:00"
    window_end: str = "20:00"
    allowed_days: list[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5, 6])  # 0=Sunday
    max_concurrent: int = Field(default=3, ge=1)
    max_per_hour: int = Field(default=50, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_delays: list[int] = Field(default_factory=lambda: [30, 120, 1440])  # minutes
    caller_id: str | None = None
    is_default: bool = Field(default=False, exclude=True)
    updated_at: datetime | None = None

    @field_validator("timezone")
    @classmethod
    def _known_timezone(cls, v: str) -> str:
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v!r}") from None
        return v

    @field_validator("allowed_days")
    @classmethod
    def _valid_days(cls, v: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("allowed_days must be weekday indices 0 (Sunday) to 6 (Saturday)")
        return sorted(set(v))

    @field_validator("retry_delays")
    @classmethod
    def _valid_delays(cls, v: list[int]) -> list[int]:
        if not v:
            raise ValueError("retry_delays must not be empty")
        if any(d < 0 for d in v):
            raise ValueError("retry_delays must be non-negative minutes")
        return v

    @model_validator(mode="after")
    def _window_order(self) -> ContactProfile:
        if parse_hhmm(self.window_start) > parse_hhmm(self.window_end):
            raise ValueError(
                "window_start must not be after window_end; "
                "windows crossing midnight are not supported"
            )
        return self

    @property
    def start_minutes(self) -> int:
        return parse_hhmm(self.window_start)

    @property
    def end_minutes(self) -> int:
        return parse_hhmm(self.window_end)


class Contact(BaseModel):
    id: str
    organization_id: str
    phone: str | None = None
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    category_of_interest: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DoNotContactRecord(BaseModel):
    id: str | None = None
    organization_id: str
    phone: str | None = None
    email: str | None = None
    scope: SuppressionScope = SuppressionScope.ALL
    reason: str | None = None
    created_at: datetime | None = None

    @model_validator(mode="after")
    def _needs_identifier(self) -> DoNotContactRecord:
        if not self.phone and not self.email:
            raise ValueError("A do-not-contact record needs a phone or an email")
        return self


class Recipient(BaseModel):
    """A human who can receive a handoff."""

    id: str
    organization_id: str
    location_id: str | None = None
    first_name: str
    last_name: str
    phone: str | None = None
    email: str | None = None
    role: str = "sales_rep"
    department: str | None = None
    accepts_handoffs: bool = True
    handoff_priority: int = 0  # higher = preferred
    status: RecipientStatus = RecipientStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_available(self) -> bool:
        return self.status == RecipientStatus.ACTIVE and self.accepts_handoffs


class RoutingRule(BaseModel):
    id: str
    organization_id: str
    location_id: str | None = None
    name: str
    priority: int = 0  # higher = evaluated first
    conditions: list[Condition] = Field(default_factory=list)
    target_kind: TargetKind
    target_id: str | None = None
    fallback_rule_id: str | None = None
    active: bool = True

    @field_validator("conditions", mode="before")
    @classmethod
    def _parse_conditions(cls, v: Any) -> Any:
        return parse_conditions(v)

    @model_validator(mode="after")
    def _target_needs_id(self) -> RoutingRule:
        if self.target_kind != TargetKind.VOICEMAIL and not self.target_id:
            raise ValueError(f"{self.target_kind.value} rules need a target_id")
        return self


# ---------------------------------------------------------------------------
# Attempts and sessions
# ---------------------------------------------------------------------------

class Attempt(BaseModel):
    id: str
    organization_id: str
    contact_id: str
    sequence_number: int = Field(ge=1)
    status: AttemptStatus = AttemptStatus.PENDING
    scheduled_for: datetime | None = None
    executed_at: datetime | None = None
    failure_reason: str | None = None
    session_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Session(BaseModel):
    id: str
    organization_id: str
    contact_id: str
    attempt_id: str | None = None
    call_ref: str | None = None
    agent_session_ref: str | None = None
    from_number: str | None = None
    to_number: str | None = None
    status: SessionStatus = SessionStatus.INITIATED
    outcome: SessionOutcome | None = None
    initiated_at: datetime | None = None
    answered_at: datetime | None = None
    ended_at: datetime | None = None
    duration_seconds: int | None = None
    transferred_to_recipient_id: str | None = None
    handoff_completed: bool = False
    recording_ref: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


class Transcript(BaseModel):
    id: str | None = None
    session_id: str
    full_text: str = ""
    turns: list[dict[str, Any]] = Field(default_factory=list)
    created_at: datetime | None = None


class CallSummary(BaseModel):
    id: str | None = None
    session_id: str
    summary: str
    key_points: list[str] = Field(default_factory=list)
    sentiment: str | None = None  # positive, neutral, negative
    qualification: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

class RoutingContext(BaseModel):
    """What the conversational agent knows when it asks for a recipient."""

    organization_id: str
    location_id: str | None = None
    department: str | None = None
    source: str | None = None
    signal_score: float | None = None
    category: str | None = None
    lead_value: float | None = None
    facts: dict[str, Any] = Field(default_factory=dict)

    def lookup(self, name: str) -> tuple[bool, Any]:
        """Return (present, value) for a named field or free-form fact."""
        name = canonical_field(name)
        if name != "facts" and name in type(self).model_fields:
            value = getattr(self, name)
        else:
            value = self.facts.get(name)
        return value is not None, value


class RoutingTarget(BaseModel):
    kind: TargetKind  # person or voicemail
    recipient: Recipient | None = None
    rule_id: str
    rule_name: str
    via_fallback: bool = False


class RuleEvaluation(BaseModel):
    rule_id: str
    rule_name: str
    priority: int
    matched: bool
    has_available_target: bool


class RoutingExplanation(BaseModel):
    """Dry-run view of a routing decision for operators."""

    target: RoutingTarget | None = None
    signal: str
    evaluations: list[RuleEvaluation] = Field(default_factory=list)
    diagnostics: list[str] = Field(default_factory=list)


class RoutingResponse(BaseModel):
    """Answer to the agent's mid-conversation routing query."""

    found: bool
    signal: str  # routed, no_matching_rule, no_available_recipient
    target: RoutingTarget | None = None
    message: str
    fallback_message: str | None = None


# ---------------------------------------------------------------------------
# Computed gate state (not persisted)
# ---------------------------------------------------------------------------

class WindowDecision(BaseModel):
    allowed: bool
    reason: str
    local_time: datetime
    weekday: int  # 0=Sunday


class RateLimitState(BaseModel):
    in_flight: int = 0
    last_hour: int = 0
    oldest_in_hour: datetime | None = None
    max_concurrent: int
    max_per_hour: int

    @property
    def can_attempt(self) -> bool:
        return self.in_flight < self.max_concurrent and self.last_hour < self.max_per_hour


class RetryPlan(BaseModel):
    contact_id: str
    next_attempt_number: int
    delay_minutes: int
    scheduled_for: datetime


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------

class Trigger(BaseModel):
    """Inbound 'this contact now looks highly interested' signal."""

    organization_id: str
    contact_id: str
    trigger_id: str
    signal_score: float | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class PlaceAttemptInstruction(BaseModel):
    organization_id: str
    contact_id: str
    session_id: str
    attempt_id: str
    from_channel: str
    to_channel: str
    agent_id: str | None = None
    callback_url: str | None = None
    conversation_context: dict[str, Any] = Field(default_factory=dict)


class PlacementReceipt(BaseModel):
    agent_session_ref: str
    call_ref: str | None = None


class TranscriptPayload(BaseModel):
    full_text: str = ""
    turns: list[dict[str, Any]] = Field(default_factory=list)


class SessionStartedEvent(BaseModel):
    agent_session_ref: str
    call_ref: str
    from_number: str | None = None
    to_number: str | None = None


class SessionEndedEvent(BaseModel):
    agent_session_ref: str
    call_ref: str | None = None
    duration_seconds: int | None = None
    outcome: str
    transcript: TranscriptPayload | None = None
    recording_ref: str | None = None


class ProviderStatusEvent(BaseModel):
    call_ref: str
    status: str
    duration_seconds: int | None = None


class HandoffConfirmation(BaseModel):
    session_id: str
    completed: bool = True
    reason: str | None = None


class HandoffRequest(BaseModel):
    session_id: str
    recipient_id: str
    qualification: dict[str, Any] = Field(default_factory=dict)
    brief_message: str | None = None


class HandoffInstruction(BaseModel):
    session_id: str
    conference_name: str
    recipient: Recipient
    brief_message: str
    agent_script: str
    session: Session


class ContactLookup(BaseModel):
    organization_id: str
    phone: str
    session_id: str | None = None


class ContactLookupResult(BaseModel):
    """Context the agent reads at the start of a conversation."""

    found: bool
    contact: Contact | None = None
    attempt_number: int | None = None
    timezone: str
    message: str


class PipelineResult(BaseModel):
    trigger_id: str
    outcome: PipelineOutcome
    reason: str | None = None
    retryable: bool = False
    attempt: Attempt | None = None
    session_id: str | None = None
    instruction: PlaceAttemptInstruction | None = None
    retry_after: datetime | None = None
    next_opening: datetime | None = None
    error: dict[str, Any] | None = None


class CallbackResult(BaseModel):
    """Result of applying a collaborator callback."""

    applied: bool  # False for duplicates and unknown references
    session: Session | None = None
    retry_plan: RetryPlan | None = None
    automation_exhausted: bool = False
