"""Typed errors for the orchestration pipeline.

Every error carries a stable ``code`` and a ``retryable`` flag so the job
layer can decide between dropping a trigger, backing off, and failing an
attempt for good.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class OrchestrationError(Exception):
    """Base class for all pipeline errors."""

    code = "ORCHESTRATION_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        details = {
            k: v.isoformat() if isinstance(v, datetime) else v
            for k, v in self.details.items()
        }
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": details,
        }


# ---------------------------------------------------------------------------
# Gate errors
# ---------------------------------------------------------------------------


class ComplianceViolation(OrchestrationError):
    """Contact is on the do-not-contact registry for this channel."""

    code = "COMPLIANCE_VIOLATION"

    def __init__(self, organization_id: str, channel: str, reason: str = "do_not_contact"):
        super().__init__(
            f"Contact suppressed for channel {channel}: {reason}",
            organization_id=organization_id,
            channel=channel,
            reason=reason,
        )
        self.reason = reason


class ComplianceLookupFailed(ComplianceViolation):
    """The registry could not be read. Treated as blocked."""

    code = "COMPLIANCE_LOOKUP_FAILED"

    def __init__(self, organization_id: str, channel: str):
        super().__init__(organization_id, channel, reason="lookup_failed")


class WindowViolation(OrchestrationError):
    """Attempt requested outside the organization's contact window."""

    code = "WINDOW_VIOLATION"

    def __init__(
        self,
        organization_id: str,
        reason: str,
        next_opening: datetime | None = None,
    ):
        super().__init__(
            f"Outside contact window: {reason}",
            organization_id=organization_id,
            reason=reason,
            next_opening=next_opening,
        )
        self.reason = reason
        self.next_opening = next_opening


class RateLimitExceeded(OrchestrationError):
    """Concurrent or hourly ceiling reached. ``cause`` is 'concurrent' or 'hourly'."""

    code = "RATE_LIMIT_EXCEEDED"
    retryable = True

    def __init__(
        self,
        organization_id: str,
        cause: str,
        current: int,
        limit: int,
        retry_after: datetime,
    ):
        super().__init__(
            f"Rate limit exceeded ({cause}): {current}/{limit}",
            organization_id=organization_id,
            cause=cause,
            current=current,
            limit=limit,
            retry_after=retry_after,
        )
        self.cause = cause
        self.retry_after = retry_after


class MaxAttemptsReached(OrchestrationError):
    code = "MAX_ATTEMPTS_REACHED"

    def __init__(self, contact_id: str, attempt_number: int, max_attempts: int):
        super().__init__(
            f"Maximum attempts reached for contact {contact_id}: "
            f"attempt {attempt_number} exceeds {max_attempts}",
            contact_id=contact_id,
            attempt_number=attempt_number,
            max_attempts=max_attempts,
        )
        self.max_attempts = max_attempts


class AttemptInFlight(OrchestrationError):
    code = "ATTEMPT_IN_FLIGHT"

    def __init__(self, contact_id: str, attempt_id: str):
        super().__init__(
            f"Contact {contact_id} already has an attempt in flight",
            contact_id=contact_id,
            attempt_id=attempt_id,
        )


# ---------------------------------------------------------------------------
# Routing errors
# ---------------------------------------------------------------------------


class NoMatchingRule(OrchestrationError):
    """No active rule's conditions matched. Usually a missing catch-all rule."""

    code = "NO_MATCHING_RULE"

    def __init__(self, organization_id: str, context: dict[str, Any]):
        super().__init__(
            "No routing rule matches the given context",
            organization_id=organization_id,
            context=context,
        )


class NoAvailableRecipient(OrchestrationError):
    """Rules matched but every target (and fallback) was unavailable."""

    code = "NO_AVAILABLE_RECIPIENT"

    def __init__(self, organization_id: str, matched_rule_ids: list[str]):
        super().__init__(
            "No available recipient for handoff",
            organization_id=organization_id,
            matched_rule_ids=matched_rule_ids,
        )


# ---------------------------------------------------------------------------
# Lifecycle / lookup errors
# ---------------------------------------------------------------------------


class TransitionError(OrchestrationError):
    """Raised when an illegal session state transition is attempted."""

    code = "ILLEGAL_TRANSITION"


class NotFoundError(OrchestrationError):
    code = "NOT_FOUND"

    def __init__(self, kind: str, key: str):
        super().__init__(f"{kind} not found: {key}", kind=kind, key=key)


class ConflictError(OrchestrationError):
    """A unique constraint rejected a write."""

    code = "CONFLICT"


class ConfigurationError(OrchestrationError):
    code = "CONFIGURATION_ERROR"


# ---------------------------------------------------------------------------
# Transient errors (retried by the step runner)
# ---------------------------------------------------------------------------


class TransientError(OrchestrationError):
    retryable = True


class StorageError(TransientError):
    """Database driver failure. Constraint violations are raised as ConflictError."""

    code = "STORAGE_ERROR"

    def __init__(self, message: str, retryable: bool = True, **details: Any):
        super().__init__(message, **details)
        self.retryable = retryable


class ProviderError(TransientError):
    """Telephony collaborator failure. 4xx responses are not retryable."""

    code = "PROVIDER_ERROR"

    def __init__(self, message: str, retryable: bool = True, **details: Any):
        super().__init__(message, **details)
        self.retryable = retryable


class StepFailed(OrchestrationError):
    """A pipeline step failed permanently or exhausted its retries."""

    code = "STEP_FAILED"

    def __init__(self, job_id: str, step: str, reason: str):
        super().__init__(
            f"Step {step} failed for job {job_id}: {reason}",
            job_id=job_id,
            step=step,
            reason=reason,
        )
        self.step = step
        self.reason = reason
