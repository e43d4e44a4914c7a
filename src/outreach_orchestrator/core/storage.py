"""Storage interface consumed by the orchestration core.

Both the aiosqlite and asyncpg backends implement this; components take a
``Storage`` in their constructor so they can run against either, or against
a throwaway SQLite file in tests.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, NamedTuple

from outreach_orchestrator.core.models import (
    Attempt,
    CallSummary,
    Channel,
    Contact,
    ContactProfile,
    DoNotContactRecord,
    Recipient,
    RoutingRule,
    Session,
    Transcript,
)


class RateCounts(NamedTuple):
    """Result of the single aggregate rate-limit read."""

    in_flight: int
    last_hour: int
    oldest_in_hour: datetime | None


class Storage(ABC):
    """Queries the orchestration core depends on."""

    @abstractmethod
    async def connect(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...

    # -- profiles -----------------------------------------------------------

    @abstractmethod
    async def get_profile(self, organization_id: str) -> ContactProfile | None: ...

    @abstractmethod
    async def upsert_profile(self, profile: ContactProfile) -> ContactProfile: ...

    # -- contacts -----------------------------------------------------------

    @abstractmethod
    async def get_contact(self, contact_id: str) -> Contact | None: ...

    @abstractmethod
    async def find_contact_by_phone(self, organization_id: str, phone: str) -> Contact | None:
        """Most recently updated contact of the organization with this E.164 phone."""

    @abstractmethod
    async def upsert_contact(self, contact: Contact) -> Contact: ...

    # -- do-not-contact -----------------------------------------------------

    @abstractmethod
    async def insert_do_not_contact(self, record: DoNotContactRecord) -> DoNotContactRecord: ...

    @abstractmethod
    async def find_do_not_contact(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel,
    ) -> DoNotContactRecord | None:
        """First record matching phone or email whose scope is ``channel`` or ``all``."""

    # -- rate limiting ------------------------------------------------------

    @abstractmethod
    async def get_rate_counts(self, organization_id: str, since: datetime) -> RateCounts:
        """Pending or calling count and attempts executed at or after ``since``, in one read."""

    # -- attempts -----------------------------------------------------------

    @abstractmethod
    async def get_latest_attempt(self, contact_id: str) -> Attempt | None: ...

    @abstractmethod
    async def get_attempt(self, attempt_id: str) -> Attempt | None: ...

    @abstractmethod
    async def insert_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        """Checked insert on (contact_id, sequence_number).

        Returns the stored attempt and whether this call created it.
        """

    @abstractmethod
    async def update_attempt(self, attempt_id: str, **fields: Any) -> Attempt | None: ...

    @abstractmethod
    async def get_due_attempts(self, now: datetime, limit: int = 100) -> list[Attempt]: ...

    @abstractmethod
    async def get_stale_attempts(self, cutoff: datetime) -> list[Attempt]:
        """Calling attempts executed before ``cutoff`` and pending ones untouched since."""

    # -- routing ------------------------------------------------------------

    @abstractmethod
    async def get_active_rules(self, organization_id: str) -> list[RoutingRule]: ...

    @abstractmethod
    async def insert_rule(self, rule: RoutingRule) -> RoutingRule: ...

    @abstractmethod
    async def get_recipient(self, recipient_id: str) -> Recipient | None: ...

    @abstractmethod
    async def get_department_recipients(
        self, organization_id: str, department: str
    ) -> list[Recipient]: ...

    @abstractmethod
    async def upsert_recipient(self, recipient: Recipient) -> Recipient: ...

    # -- sessions -----------------------------------------------------------

    @abstractmethod
    async def create_session(self, session: Session) -> Session: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None: ...

    @abstractmethod
    async def get_session_by_attempt(self, attempt_id: str) -> Session | None: ...

    @abstractmethod
    async def get_session_by_agent_ref(self, agent_session_ref: str) -> Session | None: ...

    @abstractmethod
    async def get_session_by_call_ref(self, call_ref: str) -> Session | None: ...

    @abstractmethod
    async def update_session_fields(self, session_id: str, **fields: Any) -> Session | None: ...

    @abstractmethod
    async def insert_transcript(self, transcript: Transcript) -> Transcript: ...

    @abstractmethod
    async def insert_summary(self, summary: CallSummary) -> CallSummary: ...

    # -- idempotency --------------------------------------------------------

    @abstractmethod
    async def claim_callback(self, provider_ref: str, event: str) -> bool:
        """Record a callback as processed. False if it was already seen."""

    @abstractmethod
    async def release_callback(self, provider_ref: str, event: str) -> None:
        """Forget a claim whose handling failed so a redelivery is applied."""

    @abstractmethod
    async def get_step_result(self, job_id: str, step: str) -> tuple[bool, Any]:
        """(found, stored value) for a memoized pipeline step."""

    @abstractmethod
    async def save_step_result(self, job_id: str, step: str, value: Any) -> None: ...


# Columns stored as JSON text in both backends
JSON_COLUMNS = frozenset({
    "allowed_days",
    "retry_delays",
    "conditions",
    "metadata",
    "turns",
    "key_points",
    "qualification",
})


def decode_row(row: dict[str, Any]) -> dict[str, Any]:
    """Decode JSON text columns of a fetched row in place."""
    for key in JSON_COLUMNS.intersection(row):
        if isinstance(row[key], str):
            row[key] = json.loads(row[key])
    return row
