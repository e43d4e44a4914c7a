"""Database connection and queries - PostgreSQL backend (asyncpg).

Production database backend using asyncpg connection pool. Schema lives in
``migrations/001_orchestrator_schema.sql``.
"""

from __future__ import annotations

import enum
import json
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

import asyncpg

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.errors import ConflictError, StorageError
from outreach_orchestrator.core.models import (
    Attempt,
    AttemptStatus,
    CallSummary,
    Channel,
    Contact,
    ContactProfile,
    DoNotContactRecord,
    Recipient,
    RoutingRule,
    Session,
    SuppressionScope,
    Transcript,
)
from outreach_orchestrator.core.storage import JSON_COLUMNS, RateCounts, Storage, decode_row


def _row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
    return decode_row(dict(row))


def _to_db(key: str, val: Any) -> Any:
    if key in JSON_COLUMNS:
        return json.dumps(val)
    if isinstance(val, enum.Enum):
        return val.value
    return val


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Re-raise driver errors as storage errors the step runner understands."""
    try:
        yield
    except asyncpg.UniqueViolationError as e:
        raise ConflictError(f"PostgreSQL constraint violated: {e}") from e
    except (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, OSError) as e:
        raise StorageError(f"PostgreSQL connection error: {e}") from e
    except asyncpg.PostgresError as e:
        retryable = isinstance(e, (asyncpg.SerializationError, asyncpg.DeadlockDetectedError))
        raise StorageError(f"PostgreSQL error: {e}", retryable=retryable) from e


class PostgresDatabase(Storage):
    """Async PostgreSQL database connection manager and queries."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._pool: asyncpg.Pool | None = None

    async def connect(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.settings.database_url, min_size=2, max_size=10,
            server_settings={"search_path": "orchestrator, public"},
        )

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._pool

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        with _translate_errors():
            return await self.pool.fetchrow(query, *args)

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        with _translate_errors():
            return await self.pool.fetch(query, *args)

    async def _fetchval(self, query: str, *args: Any) -> Any:
        with _translate_errors():
            return await self.pool.fetchval(query, *args)

    async def _execute(self, query: str, *args: Any) -> str:
        with _translate_errors():
            return await self.pool.execute(query, *args)

    async def _fetchone(self, query: str, *args: Any) -> dict[str, Any] | None:
        row = await self._fetchrow(query, *args)
        return _row_to_dict(row) if row else None

    async def _update_fields(self, table: str, key: str, **fields: Any) -> dict[str, Any] | None:
        set_clauses = []
        values: list[Any] = []
        for i, (name, val) in enumerate(fields.items(), start=1):
            set_clauses.append(f"{name} = ${i}")
            values.append(_to_db(name, val))

        n = len(values)
        query = (
            f"UPDATE {table} SET {', '.join(set_clauses)}, updated_at = now() "
            f"WHERE id = ${n + 1} RETURNING *"
        )
        values.append(key)
        return await self._fetchone(query, *values)

    # -----------------------------------------------------------------------
    # Contact profiles
    # -----------------------------------------------------------------------

    async def get_profile(self, organization_id: str) -> ContactProfile | None:
        row = await self._fetchone(
            "SELECT * FROM contact_profiles WHERE organization_id = $1", organization_id
        )
        return ContactProfile(**row) if row else None

    async def upsert_profile(self, profile: ContactProfile) -> ContactProfile:
        row = await self._fetchone(
            """
            INSERT INTO contact_profiles (
                organization_id, timezone, window_start, window_end, allowed_days,
                max_concurrent, max_per_hour, max_attempts, retry_delays, caller_id
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (organization_id) DO UPDATE SET
                timezone = EXCLUDED.timezone,
                window_start = EXCLUDED.window_start,
                window_end = EXCLUDED.window_end,
                allowed_days = EXCLUDED.allowed_days,
                max_concurrent = EXCLUDED.max_concurrent,
                max_per_hour = EXCLUDED.max_per_hour,
                max_attempts = EXCLUDED.max_attempts,
                retry_delays = EXCLUDED.retry_delays,
                caller_id = EXCLUDED.caller_id,
                updated_at = now()
            RETURNING *
            """,
            profile.organization_id, profile.timezone,
            profile.window_start, profile.window_end,
            json.dumps(profile.allowed_days),
            profile.max_concurrent, profile.max_per_hour, profile.max_attempts,
            json.dumps(profile.retry_delays), profile.caller_id,
        )
        return ContactProfile(**row)

    # -----------------------------------------------------------------------
    # Contacts
    # -----------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await self._fetchone("SELECT * FROM contacts WHERE id = $1", contact_id)
        return Contact(**row) if row else None

    async def find_contact_by_phone(self, organization_id: str, phone: str) -> Contact | None:
        row = await self._fetchone(
            """
            SELECT * FROM contacts
            WHERE organization_id = $1 AND phone = $2
            ORDER BY updated_at DESC, id
            LIMIT 1
            """,
            organization_id, phone,
        )
        return Contact(**row) if row else None

    async def upsert_contact(self, contact: Contact) -> Contact:
        row = await self._fetchone(
            """
            INSERT INTO contacts (
                id, organization_id, phone, email, first_name, last_name, category_of_interest
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                phone = EXCLUDED.phone,
                email = EXCLUDED.email,
                first_name = COALESCE(EXCLUDED.first_name, contacts.first_name),
                last_name = COALESCE(EXCLUDED.last_name, contacts.last_name),
                category_of_interest = COALESCE(EXCLUDED.category_of_interest, contacts.category_of_interest),
                updated_at = now()
            RETURNING *
            """,
            contact.id, contact.organization_id, contact.phone, contact.email,
            contact.first_name, contact.last_name, contact.category_of_interest,
        )
        return Contact(**row)

    # -----------------------------------------------------------------------
    # Do-not-contact registry
    # -----------------------------------------------------------------------

    async def insert_do_not_contact(self, record: DoNotContactRecord) -> DoNotContactRecord:
        row = await self._fetchone(
            """
            INSERT INTO do_not_contact (id, organization_id, phone, email, scope, reason)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            """,
            record.id or str(uuid.uuid4()), record.organization_id,
            record.phone, record.email, record.scope.value, record.reason,
        )
        return DoNotContactRecord(**row)

    async def find_do_not_contact(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel,
    ) -> DoNotContactRecord | None:
        if not phone and not email:
            return None
        row = await self._fetchone(
            """
            SELECT * FROM do_not_contact
            WHERE organization_id = $1
              AND scope IN ($2, $3)
              AND ((phone IS NOT NULL AND phone = $4) OR (email IS NOT NULL AND email = $5))
            ORDER BY created_at
            LIMIT 1
            """,
            organization_id, channel.value, SuppressionScope.ALL.value, phone, email,
        )
        return DoNotContactRecord(**row) if row else None

    # -----------------------------------------------------------------------
    # Rate counts
    # -----------------------------------------------------------------------

    async def get_rate_counts(self, organization_id: str, since: datetime) -> RateCounts:
        row = await self._fetchrow(
            """
            SELECT
                COUNT(*) FILTER (WHERE status = ANY($2::text[])) AS in_flight,
                COUNT(*) FILTER (WHERE executed_at >= $3) AS last_hour,
                MIN(executed_at) FILTER (WHERE executed_at >= $3) AS oldest_in_hour
            FROM attempts
            WHERE organization_id = $1
            """,
            organization_id,
            [AttemptStatus.PENDING.value, AttemptStatus.CALLING.value],
            since,
        )
        return RateCounts(int(row["in_flight"]), int(row["last_hour"]), row["oldest_in_hour"])

    # -----------------------------------------------------------------------
    # Attempts
    # -----------------------------------------------------------------------

    async def get_latest_attempt(self, contact_id: str) -> Attempt | None:
        row = await self._fetchone(
            "SELECT * FROM attempts WHERE contact_id = $1 ORDER BY sequence_number DESC LIMIT 1",
            contact_id,
        )
        return Attempt(**row) if row else None

    async def get_attempt(self, attempt_id: str) -> Attempt | None:
        row = await self._fetchone("SELECT * FROM attempts WHERE id = $1", attempt_id)
        return Attempt(**row) if row else None

    async def insert_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        with _translate_errors():
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO attempts (
                        id, organization_id, contact_id, sequence_number, status,
                        scheduled_for, executed_at, failure_reason, session_id
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    ON CONFLICT (contact_id, sequence_number) DO NOTHING
                    """,
                    attempt.id, attempt.organization_id, attempt.contact_id,
                    attempt.sequence_number, attempt.status.value,
                    attempt.scheduled_for, attempt.executed_at,
                    attempt.failure_reason, attempt.session_id,
                )
                row = await conn.fetchrow(
                    "SELECT * FROM attempts WHERE contact_id = $1 AND sequence_number = $2",
                    attempt.contact_id, attempt.sequence_number,
                )
        return Attempt(**_row_to_dict(row)), result == "INSERT 0 1"

    async def update_attempt(self, attempt_id: str, **fields: Any) -> Attempt | None:
        if not fields:
            return await self.get_attempt(attempt_id)
        row = await self._update_fields("attempts", attempt_id, **fields)
        return Attempt(**row) if row else None

    async def get_due_attempts(self, now: datetime, limit: int = 100) -> list[Attempt]:
        rows = await self._fetch(
            """
            SELECT * FROM attempts
            WHERE status = $1 AND scheduled_for <= $2
            ORDER BY scheduled_for, id
            LIMIT $3
            """,
            AttemptStatus.SCHEDULED.value, now, limit,
        )
        return [Attempt(**_row_to_dict(r)) for r in rows]

    async def get_stale_attempts(self, cutoff: datetime) -> list[Attempt]:
        rows = await self._fetch(
            """
            SELECT * FROM attempts
            WHERE (status = $1 AND executed_at < $3)
               OR (status = $2 AND updated_at < $3)
            ORDER BY updated_at, id
            """,
            AttemptStatus.CALLING.value, AttemptStatus.PENDING.value, cutoff,
        )
        return [Attempt(**_row_to_dict(r)) for r in rows]

    # -----------------------------------------------------------------------
    # Routing rules and recipients
    # -----------------------------------------------------------------------

    async def get_active_rules(self, organization_id: str) -> list[RoutingRule]:
        rows = await self._fetch(
            "SELECT * FROM routing_rules WHERE organization_id = $1 AND active ORDER BY id",
            organization_id,
        )
        return [RoutingRule(**_row_to_dict(r)) for r in rows]

    async def insert_rule(self, rule: RoutingRule) -> RoutingRule:
        row = await self._fetchone(
            """
            INSERT INTO routing_rules (
                id, organization_id, location_id, name, priority, conditions,
                target_kind, target_id, fallback_rule_id, active
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (id) DO UPDATE SET
                location_id = EXCLUDED.location_id,
                name = EXCLUDED.name,
                priority = EXCLUDED.priority,
                conditions = EXCLUDED.conditions,
                target_kind = EXCLUDED.target_kind,
                target_id = EXCLUDED.target_id,
                fallback_rule_id = EXCLUDED.fallback_rule_id,
                active = EXCLUDED.active,
                updated_at = now()
            RETURNING *
            """,
            rule.id, rule.organization_id, rule.location_id, rule.name, rule.priority,
            json.dumps([c.model_dump() for c in rule.conditions]),
            rule.target_kind.value, rule.target_id, rule.fallback_rule_id, rule.active,
        )
        return RoutingRule(**row)

    async def get_recipient(self, recipient_id: str) -> Recipient | None:
        row = await self._fetchone("SELECT * FROM recipients WHERE id = $1", recipient_id)
        return Recipient(**row) if row else None

    async def get_department_recipients(
        self, organization_id: str, department: str
    ) -> list[Recipient]:
        rows = await self._fetch(
            """
            SELECT * FROM recipients
            WHERE organization_id = $1 AND department = $2
            ORDER BY handoff_priority DESC, id
            """,
            organization_id, department,
        )
        return [Recipient(**_row_to_dict(r)) for r in rows]

    async def upsert_recipient(self, recipient: Recipient) -> Recipient:
        row = await self._fetchone(
            """
            INSERT INTO recipients (
                id, organization_id, location_id, first_name, last_name, phone, email,
                role, department, accepts_handoffs, handoff_priority, status
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
            ON CONFLICT (id) DO UPDATE SET
                location_id = EXCLUDED.location_id,
                first_name = EXCLUDED.first_name,
                last_name = EXCLUDED.last_name,
                phone = EXCLUDED.phone,
                email = EXCLUDED.email,
                role = EXCLUDED.role,
                department = EXCLUDED.department,
                accepts_handoffs = EXCLUDED.accepts_handoffs,
                handoff_priority = EXCLUDED.handoff_priority,
                status = EXCLUDED.status,
                updated_at = now()
            RETURNING *
            """,
            recipient.id, recipient.organization_id, recipient.location_id,
            recipient.first_name, recipient.last_name, recipient.phone, recipient.email,
            recipient.role, recipient.department, recipient.accepts_handoffs,
            recipient.handoff_priority, recipient.status.value,
        )
        return Recipient(**row)

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        row = await self._fetchone(
            """
            INSERT INTO sessions (
                id, organization_id, contact_id, attempt_id, call_ref, agent_session_ref,
                from_number, to_number, status, outcome, initiated_at,
                handoff_completed, metadata
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, COALESCE($11, now()), $12, $13)
            RETURNING *
            """,
            session.id, session.organization_id, session.contact_id, session.attempt_id,
            session.call_ref, session.agent_session_ref,
            session.from_number, session.to_number, session.status.value,
            session.outcome.value if session.outcome else None,
            session.initiated_at, session.handoff_completed, json.dumps(session.metadata),
        )
        return Session(**row)

    async def get_session(self, session_id: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = $1", session_id)
        return Session(**row) if row else None

    async def get_session_by_attempt(self, attempt_id: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE attempt_id = $1", attempt_id)
        return Session(**row) if row else None

    async def get_session_by_agent_ref(self, agent_session_ref: str) -> Session | None:
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE agent_session_ref = $1", agent_session_ref
        )
        return Session(**row) if row else None

    async def get_session_by_call_ref(self, call_ref: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE call_ref = $1", call_ref)
        return Session(**row) if row else None

    async def update_session_fields(self, session_id: str, **fields: Any) -> Session | None:
        if not fields:
            return await self.get_session(session_id)
        row = await self._update_fields("sessions", session_id, **fields)
        return Session(**row) if row else None

    async def insert_transcript(self, transcript: Transcript) -> Transcript:
        row = await self._fetchone(
            """
            INSERT INTO transcripts (id, session_id, full_text, turns)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            """,
            transcript.id or str(uuid.uuid4()), transcript.session_id,
            transcript.full_text, json.dumps(transcript.turns),
        )
        return Transcript(**row)

    async def insert_summary(self, summary: CallSummary) -> CallSummary:
        row = await self._fetchone(
            """
            INSERT INTO call_summaries (id, session_id, summary, key_points, sentiment, qualification)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING *
            """,
            summary.id or str(uuid.uuid4()), summary.session_id, summary.summary,
            json.dumps(summary.key_points), summary.sentiment,
            json.dumps(summary.qualification),
        )
        return CallSummary(**row)

    # -----------------------------------------------------------------------
    # Idempotency
    # -----------------------------------------------------------------------

    async def claim_callback(self, provider_ref: str, event: str) -> bool:
        result = await self._execute(
            """
            INSERT INTO processed_callbacks (provider_ref, event)
            VALUES ($1, $2)
            ON CONFLICT (provider_ref, event) DO NOTHING
            """,
            provider_ref, event,
        )
        return result == "INSERT 0 1"

    async def release_callback(self, provider_ref: str, event: str) -> None:
        await self._execute(
            "DELETE FROM processed_callbacks WHERE provider_ref = $1 AND event = $2",
            provider_ref, event,
        )

    async def get_step_result(self, job_id: str, step: str) -> tuple[bool, Any]:
        row = await self._fetchrow(
            "SELECT result FROM job_steps WHERE job_id = $1 AND step_name = $2",
            job_id, step,
        )
        if row is None:
            return False, None
        return True, json.loads(row["result"]) if row["result"] is not None else None

    async def save_step_result(self, job_id: str, step: str, value: Any) -> None:
        await self._execute(
            """
            INSERT INTO job_steps (job_id, step_name, result)
            VALUES ($1, $2, $3)
            ON CONFLICT (job_id, step_name) DO NOTHING
            """,
            job_id, step, json.dumps(value),
        )

    # -----------------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------------

    async def count_attempts(self, organization_id: str | None = None) -> int:
        if organization_id:
            return await self._fetchval(
                "SELECT COUNT(*) FROM attempts WHERE organization_id = $1", organization_id
            )
        return await self._fetchval("SELECT COUNT(*) FROM attempts")
