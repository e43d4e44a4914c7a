"""Database connection and queries - SQLite backend.

Zero-install database backend using aiosqlite. Auto-creates schema on connect.
"""

from __future__ import annotations

import enum
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import Any

import aiosqlite

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


# ---------------------------------------------------------------------------
# SQLite schema (auto-created on first connect)
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS contact_profiles (
    organization_id     TEXT PRIMARY KEY,
    timezone            TEXT NOT NULL,
    window_start        TEXT NOT NULL,
    window_end          TEXT NOT NULL,
    allowed_days        TEXT NOT NULL DEFAULT '[1,2,3,4,5,6]',
    max_concurrent      INTEGER NOT NULL DEFAULT 3,
    max_per_hour        INTEGER NOT NULL DEFAULT 50,
    max_attempts        INTEGER NOT NULL DEFAULT 3,
    retry_delays        TEXT NOT NULL DEFAULT '[30,120,1440]',
    caller_id           TEXT,
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contacts (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    phone               TEXT,
    email               TEXT,
    first_name          TEXT,
    last_name           TEXT,
    category_of_interest TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS do_not_contact (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    phone               TEXT,
    email               TEXT,
    scope               TEXT NOT NULL DEFAULT 'all',
    reason              TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS attempts (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    contact_id          TEXT NOT NULL,
    sequence_number     INTEGER NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    scheduled_for       TEXT,
    executed_at         TEXT,
    failure_reason      TEXT,
    session_id          TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(contact_id, sequence_number)
);

CREATE TABLE IF NOT EXISTS recipients (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    location_id         TEXT,
    first_name          TEXT NOT NULL,
    last_name           TEXT NOT NULL,
    phone               TEXT,
    email               TEXT,
    role                TEXT NOT NULL DEFAULT 'sales_rep',
    department          TEXT,
    accepts_handoffs    INTEGER NOT NULL DEFAULT 1,
    handoff_priority    INTEGER NOT NULL DEFAULT 0,
    status              TEXT NOT NULL DEFAULT 'active',
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS routing_rules (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    location_id         TEXT,
    name                TEXT NOT NULL,
    priority            INTEGER NOT NULL DEFAULT 0,
    conditions          TEXT NOT NULL DEFAULT '[]',
    target_kind         TEXT NOT NULL,
    target_id           TEXT,
    fallback_rule_id    TEXT,
    active              INTEGER NOT NULL DEFAULT 1,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS sessions (
    id                  TEXT PRIMARY KEY,
    organization_id     TEXT NOT NULL,
    contact_id          TEXT NOT NULL,
    attempt_id          TEXT UNIQUE,
    call_ref            TEXT,
    agent_session_ref   TEXT,
    from_number         TEXT,
    to_number           TEXT,
    status              TEXT NOT NULL DEFAULT 'initiated',
    outcome             TEXT,
    initiated_at        TEXT,
    answered_at         TEXT,
    ended_at            TEXT,
    duration_seconds    INTEGER,
    transferred_to_recipient_id TEXT,
    handoff_completed   INTEGER NOT NULL DEFAULT 0,
    recording_ref       TEXT,
    metadata            TEXT NOT NULL DEFAULT '{}',
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS transcripts (
    id                  TEXT PRIMARY KEY,
    session_id          TEXT NOT NULL REFERENCES sessions(id),
    full_text           TEXT NOT NULL DEFAULT '',
    turns               TEXT NOT NULL DEFAULT '[]',
    created_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS call_summaries (
    id                  TEXT PRIMARY KEY,
    session_id          TEXT NOT NULL REFERENCES sessions(id),
    summary             TEXT NOT NULL,
    key_points          TEXT NOT NULL DEFAULT '[]',
    sentiment           TEXT,
    qualification       TEXT NOT NULL DEFAULT '{}',
    created_at          TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS processed_callbacks (
    provider_ref        TEXT NOT NULL,
    event               TEXT NOT NULL,
    processed_at        TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (provider_ref, event)
);

CREATE TABLE IF NOT EXISTS job_steps (
    job_id              TEXT NOT NULL,
    step_name           TEXT NOT NULL,
    result              TEXT,
    created_at          TEXT NOT NULL DEFAULT (datetime('now')),
    PRIMARY KEY (job_id, step_name)
);

CREATE INDEX IF NOT EXISTS idx_contacts_org ON contacts(organization_id);
CREATE INDEX IF NOT EXISTS idx_dnc_phone ON do_not_contact(organization_id, phone);
CREATE INDEX IF NOT EXISTS idx_dnc_email ON do_not_contact(organization_id, email);
CREATE INDEX IF NOT EXISTS idx_attempts_org_status ON attempts(organization_id, status);
CREATE INDEX IF NOT EXISTS idx_attempts_org_executed ON attempts(organization_id, executed_at);
CREATE INDEX IF NOT EXISTS idx_attempts_scheduled ON attempts(status, scheduled_for);
CREATE INDEX IF NOT EXISTS idx_rules_org ON routing_rules(organization_id, active);
CREATE INDEX IF NOT EXISTS idx_recipients_dept ON recipients(organization_id, department);
CREATE INDEX IF NOT EXISTS idx_sessions_agent_ref ON sessions(agent_session_ref);
CREATE INDEX IF NOT EXISTS idx_sessions_call_ref ON sessions(call_ref);
"""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _dt_str(dt: datetime | None) -> str | None:
    """UTC ISO string with fixed precision so text comparison orders correctly."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_str() -> str:
    return _dt_str(_now())


def _to_db(key: str, val: Any) -> Any:
    if key in JSON_COLUMNS:
        return json.dumps(val)
    if isinstance(val, enum.Enum):
        return val.value
    if isinstance(val, datetime):
        return _dt_str(val)
    if isinstance(val, bool):
        return int(val)
    return val


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert sqlite3.Row to a plain dict with JSON columns decoded."""
    return decode_row({k: row[k] for k in row.keys()})


def _conditions_json(rule: RoutingRule) -> str:
    return json.dumps([c.model_dump() for c in rule.conditions])


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------


class Database(Storage):
    """Async SQLite database connection manager and queries."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or Settings()
        self._conn: aiosqlite.Connection | None = None

    def _resolve_path(self) -> str:
        url = self.settings.database_url
        if url.startswith("sqlite:///"):
            return url[len("sqlite:///"):]
        if url.startswith("sqlite://"):
            return url[len("sqlite://"):]
        return url

    async def connect(self) -> None:
        path = self._resolve_path()
        self._conn = await aiosqlite.connect(path)
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._init_schema()

    async def _init_schema(self) -> None:
        """Auto-create tables if they don't exist."""
        await self.conn.executescript(SCHEMA_SQL)
        await self._commit()

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    async def _execute(self, query: str, params: tuple | list = ()) -> aiosqlite.Cursor:
        """Run one statement, translating driver errors into storage errors."""
        try:
            return await self.conn.execute(query, params)
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"SQLite constraint violated: {e}") from e
        except sqlite3.Error as e:
            raise StorageError(
                f"SQLite error: {e}", retryable=isinstance(e, sqlite3.OperationalError)
            ) from e

    async def _commit(self) -> None:
        try:
            await self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"SQLite commit failed: {e}") from e

    async def _fetchone(self, query: str, params: tuple | list = ()) -> dict[str, Any] | None:
        cursor = await self._execute(query, params)
        row = await cursor.fetchone()
        return _row_to_dict(row) if row else None

    async def _fetchall(self, query: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        cursor = await self._execute(query, params)
        rows = await cursor.fetchall()
        return [_row_to_dict(r) for r in rows]

    async def _update_fields(self, table: str, key: str, **fields: Any) -> None:
        set_clauses = []
        values: list[Any] = []
        for name, val in fields.items():
            set_clauses.append(f"{name} = ?")
            values.append(_to_db(name, val))

        # Always bump updated_at
        set_clauses.append("updated_at = ?")
        values.append(_now_str())
        values.append(key)

        query = f"UPDATE {table} SET {', '.join(set_clauses)} WHERE id = ?"
        await self._execute(query, values)
        await self._commit()

    # -----------------------------------------------------------------------
    # Contact profiles
    # -----------------------------------------------------------------------

    async def get_profile(self, organization_id: str) -> ContactProfile | None:
        row = await self._fetchone(
            "SELECT * FROM contact_profiles WHERE organization_id = ?", (organization_id,)
        )
        return ContactProfile(**row) if row else None

    async def upsert_profile(self, profile: ContactProfile) -> ContactProfile:
        await self._execute(
            """
            INSERT INTO contact_profiles (
                organization_id, timezone, window_start, window_end, allowed_days,
                max_concurrent, max_per_hour, max_attempts, retry_delays, caller_id, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (organization_id) DO UPDATE SET
                timezone = excluded.timezone,
                window_start = excluded.window_start,
                window_end = excluded.window_end,
                allowed_days = excluded.allowed_days,
                max_concurrent = excluded.max_concurrent,
                max_per_hour = excluded.max_per_hour,
                max_attempts = excluded.max_attempts,
                retry_delays = excluded.retry_delays,
                caller_id = excluded.caller_id,
                updated_at = excluded.updated_at
            """,
            (
                profile.organization_id, profile.timezone,
                profile.window_start, profile.window_end,
                json.dumps(profile.allowed_days),
                profile.max_concurrent, profile.max_per_hour, profile.max_attempts,
                json.dumps(profile.retry_delays), profile.caller_id, _now_str(),
            ),
        )
        await self._commit()
        result = await self.get_profile(profile.organization_id)
        assert result is not None
        return result

    # -----------------------------------------------------------------------
    # Contacts
    # -----------------------------------------------------------------------

    async def get_contact(self, contact_id: str) -> Contact | None:
        row = await self._fetchone("SELECT * FROM contacts WHERE id = ?", (contact_id,))
        return Contact(**row) if row else None

    async def find_contact_by_phone(self, organization_id: str, phone: str) -> Contact | None:
        row = await self._fetchone(
            """
            SELECT * FROM contacts
            WHERE organization_id = ? AND phone = ?
            ORDER BY updated_at DESC, id
            LIMIT 1
            """,
            (organization_id, phone),
        )
        return Contact(**row) if row else None

    async def upsert_contact(self, contact: Contact) -> Contact:
        now = _now_str()
        await self._execute(
            """
            INSERT INTO contacts (
                id, organization_id, phone, email, first_name, last_name,
                category_of_interest, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                phone = excluded.phone,
                email = excluded.email,
                first_name = COALESCE(excluded.first_name, contacts.first_name),
                last_name = COALESCE(excluded.last_name, contacts.last_name),
                category_of_interest = COALESCE(excluded.category_of_interest, contacts.category_of_interest),
                updated_at = excluded.updated_at
            """,
            (
                contact.id, contact.organization_id, contact.phone, contact.email,
                contact.first_name, contact.last_name, contact.category_of_interest,
                now, now,
            ),
        )
        await self._commit()
        result = await self.get_contact(contact.id)
        assert result is not None
        return result

    # -----------------------------------------------------------------------
    # Do-not-contact registry
    # -----------------------------------------------------------------------

    async def insert_do_not_contact(self, record: DoNotContactRecord) -> DoNotContactRecord:
        record_id = record.id or str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO do_not_contact (id, organization_id, phone, email, scope, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record_id, record.organization_id, record.phone, record.email,
                record.scope.value, record.reason, _now_str(),
            ),
        )
        await self._commit()
        row = await self._fetchone("SELECT * FROM do_not_contact WHERE id = ?", (record_id,))
        assert row is not None
        return DoNotContactRecord(**row)

    async def find_do_not_contact(
        self,
        organization_id: str,
        phone: str | None,
        email: str | None,
        channel: Channel,
    ) -> DoNotContactRecord | None:
        identity: list[str] = []
        params: list[Any] = [organization_id, channel.value, SuppressionScope.ALL.value]
        if phone:
            identity.append("phone = ?")
            params.append(phone)
        if email:
            identity.append("email = ?")
            params.append(email)
        if not identity:
            return None
        row = await self._fetchone(
            f"""
            SELECT * FROM do_not_contact
            WHERE organization_id = ?
              AND scope IN (?, ?)
              AND ({' OR '.join(identity)})
            ORDER BY created_at
            LIMIT 1
            """,
            params,
        )
        return DoNotContactRecord(**row) if row else None

    # -----------------------------------------------------------------------
    # Rate counts
    # -----------------------------------------------------------------------

    async def get_rate_counts(self, organization_id: str, since: datetime) -> RateCounts:
        since_str = _dt_str(since)
        cursor = await self._execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN status IN (?, ?) THEN 1 ELSE 0 END), 0) AS in_flight,
                COALESCE(SUM(CASE WHEN executed_at >= ? THEN 1 ELSE 0 END), 0) AS last_hour,
                MIN(CASE WHEN executed_at >= ? THEN executed_at END) AS oldest_in_hour
            FROM attempts
            WHERE organization_id = ?
            """,
            (
                AttemptStatus.PENDING.value, AttemptStatus.CALLING.value,
                since_str, since_str, organization_id,
            ),
        )
        row = await cursor.fetchone()
        oldest = datetime.fromisoformat(row["oldest_in_hour"]) if row["oldest_in_hour"] else None
        return RateCounts(int(row["in_flight"]), int(row["last_hour"]), oldest)

    # -----------------------------------------------------------------------
    # Attempts
    # -----------------------------------------------------------------------

    async def get_latest_attempt(self, contact_id: str) -> Attempt | None:
        row = await self._fetchone(
            "SELECT * FROM attempts WHERE contact_id = ? ORDER BY sequence_number DESC LIMIT 1",
            (contact_id,),
        )
        return Attempt(**row) if row else None

    async def get_attempt(self, attempt_id: str) -> Attempt | None:
        row = await self._fetchone("SELECT * FROM attempts WHERE id = ?", (attempt_id,))
        return Attempt(**row) if row else None

    async def insert_attempt_if_absent(self, attempt: Attempt) -> tuple[Attempt, bool]:
        now = _now_str()
        cursor = await self._execute(
            """
            INSERT INTO attempts (
                id, organization_id, contact_id, sequence_number, status,
                scheduled_for, executed_at, failure_reason, session_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (contact_id, sequence_number) DO NOTHING
            """,
            (
                attempt.id, attempt.organization_id, attempt.contact_id,
                attempt.sequence_number, attempt.status.value,
                _dt_str(attempt.scheduled_for), _dt_str(attempt.executed_at),
                attempt.failure_reason, attempt.session_id, now, now,
            ),
        )
        inserted = cursor.rowcount == 1
        await self._commit()
        row = await self._fetchone(
            "SELECT * FROM attempts WHERE contact_id = ? AND sequence_number = ?",
            (attempt.contact_id, attempt.sequence_number),
        )
        assert row is not None
        return Attempt(**row), inserted

    async def update_attempt(self, attempt_id: str, **fields: Any) -> Attempt | None:
        if fields:
            await self._update_fields("attempts", attempt_id, **fields)
        return await self.get_attempt(attempt_id)

    async def get_due_attempts(self, now: datetime, limit: int = 100) -> list[Attempt]:
        rows = await self._fetchall(
            """
            SELECT * FROM attempts
            WHERE status = ? AND scheduled_for <= ?
            ORDER BY scheduled_for, id
            LIMIT ?
            """,
            (AttemptStatus.SCHEDULED.value, _dt_str(now), limit),
        )
        return [Attempt(**r) for r in rows]

    async def get_stale_attempts(self, cutoff: datetime) -> list[Attempt]:
        rows = await self._fetchall(
            """
            SELECT * FROM attempts
            WHERE (status = ? AND executed_at < ?)
               OR (status = ? AND updated_at < ?)
            ORDER BY updated_at, id
            """,
            (
                AttemptStatus.CALLING.value, _dt_str(cutoff),
                AttemptStatus.PENDING.value, _dt_str(cutoff),
            ),
        )
        return [Attempt(**r) for r in rows]

    # -----------------------------------------------------------------------
    # Routing rules and recipients
    # -----------------------------------------------------------------------

    async def get_active_rules(self, organization_id: str) -> list[RoutingRule]:
        rows = await self._fetchall(
            "SELECT * FROM routing_rules WHERE organization_id = ? AND active = 1 ORDER BY id",
            (organization_id,),
        )
        return [RoutingRule(**r) for r in rows]

    async def insert_rule(self, rule: RoutingRule) -> RoutingRule:
        now = _now_str()
        await self._execute(
            """
            INSERT INTO routing_rules (
                id, organization_id, location_id, name, priority, conditions,
                target_kind, target_id, fallback_rule_id, active, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                location_id = excluded.location_id,
                name = excluded.name,
                priority = excluded.priority,
                conditions = excluded.conditions,
                target_kind = excluded.target_kind,
                target_id = excluded.target_id,
                fallback_rule_id = excluded.fallback_rule_id,
                active = excluded.active,
                updated_at = excluded.updated_at
            """,
            (
                rule.id, rule.organization_id, rule.location_id, rule.name, rule.priority,
                _conditions_json(rule), rule.target_kind.value, rule.target_id,
                rule.fallback_rule_id, int(rule.active), now, now,
            ),
        )
        await self._commit()
        row = await self._fetchone("SELECT * FROM routing_rules WHERE id = ?", (rule.id,))
        assert row is not None
        return RoutingRule(**row)

    async def get_recipient(self, recipient_id: str) -> Recipient | None:
        row = await self._fetchone("SELECT * FROM recipients WHERE id = ?", (recipient_id,))
        return Recipient(**row) if row else None

    async def get_department_recipients(
        self, organization_id: str, department: str
    ) -> list[Recipient]:
        rows = await self._fetchall(
            """
            SELECT * FROM recipients
            WHERE organization_id = ? AND department = ?
            ORDER BY handoff_priority DESC, id
            """,
            (organization_id, department),
        )
        return [Recipient(**r) for r in rows]

    async def upsert_recipient(self, recipient: Recipient) -> Recipient:
        now = _now_str()
        await self._execute(
            """
            INSERT INTO recipients (
                id, organization_id, location_id, first_name, last_name, phone, email,
                role, department, accepts_handoffs, handoff_priority, status,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                location_id = excluded.location_id,
                first_name = excluded.first_name,
                last_name = excluded.last_name,
                phone = excluded.phone,
                email = excluded.email,
                role = excluded.role,
                department = excluded.department,
                accepts_handoffs = excluded.accepts_handoffs,
                handoff_priority = excluded.handoff_priority,
                status = excluded.status,
                updated_at = excluded.updated_at
            """,
            (
                recipient.id, recipient.organization_id, recipient.location_id,
                recipient.first_name, recipient.last_name, recipient.phone, recipient.email,
                recipient.role, recipient.department, int(recipient.accepts_handoffs),
                recipient.handoff_priority, recipient.status.value, now, now,
            ),
        )
        await self._commit()
        result = await self.get_recipient(recipient.id)
        assert result is not None
        return result

    # -----------------------------------------------------------------------
    # Sessions
    # -----------------------------------------------------------------------

    async def create_session(self, session: Session) -> Session:
        now = _now_str()
        await self._execute(
            """
            INSERT INTO sessions (
                id, organization_id, contact_id, attempt_id, call_ref, agent_session_ref,
                from_number, to_number, status, outcome, initiated_at,
                handoff_completed, metadata, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id, session.organization_id, session.contact_id, session.attempt_id,
                session.call_ref, session.agent_session_ref,
                session.from_number, session.to_number, session.status.value,
                session.outcome.value if session.outcome else None,
                _dt_str(session.initiated_at) or now,
                int(session.handoff_completed), json.dumps(session.metadata), now, now,
            ),
        )
        await self._commit()
        result = await self.get_session(session.id)
        assert result is not None
        return result

    async def get_session(self, session_id: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE id = ?", (session_id,))
        return Session(**row) if row else None

    async def get_session_by_attempt(self, attempt_id: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE attempt_id = ?", (attempt_id,))
        return Session(**row) if row else None

    async def get_session_by_agent_ref(self, agent_session_ref: str) -> Session | None:
        row = await self._fetchone(
            "SELECT * FROM sessions WHERE agent_session_ref = ?", (agent_session_ref,)
        )
        return Session(**row) if row else None

    async def get_session_by_call_ref(self, call_ref: str) -> Session | None:
        row = await self._fetchone("SELECT * FROM sessions WHERE call_ref = ?", (call_ref,))
        return Session(**row) if row else None

    async def update_session_fields(self, session_id: str, **fields: Any) -> Session | None:
        if fields:
            await self._update_fields("sessions", session_id, **fields)
        return await self.get_session(session_id)

    async def insert_transcript(self, transcript: Transcript) -> Transcript:
        transcript_id = transcript.id or str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO transcripts (id, session_id, full_text, turns, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                transcript_id, transcript.session_id, transcript.full_text,
                json.dumps(transcript.turns), _now_str(),
            ),
        )
        await self._commit()
        row = await self._fetchone("SELECT * FROM transcripts WHERE id = ?", (transcript_id,))
        assert row is not None
        return Transcript(**row)

    async def insert_summary(self, summary: CallSummary) -> CallSummary:
        summary_id = summary.id or str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO call_summaries (
                id, session_id, summary, key_points, sentiment, qualification, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                summary_id, summary.session_id, summary.summary,
                json.dumps(summary.key_points), summary.sentiment,
                json.dumps(summary.qualification), _now_str(),
            ),
        )
        await self._commit()
        row = await self._fetchone("SELECT * FROM call_summaries WHERE id = ?", (summary_id,))
        assert row is not None
        return CallSummary(**row)

    # -----------------------------------------------------------------------
    # Idempotency
    # -----------------------------------------------------------------------

    async def claim_callback(self, provider_ref: str, event: str) -> bool:
        cursor = await self._execute(
            """
            INSERT INTO processed_callbacks (provider_ref, event, processed_at)
            VALUES (?, ?, ?)
            ON CONFLICT (provider_ref, event) DO NOTHING
            """,
            (provider_ref, event, _now_str()),
        )
        claimed = cursor.rowcount == 1
        await self._commit()
        return claimed

    async def release_callback(self, provider_ref: str, event: str) -> None:
        await self._execute(
            "DELETE FROM processed_callbacks WHERE provider_ref = ? AND event = ?",
            (provider_ref, event),
        )
        await self._commit()

    async def get_step_result(self, job_id: str, step: str) -> tuple[bool, Any]:
        cursor = await self._execute(
            "SELECT result FROM job_steps WHERE job_id = ? AND step_name = ?",
            (job_id, step),
        )
        row = await cursor.fetchone()
        if row is None:
            return False, None
        return True, json.loads(row["result"]) if row["result"] is not None else None

    async def save_step_result(self, job_id: str, step: str, value: Any) -> None:
        await self._execute(
            """
            INSERT INTO job_steps (job_id, step_name, result, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (job_id, step_name) DO NOTHING
            """,
            (job_id, step, json.dumps(value), _now_str()),
        )
        await self._commit()

    # -----------------------------------------------------------------------
    # Reporting
    # -----------------------------------------------------------------------

    async def count_attempts(self, organization_id: str | None = None) -> int:
        if organization_id:
            cursor = await self._execute(
                "SELECT COUNT(*) FROM attempts WHERE organization_id = ?", (organization_id,)
            )
        else:
            cursor = await self._execute("SELECT COUNT(*) FROM attempts")
        row = await cursor.fetchone()
        return int(row[0])

