"""Database factory - selects backend based on configuration."""

from __future__ import annotations

from outreach_orchestrator.core.config import Settings
from outreach_orchestrator.core.storage import Storage


def create_database(settings: Settings | None = None) -> Storage:
    """Return the appropriate database backend.

    - use_sqlite=True uses the aiosqlite backend.
    - Otherwise uses the asyncpg PostgreSQL backend (default for production).
    """
    s = settings or Settings()
    if s.use_sqlite:
        from outreach_orchestrator.core.database import Database
        return Database(s)
    else:
        from outreach_orchestrator.core.database_pg import PostgresDatabase
        return PostgresDatabase(s)
