"""Configuration via environment variables.

Database settings follow the individual POSTGRES_* variable pattern. The
``default_*`` values form the contact profile used for organizations that
have not configured one.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # --- Database ---
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "postgres"
    postgres_user: str = "postgres"
    postgres_password: str = ""

    # SQLite fallback for local dev and tests (set USE_SQLITE=true)
    use_sqlite: bool = False
    sqlite_path: str = "orchestrator.db"

    @property
    def database_url(self) -> str:
        if self.use_sqlite:
            return f"sqlite:///{self.sqlite_path}"
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # --- Default contact profile (used when an organization has none) ---
    default_timezone: str = "America/New_York"
    default_window_start: str = "08:00"
    default_window_end: str = "20:00"
    default_allowed_days: list[int] = [1, 2, 3, 4, 5, 6]  # 0=Sunday
    default_max_concurrent: int = 3
    default_max_per_hour: int = 50
    default_max_attempts: int = 3
    default_retry_delays: list[int] = [30, 120, 1440]  # minutes

    # --- Routing ---
    routing_max_fallback_depth: int = 10

    # --- Rate limiting ---
    concurrent_retry_seconds: int = 60

    # --- Job steps ---
    step_max_retries: int = 2
    step_backoff_seconds: float = 2.0

    # --- Telephony / conversational agent collaborator ---
    dialer_webhook_url: str = ""
    dialer_api_key: str = ""
    dialer_timeout_seconds: float = 30.0
    agent_id: str = ""
    default_caller_id: str = ""
    api_base_url: str = "http://localhost:8000"

    # --- Retry worker ---
    poll_interval: int = 30
    stale_attempt_hours: int = 4

    # --- Logging ---
    log_level: str = "INFO"

    model_config = {"env_prefix": ""}
