"""Process settings loaded from environment variables."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class QuotaGuardSettings(BaseSettings):
    """Quota Guard settings.

    All values can be overridden via environment variables prefixed with
    ``QUOTA_GUARD_`` (e.g. ``QUOTA_GUARD_DB_PATH=/var/lib/usage.db``) or
    through a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="QUOTA_GUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # SQLite file holding the usage_event ledger.
    db_path: str = "quota_guard.db"

    # Optional YAML rule table; the built-in table is used when unset.
    rules_file: Optional[str] = None

    log_level: str = "INFO"

    # Single-line JSON log records instead of plain text.
    structured_logging: bool = False
