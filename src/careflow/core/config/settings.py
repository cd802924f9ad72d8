"""Application settings loaded from environment variables."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Careflow server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default: there is no auth layer in front of the tools.
    careflow_host: str = "127.0.0.1"
    careflow_port: int = 8010
    careflow_log_level: str = "info"
    careflow_allow_insecure_bind: bool = False

    # Storage (care plan ledger)
    db_path: str = "~/.careflow/careplans.db"

    # Encryption of patient answers at rest
    encryption_key: str = ""
    # Comma-separated retired keys, still accepted for decryption
    encryption_previous_keys: str = ""

    # Scheduling
    # Minutes east of UTC, used when a patient has no stored offset (US Eastern).
    default_timezone_offset: int = -300
    # Reminders delivered later than this after their task time are dropped.
    reminder_grace_seconds: int = 300


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
