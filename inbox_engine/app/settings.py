from __future__ import annotations

import os
from dataclasses import dataclass


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


@dataclass(frozen=True)
class Settings:
    app_env: str
    persistence_enabled: bool
    persistence_db_path: str
    database_url: str
    log_level: str
    lead_dedupe_window_hours: int
    media_job_max_attempts: int
    media_retry_base_seconds: int
    media_retry_max_seconds: int
    media_claim_batch_size: int
    default_channel: str

    @property
    def effective_database_url(self) -> str:
        if not self.persistence_enabled:
            return "sqlite:///:memory:"
        return self.database_url


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/inbox_engine.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    base_seconds = max(1, _int_env("MEDIA_RETRY_BASE_SECONDS", 60))
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        lead_dedupe_window_hours=max(1, _int_env("LEAD_DEDUPE_WINDOW_HOURS", 24)),
        media_job_max_attempts=max(1, _int_env("MEDIA_JOB_MAX_ATTEMPTS", 5)),
        media_retry_base_seconds=base_seconds,
        media_retry_max_seconds=max(base_seconds, _int_env("MEDIA_RETRY_MAX_SECONDS", 1800)),
        media_claim_batch_size=max(1, min(100, _int_env("MEDIA_CLAIM_BATCH_SIZE", 10))),
        default_channel=os.getenv("DEFAULT_CHANNEL", "whatsapp").strip().lower() or "whatsapp",
    )
