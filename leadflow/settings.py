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


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
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
    whatsapp_webhook_secret: str
    sms_webhook_secret: str
    email_webhook_secret: str
    default_rate_limit_per_second: int
    default_max_retries: int
    retry_backoff_seconds: float
    retry_backoff_max_seconds: float
    webhook_match_max_attempts: int
    webhook_match_retry_seconds: int
    email_max_concurrency: int
    sms_max_concurrency: int
    whatsapp_max_concurrency: int
    default_agent_capacity: int
    background_jobs_enabled: bool
    job_interval_seconds: float

    def webhook_secret_for(self, channel: str) -> str:
        return {
            "whatsapp": self.whatsapp_webhook_secret,
            "sms": self.sms_webhook_secret,
            "email": self.email_webhook_secret,
        }.get(channel, "")

    def channel_concurrency(self) -> dict[str, int]:
        return {
            "email": self.email_max_concurrency,
            "sms": self.sms_max_concurrency,
            "whatsapp": self.whatsapp_max_concurrency,
        }


def load_settings() -> Settings:
    persistence_db_path = os.getenv("PERSISTENCE_DB_PATH", "data/leadflow.sqlite3").strip()
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        database_url = f"sqlite:///{persistence_db_path.replace(chr(92), '/')}"
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        persistence_enabled=_bool_env("PERSISTENCE_ENABLED", True),
        persistence_db_path=persistence_db_path,
        database_url=database_url,
        whatsapp_webhook_secret=os.getenv("WHATSAPP_WEBHOOK_SECRET", "").strip(),
        sms_webhook_secret=os.getenv("SMS_WEBHOOK_SECRET", "").strip(),
        email_webhook_secret=os.getenv("EMAIL_WEBHOOK_SECRET", "").strip(),
        default_rate_limit_per_second=max(
            1, min(1000, _int_env("DEFAULT_RATE_LIMIT_PER_SECOND", 10))
        ),
        default_max_retries=max(0, min(20, _int_env("DEFAULT_MAX_RETRIES", 3))),
        retry_backoff_seconds=max(0.0, _float_env("RETRY_BACKOFF_SECONDS", 60.0)),
        retry_backoff_max_seconds=max(1.0, _float_env("RETRY_BACKOFF_MAX_SECONDS", 3600.0)),
        webhook_match_max_attempts=max(1, _int_env("WEBHOOK_MATCH_MAX_ATTEMPTS", 5)),
        webhook_match_retry_seconds=max(1, _int_env("WEBHOOK_MATCH_RETRY_SECONDS", 30)),
        email_max_concurrency=max(1, _int_env("EMAIL_MAX_CONCURRENCY", 10)),
        sms_max_concurrency=max(1, _int_env("SMS_MAX_CONCURRENCY", 5)),
        whatsapp_max_concurrency=max(1, _int_env("WHATSAPP_MAX_CONCURRENCY", 8)),
        default_agent_capacity=max(1, _int_env("DEFAULT_AGENT_CAPACITY", 50)),
        background_jobs_enabled=_bool_env("BACKGROUND_JOBS_ENABLED", False),
        job_interval_seconds=max(1.0, _float_env("JOB_INTERVAL_SECONDS", 60.0)),
    )
