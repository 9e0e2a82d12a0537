"""
Application settings for the LookEscolar access service.

Values come from the environment (prefix ``LOOKESCOLAR_``) or a local ``.env``.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="LOOKESCOLAR_",
        extra="ignore",
    )

    app_name: str = "LookEscolar Access API"
    app_version: str = "1.0.0"
    debug: bool = False

    # sqlite+aiosqlite for local work, postgresql+asyncpg in production
    database_url: str = "sqlite+aiosqlite:///./lookescolar.db"

    # Shared counters for multi-process deployments
    redis_url: str | None = None

    log_level: str = "INFO"
    log_json: bool = False
    log_file: str | None = None

    audit_log_dir: str = "logs/audit"
    audit_webhook_url: str | None = None
    audit_to_database: bool = True

    rate_limit_sweep_interval_seconds: int = 5 * 60
    rate_limit_idle_ttl_seconds: int = 60 * 60

    # Coarse per-client ceiling applied to every route
    global_rate_limit: str = "200/minute"
    global_rate_limit_enabled: bool = True

    suspicious_failure_threshold: int = 3
    suspicious_window_seconds: int = 5 * 60
    suspicious_retention_seconds: int = 60 * 60


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
