from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    database_url: str = "sqlite+aiosqlite:///./loyalty.db"
    database_echo: bool = False
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: str | None = None
    celery_result_backend: str | None = None
    celery_default_queue: str = "loyalty-default"

    # Ledger
    points_expiry_days: int = Field(default=365, ge=1)
    points_expiry_batch_size: int = Field(default=500, ge=1)

    # Job queue
    job_queue_concurrency: int = Field(default=5, ge=1)
    job_retry_attempts: int = Field(default=3, ge=1)
    job_retry_backoff_seconds: float = Field(default=5.0, ge=0)
    job_retry_max_backoff_seconds: float | None = None

    # Segmentation
    segment_refresh_queue: str = "segment-refresh"
    segment_refresh_job: str = "process_segment"
    segment_refresh_hour: int = Field(default=1, ge=0, le=23)
    # Monday == 0, matching datetime.weekday()
    segment_refresh_weekday: int = Field(default=0, ge=0, le=6)
    segment_customers_page_limit: int = 100

    # Scheduler
    job_scheduler_enabled: bool = False
    job_schedule_path: str = "config/schedules.toml"
    job_worker_enabled: bool = True

    # Audit
    audit_actor_default: str = "system"
    audit_redact_fields: list[str] = Field(default_factory=lambda: ["email"])

    @field_validator("audit_redact_fields", mode="before")
    @classmethod
    def _parse_field_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
