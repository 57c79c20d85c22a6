from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: str = "dev"

    database_url: str = "sqlite:///./spend_intake.db"
    redis_url: str = "redis://localhost:6379/0"

    extraction_base_url: str = "https://api.openai.com/v1"
    extraction_api_key: str | None = None
    extraction_model: str = "gpt-4o-mini"
    extraction_timeout_seconds: float = 20.0
    extraction_max_attempts: int = 4
    extraction_backoff_base_seconds: float = 0.5
    extraction_backoff_max_seconds: float = 8.0
    extraction_backoff_jitter_seconds: float = 0.25
    extraction_max_in_flight: int = 4
    extraction_max_chars: int = 12000

    extraction_cache_backend: Literal["memory", "sql"] = "memory"
    extraction_cache_ttl_seconds: int = 60 * 60 * 24 * 7
    extraction_cache_max_entries: int = 10000

    default_template_id: str = "receipt_email.v1"
    default_currency: str = "USD"
    category_confidence_threshold: float = 0.7
    date_clock_skew_minutes: int = 10

    persistence_max_attempts: int = 3
    persistence_backoff_base_seconds: float = 0.2

    intake_queue: Literal["pool", "celery"] = "pool"
    worker_count: int = 4
    queue_maxsize: int = 256
    queue_submit_timeout_seconds: float = 0.5


settings = Settings()
