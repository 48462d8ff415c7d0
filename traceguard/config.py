from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # SQLite database holding alerts, traces, repositories and investigations
    database_path: str = "traceguard.db"

    # Per-alert evaluation loop
    evaluation_interval_seconds: int = 30
    scheduler_enabled: bool = True
    activity_max_attempts: int = 3
    activity_backoff_seconds: float = 1.0

    # Timeouts for each external dependency call
    metric_timeout_seconds: float = 10.0
    span_query_timeout_seconds: float = 15.0
    search_timeout_seconds: float = 15.0
    notification_timeout_seconds: float = 10.0

    # Root-cause investigation
    max_spans_to_analyze: int = 5000
    default_lookback_days: int = 7
    temporal_half_life_hours: float = 24.0
    correlation_weight_temporal: float = 0.3
    correlation_weight_semantic: float = 0.4
    correlation_weight_path: float = 0.3

    # Code search service (optional, empty string means not configured)
    code_search_url: str = ""
    code_search_token: str = ""

    # Notification service (optional, empty string means not configured)
    notification_url: str = ""
    internal_api_secret: str = ""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
