"""
Application Settings and Configuration

This module contains all configuration settings for InsightSync, including:
- Environment variables management
- Graph API endpoint and timeout configuration
- Per-platform rate limits and retry strategy
- Sync, cache and scheduler tuning
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application Settings
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Graph API Configuration
    graph_api_base_url: str = Field(
        default="https://graph.facebook.com",
        description="Meta Graph API host"
    )
    graph_api_version: str = Field(default="v22.0", description="Graph API version path segment")
    request_timeout_seconds: float = Field(
        default=30.0,
        description="Timeout applied to every outbound HTTP call"
    )

    # Rate Limiting
    instagram_requests_per_hour: int = Field(default=200, description="Instagram requests per window")
    instagram_requests_per_day: int = Field(default=4800, description="Instagram daily request budget")
    facebook_requests_per_hour: int = Field(default=200, description="Facebook requests per window")
    facebook_requests_per_day: int = Field(default=4800, description="Facebook daily request budget")
    rate_limit_window_seconds: int = Field(default=3600, description="Fixed window length")
    rate_limit_min_poll_seconds: float = Field(
        default=1.0,
        description="Shortest sleep between queue polls"
    )
    rate_limit_max_poll_seconds: float = Field(
        default=60.0,
        description="Longest sleep between queue polls"
    )
    rate_limit_default_retry_after_seconds: float = Field(
        default=60.0,
        description="Wait applied to a rate-limit error without a retry hint"
    )

    # Retry Strategy
    retry_max_retries: int = Field(default=3, description="Retries after the first attempt")
    retry_base_delay_seconds: float = Field(default=1.0, description="Initial backoff delay")
    retry_max_delay_seconds: float = Field(default=30.0, description="Backoff delay ceiling")
    retry_backoff_multiplier: float = Field(default=2.0, description="Backoff growth factor")
    retry_jitter: bool = Field(default=True, description="Apply +/-25% jitter to backoff delays")

    # Cache
    cache_ttl_minutes: int = Field(default=30, description="Analytics cache entry lifetime")

    # Sync Configuration
    media_request_delay_seconds: float = Field(
        default=0.2,
        description="Pause between media items within one sync run"
    )
    initial_sync_days_back: int = Field(default=30, description="Initial sync lookback window")
    initial_sync_limit: int = Field(default=50, description="Initial sync media page size")
    incremental_sync_limit: int = Field(default=25, description="Incremental sync media page size")
    daily_sync_lookback_days: int = Field(default=30, description="Daily rollup lookback window")
    daily_sync_limit: int = Field(default=25, description="Daily rollup media page size")

    # Scheduler
    enable_scheduler: bool = Field(default=False, description="Run periodic syncs in-process")
    incremental_sync_interval_seconds: int = Field(
        default=7200,
        description="Interval between incremental fan-out runs"
    )
    daily_sync_interval_seconds: int = Field(
        default=86400,
        description="Interval between daily fan-out runs"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
