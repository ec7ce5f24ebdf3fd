"""Configuration settings for the Markup scrape worker."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis
    redis_url: str = "redis://localhost:6379"
    queue_name: str = "markup-scraper"

    # Server
    port: int = 3000
    debug: bool = False
    log_level: str = "INFO"
    log_format: str = "json"  # "json" or "text"
    run_worker: bool = True  # Start the consumer inside the API process

    # CORS (comma-separated list of allowed origins)
    cors_origins: str = "*"

    # Queue timing (milliseconds)
    debounce_delay_ms: int = 3 * 60 * 1000
    retry_delay_ms: int = 10 * 60 * 1000
    max_attempts: int = 3
    concurrency: int = 1
    rate_limit_ms: int = 1000  # Minimum gap between job starts
    poll_interval_ms: int = 1000
    error_backoff_ms: int = 5000
    stalled_job_timeout_ms: int = 30 * 60 * 1000  # Must exceed scraper_timeout_seconds
    stalled_check_interval_ms: int = 60 * 1000
    shutdown_timeout_seconds: float = 30.0  # Grace period for running jobs on shutdown

    # Retention of finished jobs
    completed_retention_seconds: int = 24 * 3600
    completed_retention_count: int = 100
    failed_retention_seconds: int = 7 * 24 * 3600
    failed_retention_count: int = 1000

    # Scraper service (the job handler delegates to it)
    scraper_url: str = "http://localhost:4000"
    scraper_token: str = ""
    scraper_timeout_seconds: float = 900.0
    scraper_debug_mode: bool = False
    screenshot_quality: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def clear_settings_cache():
    """Clear settings cache (useful for testing)."""
    get_settings.cache_clear()
