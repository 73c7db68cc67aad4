from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "campaign-tracker"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "CAMPAIGN_TRACKER_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/campaign_tracker",
        validation_alias=AliasChoices("DATABASE_URL", "CAMPAIGN_TRACKER_DATABASE_URL"),
    )
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "CAMPAIGN_TRACKER_REDIS_URL"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "CAMPAIGN_TRACKER_CELERY_ENABLED"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "CAMPAIGN_TRACKER_SCHEDULER_ENABLED"))

    # Scrape execution
    scrape_concurrency: int = Field(default=5, validation_alias=AliasChoices("SCRAPE_CONCURRENCY", "SCRAPING_CONCURRENCY"))
    scrape_max_attempts: int = Field(default=3, validation_alias=AliasChoices("SCRAPE_MAX_ATTEMPTS", "SCRAPING_MAX_RETRIES"))
    scrape_retry_base_delay_sec: float = Field(default=1.0, validation_alias=AliasChoices("SCRAPE_RETRY_BASE_DELAY_SEC", "CAMPAIGN_TRACKER_SCRAPE_RETRY_BASE_DELAY_SEC"))
    scrape_retry_max_delay_sec: float = Field(default=30.0, validation_alias=AliasChoices("SCRAPE_RETRY_MAX_DELAY_SEC", "CAMPAIGN_TRACKER_SCRAPE_RETRY_MAX_DELAY_SEC"))
    scrape_fetch_timeout_sec: float = Field(default=30.0, validation_alias=AliasChoices("SCRAPE_FETCH_TIMEOUT_SEC", "SCRAPING_TIMEOUT_SEC"))

    # Live tracker / watchdog
    live_tracker_enabled: bool = Field(default=True, validation_alias=AliasChoices("LIVE_TRACKER_ENABLED", "CAMPAIGN_TRACKER_LIVE_TRACKER_ENABLED"))
    live_tracker_interval_minutes: int = Field(default=10, validation_alias=AliasChoices("LIVE_TRACKER_INTERVAL_MINUTES", "CAMPAIGN_TRACKER_LIVE_TRACKER_INTERVAL_MINUTES"))
    watchdog_enabled: bool = Field(default=True, validation_alias=AliasChoices("WATCHDOG_ENABLED", "CAMPAIGN_TRACKER_WATCHDOG_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("WATCHDOG_INTERVAL_MINUTES", "CAMPAIGN_TRACKER_WATCHDOG_INTERVAL_MINUTES"))
    stuck_job_minutes: int = Field(default=60, validation_alias=AliasChoices("STUCK_JOB_MINUTES", "CAMPAIGN_TRACKER_STUCK_JOB_MINUTES"))

    # Cross-process fetch limits
    fetch_redis_semaphore_enabled: bool = Field(default=False, validation_alias=AliasChoices("FETCH_REDIS_SEMAPHORE_ENABLED", "CAMPAIGN_TRACKER_FETCH_REDIS_SEMAPHORE_ENABLED"))
    fetch_max_per_platform: int = Field(default=3, validation_alias=AliasChoices("FETCH_MAX_PER_PLATFORM", "CAMPAIGN_TRACKER_FETCH_MAX_PER_PLATFORM"))
    redis_semaphore_ttl_sec: int = Field(default=300, validation_alias=AliasChoices("REDIS_SEMAPHORE_TTL_SEC", "CAMPAIGN_TRACKER_REDIS_SEMAPHORE_TTL_SEC"))
    semaphore_wait_timeout_sec: int = Field(default=120, validation_alias=AliasChoices("SEMAPHORE_WAIT_TIMEOUT_SEC", "CAMPAIGN_TRACKER_SEMAPHORE_WAIT_TIMEOUT_SEC"))

    # Metric fetcher
    apify_token: str | None = Field(default=None, validation_alias=AliasChoices("APIFY_TOKEN", "APIFY_API_TOKEN"))
    circuit_breaker_failure_threshold: int = Field(default=5, validation_alias=AliasChoices("CIRCUIT_BREAKER_FAILURE_THRESHOLD", "CAMPAIGN_TRACKER_CIRCUIT_BREAKER_FAILURE_THRESHOLD"))
    circuit_breaker_reset_sec: float = Field(default=60.0, validation_alias=AliasChoices("CIRCUIT_BREAKER_RESET_SEC", "CAMPAIGN_TRACKER_CIRCUIT_BREAKER_RESET_SEC"))

    # Alerts
    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "CAMPAIGN_TRACKER_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "CAMPAIGN_TRACKER_TELEGRAM_CHAT_ID"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
