from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./mafia_insight.db"
    gomafia_base_url: str = "https://gomafia.pro"

    # Sync job
    sync_batch_size: int = 100
    sync_max_retries: int = 3
    sync_retry_delay: int = 1000  # milliseconds, doubled per attempt
    sync_cron_schedule: str = "0 0 * * *"  # daily at midnight UTC
    sync_type: str = "INCREMENTAL"
    sync_enabled: bool = True
    skipped_retention_days: int = 30

    # Scraper
    scraper_headless: bool = True
    scraper_rate_limit_ms: int = 2000

    # Admin API bearer tokens (JSON lists in env, e.g. ADMIN_API_TOKENS='["..."]')
    admin_api_tokens: List[str] = []
    user_api_tokens: List[str] = []

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
