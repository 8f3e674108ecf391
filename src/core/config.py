"""
Application settings for the scrape queue service.

Values are read from the environment (or a local .env file) via
pydantic-settings. Queue tunables are passed into the queue components
as constructor defaults so tests can override them without patching.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./scrape_queue.db"
    DEBUG: bool = False
    API_KEY: str = ""
    LOG_LEVEL: str = "INFO"

    # Worker loop
    SCRAPE_JOB_DELAY_SECONDS: float = 0.5  # pause between jobs, be nice to BGG
    SCRAPE_MAX_RETRIES: int = 3
    SCRAPE_RETRY_BASE_DELAY_SECONDS: float = 2.0
    SCRAPE_RETRY_MAX_DELAY_SECONDS: float = 300.0

    # Status / retention
    SCRAPE_JOB_RETENTION_DAYS: int = 7
    SCRAPE_RECENT_JOBS_LIMIT: int = 20

    # BoardGameGeek XML API v2
    BGG_API_BASE: str = "https://boardgamegeek.com/xmlapi2"
    BGG_API_TOKEN: str = ""
    SCRAPE_REQUEST_TIMEOUT: int = 30


settings = Settings()
