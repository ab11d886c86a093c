import logging
from functools import lru_cache
from typing import Optional
from urllib.parse import quote_plus

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REQUIRED_DB_VARS = ("DB_HOST", "DB_USER", "DB_PASSWORD", "DB_NAME")


class Settings(BaseSettings):
    """Ingestion settings loaded from environment or .env file."""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    APP_NAME: str = "TrafficWatch"
    VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Watcher
    NPM_LOG_DIR: str = "/data/logs"
    WATCH_INTERVAL: int = 1000  # ms
    BATCH_SIZE: int = 100
    STATS_INTERVAL: int = 300000  # ms
    MAX_LOG_AGE_DAYS: int = 7
    MAX_CONCURRENT_FILES: int = 5

    # Database configuration
    DATABASE_URL: Optional[str] = None
    DB_HOST: Optional[str] = None
    DB_PORT: int = 3306
    DB_USER: Optional[str] = None
    DB_PASSWORD: Optional[str] = None
    DB_NAME: Optional[str] = None
    DB_POOL_SIZE: int = 30
    RETRY_BASE_DELAY_MS: int = 500

    # Reverse-proxy manager API (read-only)
    NPM_API_URL: Optional[str] = None
    NPM_USERNAME: Optional[str] = None
    NPM_PASSWORD: Optional[str] = None
    NPM_DOMAIN_CACHE_SECONDS: int = 60
    STATUS_CHECK_TIMEOUT: float = 10.0

    # Screening thresholds
    RATE_LIMIT_MAX_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_MINUTES: int = 1
    ANOMALY_SAMPLE_RATE: float = 0.1

    @field_validator(
        "WATCH_INTERVAL", "BATCH_SIZE", "STATS_INTERVAL", "MAX_LOG_AGE_DAYS",
        "MAX_CONCURRENT_FILES", "DB_POOL_SIZE", "RATE_LIMIT_MAX_REQUESTS",
        "RATE_LIMIT_WINDOW_MINUTES",
    )
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("ANOMALY_SAMPLE_RATE")
    @classmethod
    def _probability(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("must be between 0 and 1")
        return v

    @model_validator(mode="after")
    def _require_database(self):
        if self.DATABASE_URL:
            return self
        missing = [name for name in REQUIRED_DB_VARS if not getattr(self, name)]
        if missing:
            raise ValueError(
                "missing required database settings: " + ", ".join(missing)
            )
        return self

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"mysql+pymysql://{quote_plus(self.DB_USER)}:{quote_plus(self.DB_PASSWORD)}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}?charset=utf8mb4"
        )

    @property
    def npm_enabled(self) -> bool:
        return bool(self.NPM_API_URL)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
