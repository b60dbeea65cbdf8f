"""Configuration management for the Progress Engine."""

from typing import List
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
import json


class Settings(BaseSettings):
    """Application settings with validation."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "Learning Progress Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = Field(default="development", pattern="^(development|staging|production|test)$")
    SERVICE_NAME: str = "progress-engine"
    SERVICE_PORT: int = 8004

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./progress.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_ECHO: bool = False

    # Redis Cache
    REDIS_URL: str = "redis://localhost:6379"

    # JWT
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_MINUTES: int = 60

    # XP policy
    XP_ARTICLE_BASE: int = 10
    XP_ARTICLE_LONG: int = 20
    XP_ARTICLE_VERY_LONG: int = 30
    ARTICLE_LONG_WORDS: int = 1000
    ARTICLE_VERY_LONG_WORDS: int = 2000
    XP_COMMENT_POSTED: int = 5
    COMMENT_XP_DAILY_CAP: int = 50
    XP_QUIZ_PASSED: int = 25
    XP_PER_COURSE_ARTICLE: int = 10

    # Streaks are counted in calendar days of this zone
    STREAK_TIMEZONE: str = "UTC"

    # Reconciliation
    RECONCILE_CONCURRENCY: int = Field(default=8, ge=1)
    RECONCILE_INTERVAL_SECONDS: int = Field(default=0, ge=0)  # 0 disables the scheduler

    # Store access
    STORE_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    PROGRESS_UPDATE_MAX_RETRIES: int = Field(default=5, ge=1)

    # Leaderboard
    LEADERBOARD_SIZE: int = 100
    LEADERBOARD_CACHE_TTL: int = 300  # 5 minutes

    # Logging
    LOG_LEVEL: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    LOG_FORMAT: str = Field(default="json", pattern="^(json|plain)$")

    # CORS
    CORS_ORIGINS: List[str] = Field(default_factory=list)

    @field_validator("CORS_ORIGINS", mode="before")
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v

    # Monitoring
    ENABLE_METRICS: bool = True

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.ENVIRONMENT == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
