"""Application configuration using Pydantic settings."""
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Telegram
    TELEGRAM_BOT_TOKEN: str = ""
    ALLOWED_USER_IDS: str = ""

    # LLM Configuration
    LLM_PROVIDER: str = "openai_compatible"  # openai, anthropic, openai_compatible
    LLM_MODEL: str = "gpt-4o-mini"
    LLM_API_KEY: str = ""
    LLM_BASE_URL: str = "https://api.openai.com/v1"
    LLM_TEMPERATURE: float = 0.7
    LLM_MAX_TOKENS: int = 1000
    LLM_TIMEOUT: float = 60.0
    MAX_RETRIES: int = 3
    RETRY_DELAY_MS: int = 1000

    # Context window
    MAX_CONTEXT_TOKENS: int = 4000
    RECENT_MESSAGE_WINDOW: int = 20
    TOKEN_ENCODING: str = "cl100k_base"  # empty = length/4 estimate only

    # Summarization
    MESSAGES_BEFORE_SUMMARY: int = 20
    KEEP_MESSAGES_AFTER_SUMMARY: int = 10

    # Usage quotas
    MAX_TOKENS_PER_USER_DAILY: int = 50000
    MAX_TOKENS_PER_USER_MONTHLY: int = 500000
    MAX_MESSAGES_PER_USER_DAILY: int = 100
    QUOTA_TIMEZONE: str = "UTC"

    # Database
    DATABASE_URL: str = "sqlite:///memobot.db"

    # Redis
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0

    # Task settings
    JOB_TIMEOUT: int = 300
    LOCK_BACKEND: str = "redis"  # redis, local
    LOCK_TIMEOUT: float = 120.0  # per lock; must stay below JOB_TIMEOUT / 2

    # Logging
    LOG_LEVEL: str = "INFO"

    # Optional API
    API_ENABLED: bool = False
    API_PORT: int = 8080

    @model_validator(mode="after")
    def lock_wait_fits_job(self) -> "Settings":
        if self.LOCK_TIMEOUT * 2 >= self.JOB_TIMEOUT:
            raise ValueError("LOCK_TIMEOUT must be less than half of JOB_TIMEOUT")
        return self

    @property
    def allowed_user_ids_list(self) -> list[int]:
        """Parse allowed user IDs into a list of integers."""
        if not self.ALLOWED_USER_IDS:
            return []
        return [
            int(uid.strip())
            for uid in self.ALLOWED_USER_IDS.split(",")
            if uid.strip()
        ]

    @property
    def redis_url(self) -> str:
        """Get Redis URL."""
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def retry_delay_seconds(self) -> float:
        """Base retry delay in seconds."""
        return self.RETRY_DELAY_MS / 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience alias
settings = get_settings()
