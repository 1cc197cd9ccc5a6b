from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from datetime import tzinfo, timezone

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Shared
    APP_ENV: str = "dev"
    APP_PORT: int = 8000
    APP_TIMEZONE: str = "Asia/Bangkok"
    DATABASE_URL: str = Field(validation_alias=AliasChoices("DATABASE_URL", "POSTGRES_URL"))
    REDIS_URL: str = "redis://localhost:6379/0"

    # Admin API
    ADMIN_KEY: Optional[str] = None
    ADMIN_AUTH_WINDOW_SECONDS: int = 300
    ADMIN_AUTH_MAX_FAILURES: int = 20
    # Set when a reverse proxy in front of the app owns X-Forwarded-For.
    ADMIN_TRUST_FORWARDED_FOR: bool = False

    # Tasks
    TASK_CODE_MAX_ATTEMPTS: int = 25
    TASK_LIST_DEFAULT_LIMIT: int = 200
    TASK_LIST_CHAT_LIMIT: int = 50

    # LINE Messaging API
    LINE_CHANNEL_SECRET: Optional[str] = None
    LINE_CHANNEL_ACCESS_TOKEN: Optional[str] = None
    LINE_API_BASE: str = "https://api.line.me"
    LINE_REPLY_TIMEOUT_SECONDS: int = 10

    # Google Calendar (service account)
    GOOGLE_CLIENT_EMAIL: Optional[str] = None
    GOOGLE_PRIVATE_KEY: Optional[str] = None
    GCAL_CALENDAR_ID: str = "primary"
    GCAL_IMPORT_COLOR_ID: str = "4"
    GCAL_TIMEOUT_SECONDS: float = 30.0

    # Intent provider for the "ai" chat command
    LLM_API_KEY: Optional[str] = None
    LLM_API_BASE_URL: str = "https://api.openai.com/v1"
    LLM_MODEL_INTENT: str = "gpt-4.1-mini"
    LLM_TIMEOUT_SECONDS: int = 20
    LLM_MAX_RETRIES: int = 1
    LLM_RETRY_BACKOFF_SECONDS: float = 1.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True)

    @property
    def async_database_url(self) -> str:
        url = self.DATABASE_URL
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return url

    @property
    def google_private_key(self) -> str:
        # Keys pasted into env files usually carry literal "\n" sequences.
        return (self.GOOGLE_PRIVATE_KEY or "").replace("\\n", "\n")

    @property
    def app_tz(self) -> tzinfo:
        return resolve_timezone(self.APP_TIMEZONE)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    tz_name = (name or "").strip() or "UTC"
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return timezone.utc


settings = Settings()
