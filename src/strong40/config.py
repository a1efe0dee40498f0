import os

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

# Local .env for development; real environment variables win
load_dotenv(override=False)


def _bool(name: str, default: bool) -> bool:
    """
    Helper to parse boolean environment variables.
    Accepts: 1, true, yes, on (case-insensitive).
    """
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _norm_db_url(url: str | None) -> str | None:
    """
    Normalize database URL to use async drivers for SQLAlchemy.

    Ensures ``postgres`` URLs use ``asyncpg`` and plain ``sqlite`` URLs use
    ``aiosqlite``. URLs already specifying an async driver are returned as-is.
    """
    if not url:
        return None
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    if url.startswith("sqlite://"):
        url = "sqlite+aiosqlite://" + url[len("sqlite://") :]
    return url


class Config(BaseSettings):
    """
    Application configuration loaded from environment variables.
    Uses pydantic for validation and parsing.
    """

    DATABASE_URL: str = Field("sqlite+aiosqlite:///./strong40.db", description="Database URL")
    PERSIST_MAX_RETRIES: int = Field(
        3, ge=1, description="Attempts per exercise commit before giving up"
    )
    PERSIST_RETRY_DELAY: float = Field(
        0.1, ge=0, description="Base delay in seconds for exponential backoff"
    )
    WEIGHT_UNIT: str = Field("lbs", description="Unit shown in session summaries")
    LOG_LEVEL: str = Field("INFO", description="Root log level")
    ALERT_WEBHOOK_URL: str | None = Field(None, description="Webhook receiving error logs")

    # Feature flags
    FF_ERROR_ALERTS: bool = Field(
        default_factory=lambda: _bool("FF_ERROR_ALERTS", True),
        description="Forward error logs to the alert webhook",
    )

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL environment variable is required")
        return _norm_db_url(v)

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown LOG_LEVEL: {v}")
        return level


SETTINGS = Config()  # pyright: ignore[reportCallIssue]
