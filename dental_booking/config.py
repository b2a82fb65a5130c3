"""Configuration management for the dental booking engine."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///./dental_booking.db",
        description="SQLAlchemy async DSN (postgresql+psycopg://... in production)",
    )
    database_echo: bool = Field(
        default=False,
        description="Echo SQL statements to the log",
    )

    # API Settings
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_key: str = Field(
        default="",
        description="API key for authenticating requests",
    )

    # CORS
    cors_origins: list[str] = Field(
        default=["http://localhost:3000", "http://localhost:8080"],
        description="Allowed CORS origins",
    )

    # Booking rules
    history_limit: int = Field(
        default=10,
        ge=1,
        description="Number of recent completed appointments scanned for day-based rules",
    )
    booking_retry_attempts: int = Field(
        default=1,
        ge=0,
        description="Automatic retries of a booking that lost a concurrent-write race",
    )
    reject_past_start: bool = Field(
        default=True,
        description="Reject bookings and delays whose start time is in the past",
    )
    clinic_open_hour: int = Field(default=8, ge=0, le=23)
    clinic_close_hour: int = Field(default=20, ge=1, le=24)

    # Debug
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode (exposes error details in responses)",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
