"""Coordinator configuration using Pydantic Settings"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Coordinator settings with environment variable support"""

    model_config = SettingsConfigDict(
        env_file=Path(__file__).parent.parent / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    database_url: str = Field(..., description="PostgreSQL database URL")
    database_ssl: bool = Field(default=True, description="Require SSL for database connections")

    # Environment
    environment: str = Field(default="development", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")

    # Server Configuration
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8100, description="Server port")

    # Queue policy
    reservation_ttl_minutes: float = Field(default=15, gt=0, description="Reservation hold time")
    warning_lead_minutes: float = Field(default=5, ge=0, description="Warning before expiry")
    minimum_wait_minutes: int = Field(default=5, ge=0, description="Wait estimate for the head")
    default_max_queue_length: int = Field(default=10, ge=1, description="Fallback queue cap")
    default_average_session_minutes: int = Field(
        default=30, ge=1, description="Fallback session length for wait estimates"
    )

    # Reservation timers
    sweep_interval_seconds: float = Field(default=60.0, gt=0, description="Timer resync interval")
    timer_max_retries: int = Field(default=5, ge=1, description="Attempts per timer firing")
    timer_retry_base_seconds: float = Field(default=1.0, gt=0, description="First retry delay")
    timer_retry_max_seconds: float = Field(default=60.0, gt=0, description="Retry delay cap")

    # Notifications
    notify_channel: str = Field(
        default="queue_events", description="PostgreSQL NOTIFY channel for queue events"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is a valid logging level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            logger.warning(f"Invalid log level '{v}', defaulting to INFO")
            return "INFO"
        return v_upper

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def is_development(self) -> bool:
        return self.environment.lower() == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()  # type: ignore[call-arg]
