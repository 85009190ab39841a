"""
Application configuration management
Loads environment variables and provides type-safe configuration access
for the settlement API and the background worker.
"""

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal


def get_env_file() -> str | None:
    """
    Determine which .env file to use (if any).
    Priority: .env.production > .env > None (cloud env vars only)
    """
    if Path(".env.production").exists():
        return ".env.production"
    elif Path(".env").exists():
        return ".env"
    return None


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    The same settings drive both processes:
    - API server: admin triggers, health reporting, in-process scheduler
    - Worker (python -m chartvolt.worker): scheduler loops only
    """

    model_config = SettingsConfigDict(
        env_file=get_env_file(),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Database
    DATABASE_URL: str

    # Redis (price cache + notification/XP channels)
    REDIS_URL: str

    # Environment
    ENVIRONMENT: Literal["development", "staging", "production"] = "production"
    DEBUG: bool = False

    # Scheduler cadences (seconds)
    SCHEDULER_ENABLED: bool = True
    SETTLEMENT_POLL_SECONDS: float = 60
    MARGIN_CHECK_SECONDS: float = 60

    # Margin thresholds (percent of used margin); must satisfy liquidation < call < warning
    MARGIN_WARNING_LEVEL: float = 150
    MARGIN_CALL_LEVEL: float = 100
    MARGIN_LIQUIDATION_LEVEL: float = 50
    MARK_PRICE_CONVENTION: Literal["exit_side", "mid"] = "exit_side"

    # Settlement policy
    CHALLENGE_TIE_POLICY: Literal["refund", "split_pot"] = "refund"
    DEFAULT_MIN_PARTICIPANTS: int = 2

    # External call timeouts (seconds)
    PRICE_FETCH_TIMEOUT_SECONDS: float = 5
    EFFECT_TIMEOUT_SECONDS: float = 3

    # Pub/sub channels consumed by the notification and XP services
    NOTIFICATION_CHANNEL: str = "notifications"
    XP_CHANNEL: str = "xp_events"

    # XP awards
    XP_COMPETITION_WIN: int = 500
    XP_COMPETITION_PODIUM: int = 250
    XP_COMPETITION_PARTICIPATION: int = 50
    XP_CHALLENGE_WIN: int = 100

    # Admin endpoints (disabled when no token is configured)
    ADMIN_API_TOKEN: str | None = None
    RATE_LIMIT_ADMIN: str = "10/minute"


# Global settings instance
settings = Settings()
