"""Application configuration."""
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Tuple


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./afip_monitor.db"

    # Application
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    TIMEZONE: str = "America/Argentina/Buenos_Aires"

    # AFIP data source
    AFIP_BASE_URL: str = "https://ws.afip.gov.ar"
    AFIP_TIMEOUT_SECONDS: float = 30.0
    AFIP_RETRY_ATTEMPTS: int = 3
    AFIP_RETRY_DELAY_SECONDS: float = 1.0
    AFIP_MOCK_MODE: bool = False

    # Escalation
    ESCALATION_MAX_LEVELS: int = 3
    ESCALATION_INTERVALS_MINUTES: List[int] = [60, 180, 360]
    ESCALATION_CRITICAL_DELAY_MINUTES: int = 30
    ESCALATION_HIGH_DELAY_MINUTES: int = 120
    ESCALATION_MEDIUM_DELAY_MINUTES: int = 60
    ESCALATION_AFTER_HOURS_GRACE_MINUTES: int = 30
    ESCALATION_STATE_RETENTION_DAYS: int = 7

    # Working hours (Monday = 0)
    WORKING_DAYS: List[int] = [0, 1, 2, 3, 4]
    WORKING_HOURS_START: int = 8
    WORKING_HOURS_END: int = 18

    # Circuit breaker and cache
    CIRCUIT_BREAKER_THRESHOLD: int = 5
    CIRCUIT_BREAKER_COOLDOWN_SECONDS: int = 300
    CACHE_TTL_SECONDS: int = 300

    # Alerts
    ALERT_DEDUP_WINDOW_HOURS: int = 24
    ALERT_RETENTION_DAYS: int = 30
    ALERT_MIN_CHANGE_SEVERITY: str = "high"

    # Polling: (minimum risk score, interval minutes), highest first
    POLLING_TIERS: List[Tuple[float, int]] = [(0.85, 15), (0.70, 60), (0.40, 360)]
    POLLING_DEFAULT_MINUTES: int = 1440
    POLLING_INTERVAL_CHANGE_THRESHOLD_MINUTES: int = 30
    POLLING_DAILY_HOUR: int = 8

    # Risk scoring windows
    HISTORY_MONTHS: int = 12
    PREDICTIVE_MONTHS: int = 6

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )


settings = Settings()
