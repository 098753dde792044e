from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./billing.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Billing Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # CORS - accepts JSON string, comma-separated, or list
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Document numbering
    INVOICE_NUMBER_PREFIX: str = "INV"
    ESTIMATE_NUMBER_PREFIX: str = "EST"
    DOCUMENT_NUMBER_START: int = 10001

    # Document defaults
    DEFAULT_PAYMENT_TERMS_DAYS: int = 30
    DEFAULT_ESTIMATE_VALIDITY_DAYS: int = 30
    DEFAULT_CURRENCY: str = "USD"

    # Payment reminder cadence
    REMINDER_COOLDOWN_DAYS: int = 3  # Minimum days between two reminders
    MAX_REMINDERS: int = 5  # Reminders per invoice before we stop
    DUE_SOON_DAYS: int = 7  # Window for the "due soon" sweep

    # Public payment links
    PUBLIC_BASE_URL: str = "http://localhost:8000"  # Host clients reach the payment pages on

    # Payment processor webhooks
    PROCESSOR_WEBHOOK_SECRET: Optional[str] = None  # Signatures not verified when unset
    PROCESSOR_WEBHOOK_TOLERANCE_SECONDS: int = 300

    # Background scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "UTC"
    RECURRING_INVOICE_HOUR: int = 6
    DUE_SOON_REMINDER_HOUR: int = 9
    OVERDUE_REMINDER_HOUR: int = 10
    JOB_MAX_CONCURRENT_ACCOUNTS: int = 5

    @field_validator('CORS_ORIGINS', mode='before')
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(',')]
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return self.CORS_ORIGINS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
