"""
Application configuration management
"""

from typing import List, Optional
from pydantic_settings import BaseSettings
from pydantic import field_validator


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Vera Ticketing"
    APP_VERSION: str = "1.0.0"
    APP_ENV: str = "development"
    DEBUG: bool = False
    API_PREFIX: str = "/api/v1"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 5050

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./vera.db"

    @field_validator('DATABASE_URL')
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        if v.startswith('postgresql://'):
            v = v.replace('postgresql://', 'postgresql+asyncpg://', 1)
        elif v.startswith('sqlite://'):
            v = v.replace('sqlite://', 'sqlite+aiosqlite://', 1)
        return v

    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 40
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 15.0

    # JWT (tokens are issued by the identity service, only verified here)
    JWT_SECRET_KEY: str = "vera_dev_secret_change_me"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Paystack
    PAYSTACK_SECRET_KEY: str = ""
    PAYSTACK_BASE_URL: str = "https://api.paystack.co"
    PAYSTACK_CALLBACK_URL: str = ""
    PAYSTACK_DEV_BYPASS: Optional[bool] = None
    PAYSTACK_TIMEOUT_SECONDS: float = 15.0
    PAYMENT_CURRENCY: str = "NGN"

    # Ticketing
    TICKET_CODE_PREFIX: str = "VRA"
    TICKET_CODE_MAX_ATTEMPTS: int = 8
    MAX_TICKETS_PER_PURCHASE: int = 20
    PENDING_RESERVATION_FRESHNESS_MINUTES: int = 30
    CHECK_IN_EARLY_GRACE_HOURS: int = 3
    CHECK_IN_LATE_GRACE_HOURS: int = 8

    # Dynamic pricing defaults (events may override)
    PRICING_SENSITIVITY: float = 0.6
    PRICING_FLOOR_RATIO: float = 0.8
    PRICING_CAP_RATIO: float = 1.5

    # Resale
    RESALE_DEFAULT_MAX_MARKUP_PERCENT: int = 20
    RESALE_DEFAULT_BID_WINDOW_HOURS: int = 24
    RESALE_SWEEPER_ENABLED: bool = True
    RESALE_SWEEP_INTERVAL_SECONDS: int = 300
    RESALE_SWEEP_BATCH_SIZE: int = 200

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Monitoring
    PROMETHEUS_ENABLED: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    LOG_FILE: Optional[str] = "logs/app.log"

    @field_validator("CORS_ORIGINS", mode="before")
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @field_validator("JWT_SECRET_KEY")
    @classmethod
    def validate_jwt_secret(cls, v: str, info) -> str:
        if info.data.get("APP_ENV") == "production" and v == "vera_dev_secret_change_me":
            raise ValueError("JWT_SECRET_KEY must be set to a strong value in production")
        return v

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

    @property
    def is_testing(self) -> bool:
        return self.APP_ENV == "testing"

    @property
    def paystack_bypass_allowed(self) -> bool:
        """Whether paid tickets may be issued without a configured gateway."""
        if self.PAYSTACK_DEV_BYPASS is None:
            return not self.is_production
        return self.PAYSTACK_DEV_BYPASS

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


# Create global settings instance
settings = Settings()
