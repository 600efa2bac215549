from decimal import Decimal
from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "store-service"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./store.db"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800

    # Auth
    # Placeholder keeps local/test runs working; real deployments override via env.
    AUTH_JWT_SECRET: str = "test-jwt-secret"
    AUTH_JWT_ALGORITHM: str = "HS256"

    # Redis (arq worker + rate limiter storage)
    REDIS_URL: str = "redis://localhost:6379/0"
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # Microservices URLs
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"

    # Store
    STORE_CURRENCY: str = "eur"
    TAX_RATE: Decimal = Decimal("0.21")
    CASHBACK_RATE: Decimal = Decimal("0.05")
    RESERVATION_TTL_MINUTES: int = 30
    RESERVATION_SWEEP_MINUTES: int = 5
    WALLET_EPSILON: Decimal = Decimal("0.01")

    # Payment gateway
    PAYMENT_GATEWAY: Literal["stripe", "fake"] = "fake"
    STRIPE_API_BASE: str = "https://api.stripe.com/v1"
    STRIPE_SECRET_KEY: str = "sk_test_placeholder"
    STRIPE_WEBHOOK_SECRET: str = "whsec_test_placeholder"
    STRIPE_WEBHOOK_TOLERANCE_SECONDS: int = 300

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
