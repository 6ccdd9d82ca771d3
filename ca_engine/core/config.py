from pydantic_settings import BaseSettings
from typing import List, Optional
from decimal import Decimal
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Corporate Action Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Security
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    AUTH_ENABLED: bool = True

    # Database
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 10
    DATABASE_MAX_OVERFLOW: int = 20

    # Redis / Celery
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # CORS
    ALLOWED_ORIGINS: List[str] = ["*"]
    ALLOW_CREDENTIALS: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"
    SENTRY_DSN: Optional[str] = None

    # Corporate action engine
    DEFAULT_APPLIED_BY: str = "system"
    COST_BASIS_TOLERANCE: Decimal = Decimal("0.0001")  # Relative, 0.01%
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0
    ALLOW_FUTURE_EX_DATES: bool = False
    QUALIFIED_WITHHOLDING_RATE: Decimal = Decimal("0.15")
    ORDINARY_WITHHOLDING_RATE: Decimal = Decimal("0.24")

    # Scheduling
    BATCH_APPLY_SCHEDULE_HOUR: int = 19  # After US market close, UTC

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


settings = get_settings()
