"""
Configuration settings for the Order Lifecycle backend.
Loads from environment variables with validation.
"""

from typing import List

from pydantic_settings import BaseSettings
from functools import lru_cache


_PLACEHOLDER_SECRETS = {"", "changeme", "change-me", "secret"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Brew Orders"
    DEBUG: bool = False
    FRONTEND_URL: str = "http://localhost:3000"
    SECRET_KEY: str

    # Database
    DATABASE_URL: str
    REDIS_URL: str = "redis://localhost:6379"

    # Loyalty
    POINTS_PESOS_PER_POINT: int = 100  # 1 point for every 100 spent
    POINTS_EXPIRY_DAYS: int = 365
    POINTS_EXPIRY_WARNING_DAYS: int = 30
    REFUND_POINTS_ON_CANCEL: bool = True

    # Payments that are verified out-of-band and need an attached proof
    PROOF_REQUIRED_PAYMENT_METHODS: List[str] = ["GCASH"]

    # Transaction / side-effect bounds
    LOCK_TIMEOUT_SECONDS: float = 5.0
    NOTIFY_TIMEOUT_SECONDS: float = 3.0

    ORDER_ID_DISPLAY_LENGTH: int = 8

    def validate_production_settings(self):
        """Validate critical settings for production deployment."""
        if not self.DEBUG and self.SECRET_KEY.strip().lower() in _PLACEHOLDER_SECRETS:
            raise ValueError(
                "SECRET_KEY must be set to a real value in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings loader with production validation."""
    settings = Settings()
    if not settings.DEBUG:
        settings.validate_production_settings()
    return settings
