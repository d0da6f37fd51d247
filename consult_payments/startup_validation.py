"""
Startup validation for required environment variables.
Fails fast if critical configuration is missing or insecure.

Uses Pydantic Settings for centralized, testable validation.
"""
import sys
import logging

from pydantic import ValidationError, model_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class EnvironmentSettings(BaseSettings):
    """Validated environment configuration."""

    ENVIRONMENT: str = "development"

    # Stripe (required in production)
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""

    # Redis (durable payment store)
    REDIS_URL: str = "redis://localhost:6379"

    # Hold lifecycle
    HOLD_WINDOW_DAYS: int = 7
    MIN_CONSULTATION_MINUTES: int = 1

    @model_validator(mode='after')
    def validate_production(self) -> 'EnvironmentSettings':
        """Production needs live processor credentials and a remote Redis."""
        if self.ENVIRONMENT != "production":
            return self

        if not self.STRIPE_SECRET_KEY.startswith(("sk_live_", "rk_live_")):
            raise ValueError("STRIPE_SECRET_KEY must be a live key in production")
        if not self.STRIPE_WEBHOOK_SECRET.startswith("whsec_"):
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production")
        if "localhost" in self.REDIS_URL or "127.0.0.1" in self.REDIS_URL:
            raise ValueError("REDIS_URL cannot point to localhost in production")
        return self

    @model_validator(mode='after')
    def validate_hold_lifecycle(self) -> 'EnvironmentSettings':
        if self.HOLD_WINDOW_DAYS < 1:
            raise ValueError("HOLD_WINDOW_DAYS must be at least 1")
        if self.MIN_CONSULTATION_MINUTES < 1:
            raise ValueError("MIN_CONSULTATION_MINUTES must be at least 1")
        return self

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",  # Allow extra env vars without validation errors
    }


def validate_environment() -> bool:
    """
    Validate environment configuration at startup.
    Returns True if valid, logs errors and returns False otherwise.

    Note: Never log actual secret values, only variable names.
    """
    try:
        EnvironmentSettings()
        logger.info("Environment validation passed")
        return True
    except ValidationError as e:
        logger.error(f"Startup validation failed: {e}")
        return False


def validate_or_exit():
    """Validate environment or exit with error code."""
    if not validate_environment():
        logger.critical("Application cannot start with invalid configuration")
        sys.exit(1)
