"""
Application Configuration
Centralized configuration for Redis, the payment processor and the hold lifecycle
"""
from datetime import timedelta
from functools import lru_cache

from pydantic_settings import BaseSettings


class PaymentSettings(BaseSettings):
    """Environment-driven settings for the consultation payment service."""

    ENVIRONMENT: str = "development"

    # Redis (durable store for payment records; run with AOF persistence)
    REDIS_URL: str = "redis://localhost:6379"

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    PROCESSOR_TIMEOUT_SECONDS: float = 30.0
    PROCESSOR_MAX_NETWORK_RETRIES: int = 2

    # Hold lifecycle
    PAYMENT_CURRENCY: str = "brl"
    HOLD_WINDOW_DAYS: int = 7
    MIN_CONSULTATION_MINUTES: int = 1
    AUTO_CAPTURE_ON_COMPLETE: bool = False

    # Per-appointment lock
    LOCK_TIMEOUT_SECONDS: int = 60
    LOCK_BLOCKING_TIMEOUT_SECONDS: int = 10

    # Idempotency window for caller-supplied keys and webhook event ids
    IDEMPOTENCY_TTL_SECONDS: int = 86400

    # Reconciliation sweep
    ENABLE_RECONCILIATION_WORKER: bool = True
    RECONCILIATION_INTERVAL_MINUTES: int = 15
    RECONCILIATION_STALE_AFTER_HOURS: int = 24

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def hold_window(self) -> timedelta:
        return timedelta(days=self.HOLD_WINDOW_DAYS)

    @property
    def reconciliation_stale_after(self) -> timedelta:
        return timedelta(hours=self.RECONCILIATION_STALE_AFTER_HOURS)


@lru_cache
def get_settings() -> PaymentSettings:
    """
    Get the process-wide settings instance

    Returns:
        PaymentSettings: Settings loaded from the environment
    """
    return PaymentSettings()
