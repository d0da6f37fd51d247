"""
Shared fixtures for the payment lifecycle tests
"""

import pytest

from consult_payments.config import PaymentSettings
from consult_payments.fsm.manager import PaymentStateManager
from consult_payments.services.appointment_payment_service import AppointmentPaymentService

from .fakes import FakeProcessor, FakeRedisClient


@pytest.fixture
def settings():
    """Settings isolated from the environment and any .env file"""
    return PaymentSettings(
        _env_file=None,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        LOCK_BLOCKING_TIMEOUT_SECONDS=2,
        AUTO_CAPTURE_ON_COMPLETE=False,
        ENABLE_RECONCILIATION_WORKER=False,
    )


@pytest.fixture
def fake_redis():
    return FakeRedisClient()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def manager(fake_redis, settings):
    return PaymentStateManager(redis=fake_redis, settings=settings)


@pytest.fixture
def service(processor, manager, settings):
    return AppointmentPaymentService(processor=processor, manager=manager, settings=settings)
