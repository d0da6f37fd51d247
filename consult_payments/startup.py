"""
Application startup and shutdown lifecycle management.

Handles:
- Redis connection for the payment store
- Payment processor and service construction
- Reconciliation worker start/stop
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import get_settings
from .fsm.manager import PaymentStateManager
from .fsm.redis_client import redis_client
from .services.appointment_payment_service import AppointmentPaymentService
from .services.payment_processor import StripePaymentProcessor
from .workers.payment_reconciliation import PaymentReconciliationWorker

logger = logging.getLogger(__name__)


def init_payment_service(app: FastAPI) -> AppointmentPaymentService:
    """Build the payment service and expose it on app.state."""
    settings = get_settings()
    processor = StripePaymentProcessor(settings=settings)
    manager = PaymentStateManager(redis=redis_client, settings=settings)
    service = AppointmentPaymentService(processor=processor, manager=manager, settings=settings)
    app.state.payment_service = service
    logger.info(f"✅ Payment service ready (currency={settings.PAYMENT_CURRENCY})")
    return service


def init_workers(app: FastAPI, service: AppointmentPaymentService):
    """Start the reconciliation worker unless disabled."""
    app.state.reconciliation_worker = None
    if not service.settings.ENABLE_RECONCILIATION_WORKER:
        logger.warning("⚠️ Payment reconciliation worker disabled by configuration")
        return

    worker = PaymentReconciliationWorker(service)
    worker.start()
    app.state.reconciliation_worker = worker
    logger.info("✅ Payment reconciliation worker started")


def stop_workers(app: FastAPI):
    """Stop background workers."""
    worker = getattr(app.state, "reconciliation_worker", None)
    if worker:
        worker.stop()
        logger.info("✅ Payment reconciliation worker stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle manager."""
    # === STARTUP ===
    logger.info("Starting consultation payment service...")

    # The payment store is required; fail startup if Redis is unreachable
    await redis_client.connect()

    service = init_payment_service(app)
    init_workers(app, service)

    yield

    # === SHUTDOWN ===
    logger.info("Shutting down services...")

    stop_workers(app)
    await redis_client.close()

    logger.info("Consultation payment service shutdown complete")
