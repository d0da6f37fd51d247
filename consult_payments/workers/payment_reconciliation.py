"""
Payment Reconciliation Worker

Periodic sweep that brings open payments in line with the processor:
- expires authorized holds that outlived the processor's hold window
- resolves captures/releases whose outcome was lost to a timeout
- fails authorizations the processor never acknowledged
- flags delivered consultations whose hold is still uncaptured
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..fsm.constants import PaymentState
from ..fsm.metrics import record_reconciliation_run
from ..fsm.models import utcnow
from ..services.appointment_payment_service import (
    AppointmentPaymentService,
    ReconciliationOutcome,
)

logger = logging.getLogger(__name__)

# States a sweep looks at; terminal records never change again
RECONCILED_STATES = (PaymentState.AUTHORIZED, PaymentState.PENDING_AUTHORIZATION)

OUTCOME_STATS = {
    ReconciliationOutcome.EXPIRED: "expired",
    ReconciliationOutcome.RESOLVED: "resolved",
    ReconciliationOutcome.FLAGGED: "flagged",
}


class PaymentReconciliationWorker:
    """
    Runs the reconciliation sweep on an interval.
    """

    def __init__(
        self,
        service: AppointmentPaymentService,
        run_interval_minutes: Optional[int] = None
    ):
        """
        Initialize the reconciliation worker.

        Args:
            service: Payment service whose records are reconciled
            run_interval_minutes: Sweep interval (defaults to RECONCILIATION_INTERVAL_MINUTES)
        """
        self.service = service
        self.run_interval_minutes = (
            run_interval_minutes or service.settings.RECONCILIATION_INTERVAL_MINUTES
        )
        self.scheduler = AsyncIOScheduler()
        self.is_running = False
        self.last_run: Optional[datetime] = None

        logger.info(
            f"Initialized PaymentReconciliationWorker with "
            f"{self.run_interval_minutes} minute interval"
        )

    async def run_reconciliation(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Reconcile every open payment once.

        A failure on one record is counted and the sweep moves on.

        Returns:
            Dictionary with sweep statistics
        """
        start = utcnow()
        now = now or start
        self.last_run = start
        logger.info("Starting payment reconciliation run")

        stats = {
            "examined": 0,
            "expired": 0,
            "resolved": 0,
            "flagged": 0,
            "errors": 0,
            "start_time": start.isoformat(),
        }

        for state in RECONCILED_STATES:
            for payment in await self.service.manager.list_by_state(state):
                stats["examined"] += 1
                try:
                    outcome = await self.service.reconcile(payment.appointment_id, now=now)
                except Exception as e:
                    stats["errors"] += 1
                    logger.error(
                        f"Error reconciling payment for appointment "
                        f"{payment.appointment_id}: {e}"
                    )
                    continue

                if outcome in OUTCOME_STATS:
                    stats[OUTCOME_STATS[outcome]] += 1

        stats["duration_seconds"] = (utcnow() - start).total_seconds()
        record_reconciliation_run("success" if stats["errors"] == 0 else "partial")

        logger.info(
            f"Payment reconciliation complete: examined={stats['examined']}, "
            f"expired={stats['expired']}, resolved={stats['resolved']}, "
            f"flagged={stats['flagged']}, errors={stats['errors']}"
        )
        return stats

    async def _scheduled_run(self) -> None:
        try:
            await self.run_reconciliation()
        except Exception as e:
            record_reconciliation_run("error")
            logger.error(f"Payment reconciliation run failed: {e}")

    def start(self):
        """
        Start the scheduled sweep. Must be called from a running event loop.
        """
        if self.is_running:
            logger.warning("Payment reconciliation worker already running")
            return

        self.scheduler.add_job(
            self._scheduled_run,
            trigger=IntervalTrigger(minutes=self.run_interval_minutes),
            id='payment_reconciliation_job',
            name='Appointment Payment Reconciliation',
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1
        )

        # Catch up on anything left open while the service was down
        self.scheduler.add_job(
            self._scheduled_run,
            trigger='date',
            run_date=datetime.now() + timedelta(seconds=10),
            id='payment_reconciliation_startup',
            name='Appointment Payment Reconciliation (Startup)'
        )

        self.scheduler.start()
        self.is_running = True
        logger.info(
            f"Payment reconciliation worker started "
            f"(runs every {self.run_interval_minutes} minutes)"
        )

    def stop(self):
        """
        Stop the scheduled sweep.
        """
        if self.is_running:
            self.scheduler.shutdown(wait=False)
            self.is_running = False
            logger.info("Payment reconciliation worker stopped")

    async def run_once(self) -> Dict[str, Any]:
        """
        Run the sweep once (for the admin endpoint or manual execution).

        Returns:
            Sweep statistics
        """
        return await self.run_reconciliation()
