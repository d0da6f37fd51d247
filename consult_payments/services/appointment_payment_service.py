"""
Appointment Payment Service

Ties a scheduled consultation to a held card payment:
- Authorization: places a hold for the consultation price when the patient schedules
- Capture: settles the hold once the consultation has been delivered
- Cancellation: releases the hold when the appointment is called off
- Confirmation: applies verified processor callbacks
- Reconciliation: re-queries the processor for records whose outcome is unknown

Every state change runs under the appointment's lock and is saved with CAS,
so two concurrent calls for one appointment never both reach the processor.
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from ..config import PaymentSettings, get_settings
from ..exceptions import (
    CaptureFailedError,
    DuplicateAuthorizationError,
    InvalidAmountError,
    NotAuthorizedError,
    PaymentError,
    PaymentNotFoundError,
    ProcessorDeclineError,
    ProcessorError,
    ProcessorUnavailableError,
    ReleaseFailedError,
    ServiceNotDeliveredError,
)
from ..fsm.constants import (
    AUTHORIZATION_UNCONFIRMED_REASON,
    HOLD_EXPIRED_REASON,
    DeliverySource,
    PaymentOperation,
    PaymentState,
)
from ..fsm.logger import (
    log_duplicate_request,
    log_operator_alert,
    log_payment_event,
    log_processor_call,
)
from ..fsm.manager import PaymentStateManager
from ..fsm.metrics import (
    record_duplicate_request,
    record_operator_alert,
    record_processor_call,
)
from ..fsm.models import AppointmentPayment, ProcessorEvent, ServiceDelivery, utcnow
from .payment_processor import HoldResult, HoldStatus, PaymentProcessor

logger = logging.getLogger(__name__)


class ReconciliationOutcome(str, Enum):
    UNCHANGED = "unchanged"
    EXPIRED = "expired"
    RESOLVED = "resolved"
    FLAGGED = "flagged"


class DeliveryPolicy:
    """
    Decides whether a completion signal proves the consultation happened.

    A doctor's explicit confirmation always counts. A video-call end signal
    counts once the call lasted at least ``min_duration_minutes``.
    """

    def __init__(self, min_duration_minutes: int = 1):
        if min_duration_minutes < 1:
            raise ValueError("min_duration_minutes must be at least 1")
        self.min_duration_minutes = min_duration_minutes

    def is_delivered(self, duration_minutes: int, source: DeliverySource) -> bool:
        if source == DeliverySource.DOCTOR_CONFIRMATION:
            return True
        return duration_minutes >= self.min_duration_minutes


class AppointmentPaymentService:
    """
    Payment lifecycle operations for consultations.

    Usage:
        service = AppointmentPaymentService(processor=StripePaymentProcessor())

        payment = await service.request_authorization(
            "42", 15000, "pm_card_visa", patient_id="p_7", doctor_id="d_3"
        )
        await service.record_service_delivery("42", 32, DeliverySource.VIDEO_CALL)
        payment = await service.capture("42")
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        manager: Optional[PaymentStateManager] = None,
        settings: Optional[PaymentSettings] = None,
        delivery_policy: Optional[DeliveryPolicy] = None
    ):
        self.settings = settings or get_settings()
        self.processor = processor
        self.manager = manager or PaymentStateManager(settings=self.settings)
        self.delivery_policy = delivery_policy or DeliveryPolicy(
            self.settings.MIN_CONSULTATION_MINUTES
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_state(self, appointment_id: str) -> AppointmentPayment:
        """
        Fetch the current payment for an appointment.

        An authorized hold found past its window is moved to FAILED here.

        Raises:
            PaymentNotFoundError: If the appointment has no payment
        """
        payment = await self._load_or_raise(appointment_id)
        if not payment.is_hold_expired(self.settings.hold_window):
            return payment

        async with self.manager.lock(appointment_id):
            payment = await self._load_or_raise(appointment_id)
            return await self._expire_if_stale(payment)

    async def get_delivery(self, appointment_id: str) -> Optional[ServiceDelivery]:
        return await self.manager.load_delivery(appointment_id)

    # ------------------------------------------------------------------
    # Authorization Initiator
    # ------------------------------------------------------------------

    async def request_authorization(
        self,
        appointment_id: str,
        amount: int,
        payment_method_ref: str,
        patient_id: str,
        doctor_id: str,
        is_emergency: bool = False,
        customer_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> AppointmentPayment:
        """
        Place a hold for the consultation price.

        Returns the record after the processor answered: AUTHORIZED,
        PENDING_AUTHORIZATION (processor will confirm asynchronously) or
        FAILED with ``failure_reason`` and ``retryable`` set.

        Raises:
            InvalidAmountError: If amount is not a positive integer
            DuplicateAuthorizationError: If an open or captured payment exists
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise InvalidAmountError(amount, appointment_id)

        cached = await self.manager.check_idempotency(
            PaymentOperation.AUTHORIZE, appointment_id, idempotency_key
        )
        if cached:
            return cached

        async with self.manager.lock(appointment_id):
            # A concurrent call with the same token may have finished while we waited
            cached = await self.manager.check_idempotency(
                PaymentOperation.AUTHORIZE, appointment_id, idempotency_key
            )
            if cached:
                return cached

            existing = await self.manager.load_payment(appointment_id)
            attempt, version = 1, 0

            if existing:
                existing = await self._expire_if_stale(existing)
                if not existing.is_terminal or existing.state == PaymentState.CAPTURED:
                    raise DuplicateAuthorizationError(appointment_id, existing.state.value)

                # Same processor key after a transient failure: a hold that
                # succeeded server-side is returned instead of duplicated.
                # The processor rejects a reused key with other parameters.
                reuse_key = (
                    existing.state == PaymentState.FAILED
                    and existing.retryable
                    and existing.amount == amount
                    and existing.payment_method_ref == payment_method_ref
                    and existing.currency == self.settings.PAYMENT_CURRENCY
                )
                attempt = existing.attempt if reuse_key else existing.attempt + 1
                version = existing.version
                await self.manager.archive_payment(existing)

            draft = AppointmentPayment(
                appointment_id=appointment_id,
                patient_id=patient_id,
                doctor_id=doctor_id,
                amount=amount,
                currency=self.settings.PAYMENT_CURRENCY,
                payment_method_ref=payment_method_ref,
                is_emergency=is_emergency,
                attempt=attempt,
                version=version,
            )
            payment = self.manager.transition(
                draft, PaymentState.PENDING_AUTHORIZATION, trigger="request_authorization"
            )
            payment = await self.manager.save_payment(payment)
            payment = await self._create_hold(payment, customer_ref)
            await self.manager.cache_result(PaymentOperation.AUTHORIZE, idempotency_key, payment)

        return payment

    async def _create_hold(
        self,
        payment: AppointmentPayment,
        customer_ref: Optional[str]
    ) -> AppointmentPayment:
        metadata = {
            "appointment_id": payment.appointment_id,
            "patient_id": payment.patient_id,
            "doctor_id": payment.doctor_id,
            "is_emergency": str(payment.is_emergency).lower(),
            "attempt": str(payment.attempt),
        }
        start = time.time()

        try:
            hold = await self.processor.create_hold(
                amount=payment.amount,
                currency=payment.currency,
                payment_method_ref=payment.payment_method_ref,
                metadata=metadata,
                idempotency_key=f"hold:{payment.appointment_id}:{payment.attempt}",
                customer_ref=customer_ref,
            )
        except ProcessorError as e:
            outcome = "declined" if isinstance(e, ProcessorDeclineError) else (
                "unavailable" if e.retryable else "error"
            )
            self._record_call(payment, "create_hold", outcome, start, error=e.message)
            failed = self.manager.transition(
                payment,
                PaymentState.FAILED,
                trigger=f"create_hold_{outcome}",
                failure_reason=e.message,
                retryable=e.retryable,
                resolved_at=utcnow(),
            )
            return await self.manager.save_payment(failed)

        self._record_call(payment, "create_hold", hold.status.value, start,
                          reference_id=hold.reference_id)
        return await self._apply_hold_result(payment, hold, trigger="create_hold")

    # ------------------------------------------------------------------
    # Capture Trigger
    # ------------------------------------------------------------------

    async def record_service_delivery(
        self,
        appointment_id: str,
        duration_minutes: int,
        source: DeliverySource = DeliverySource.VIDEO_CALL
    ) -> ServiceDelivery:
        """
        Store a "consultation completed" signal.

        A delivered signal is never downgraded by a later, shorter one. With
        AUTO_CAPTURE_ON_COMPLETE enabled, a delivered signal captures an
        authorized hold right away.
        """
        if duration_minutes < 0:
            raise ValueError("duration_minutes must not be negative")

        delivered = self.delivery_policy.is_delivered(duration_minutes, source)

        async with self.manager.lock(appointment_id):
            existing = await self.manager.load_delivery(appointment_id)
            if existing and existing.delivered and not delivered:
                logger.info(
                    f"Ignoring non-delivering {source.value} signal for appointment "
                    f"{appointment_id}: already delivered"
                )
                return existing

            delivery = ServiceDelivery(
                appointment_id=appointment_id,
                duration_minutes=duration_minutes,
                source=source,
                delivered=delivered,
            )
            await self.manager.save_delivery(delivery)

        log_payment_event(
            event_type="service_delivery",
            appointment_id=appointment_id,
            state=None,
            extra={
                "source": source.value,
                "duration_minutes": duration_minutes,
                "delivered": delivered,
            }
        )

        if delivered and self.settings.AUTO_CAPTURE_ON_COMPLETE:
            await self._auto_capture(appointment_id)

        return delivery

    async def _auto_capture(self, appointment_id: str) -> None:
        payment = await self.manager.load_payment(appointment_id)
        if not payment or payment.state != PaymentState.AUTHORIZED:
            return
        try:
            await self.capture(appointment_id)
        except PaymentError as e:
            # Capture failures are already persisted and alerted by capture()
            logger.warning(f"Auto-capture for appointment {appointment_id} failed: {e.code}")

    async def capture(
        self,
        appointment_id: str,
        idempotency_key: Optional[str] = None
    ) -> AppointmentPayment:
        """
        Settle an authorized hold after the consultation was delivered.

        Calling again on a CAPTURED record returns it without contacting the
        processor.

        Raises:
            PaymentNotFoundError: If the appointment has no payment
            NotAuthorizedError: If the payment is not AUTHORIZED
            ServiceNotDeliveredError: If the consultation was not delivered
            CaptureFailedError: If the processor refused (record is FAILED)
            ProcessorUnavailableError: If the outcome is unknown (record stays
                AUTHORIZED and is queued for reconciliation)
        """
        cached = await self.manager.check_idempotency(
            PaymentOperation.CAPTURE, appointment_id, idempotency_key
        )
        if cached:
            return cached

        async with self.manager.lock(appointment_id):
            cached = await self.manager.check_idempotency(
                PaymentOperation.CAPTURE, appointment_id, idempotency_key
            )
            if cached:
                return cached

            payment = await self._load_or_raise(appointment_id)
            payment = await self._expire_if_stale(payment)

            if payment.state == PaymentState.CAPTURED:
                self._duplicate(payment, PaymentOperation.CAPTURE.value, "already_captured")
                return payment
            if payment.state != PaymentState.AUTHORIZED:
                raise NotAuthorizedError(appointment_id, payment.state.value)

            delivery = await self.manager.load_delivery(appointment_id)
            if not delivery or not delivery.delivered:
                raise ServiceNotDeliveredError(appointment_id)

            start = time.time()
            try:
                hold = await self.processor.capture_hold(
                    payment.external_reference_id,
                    idempotency_key=f"capture:{appointment_id}:{payment.attempt}",
                )
            except ProcessorUnavailableError as e:
                self._record_call(payment, "capture_hold", "unavailable", start, error=e.message)
                await self._update(payment, reconciliation_pending=True)
                e.appointment_id = appointment_id
                raise
            except ProcessorError as e:
                self._record_call(payment, "capture_hold", "error", start, error=e.message)
                failed = self.manager.transition(
                    payment,
                    PaymentState.FAILED,
                    trigger="capture_failed",
                    failure_reason=e.message,
                    retryable=False,
                    resolved_at=utcnow(),
                )
                failed = await self.manager.save_payment(failed)
                self._alert(failed, "capture_failed", e.message)
                raise CaptureFailedError(appointment_id, e.message)

            self._record_call(payment, "capture_hold", hold.status.value, start,
                              reference_id=hold.reference_id)

            if hold.status != HoldStatus.CAPTURED:
                await self._update(payment, reconciliation_pending=True)
                raise ProcessorUnavailableError(
                    f"Capture for appointment {appointment_id} not confirmed "
                    f"(processor status {hold.status.value})"
                )

            captured = self.manager.transition(
                payment,
                PaymentState.CAPTURED,
                trigger="capture",
                resolved_at=utcnow(),
                reconciliation_pending=False,
            )
            captured = await self.manager.save_payment(captured)
            await self.manager.cache_result(PaymentOperation.CAPTURE, idempotency_key, captured)

        return captured

    # ------------------------------------------------------------------
    # Cancellation / Release Handler
    # ------------------------------------------------------------------

    async def cancel(
        self,
        appointment_id: str,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None
    ) -> AppointmentPayment:
        """
        Release a hold without charging the patient.

        Allowed for AUTHORIZED records, and for PENDING_AUTHORIZATION ones
        when the processor can release in-flight holds. Idempotent on
        CANCELLED.

        Raises:
            PaymentNotFoundError: If the appointment has no payment
            NotAuthorizedError: If the payment cannot be released
            ReleaseFailedError: If the processor refused (record unchanged)
        """
        cached = await self.manager.check_idempotency(
            PaymentOperation.CANCEL, appointment_id, idempotency_key
        )
        if cached:
            return cached

        async with self.manager.lock(appointment_id):
            cached = await self.manager.check_idempotency(
                PaymentOperation.CANCEL, appointment_id, idempotency_key
            )
            if cached:
                return cached

            payment = await self._load_or_raise(appointment_id)
            payment = await self._expire_if_stale(payment)

            if payment.state == PaymentState.CANCELLED:
                self._duplicate(payment, PaymentOperation.CANCEL.value, "already_cancelled")
                return payment

            if payment.state == PaymentState.AUTHORIZED:
                reference_id = payment.external_reference_id
            elif (
                payment.state == PaymentState.PENDING_AUTHORIZATION
                and self.processor.supports_pending_release
                and payment.pending_reference_id
            ):
                reference_id = payment.pending_reference_id
            else:
                raise NotAuthorizedError(appointment_id, payment.state.value)

            start = time.time()
            try:
                hold = await self.processor.release_hold(
                    reference_id,
                    idempotency_key=f"release:{appointment_id}:{payment.attempt}",
                )
            except ProcessorError as e:
                self._record_call(payment, "release_hold", "error", start, error=e.message)
                self._alert(payment, "release_failed", e.message)
                error = ReleaseFailedError(appointment_id, e.message)
                error.retryable = e.retryable
                raise error

            self._record_call(payment, "release_hold", hold.status.value, start,
                              reference_id=hold.reference_id)

            if hold.status != HoldStatus.RELEASED:
                detail = f"processor reported {hold.status.value} after release"
                self._alert(payment, "release_failed", detail)
                raise ReleaseFailedError(appointment_id, detail)

            cancelled = self.manager.transition(
                payment,
                PaymentState.CANCELLED,
                trigger="cancel",
                cancellation_reason=reason or "cancelled",
                resolved_at=utcnow(),
                reconciliation_pending=False,
            )
            cancelled = await self.manager.save_payment(cancelled)
            await self.manager.cache_result(PaymentOperation.CANCEL, idempotency_key, cancelled)

        return cancelled

    # ------------------------------------------------------------------
    # Processor confirmations
    # ------------------------------------------------------------------

    async def handle_processor_event(self, event: ProcessorEvent) -> Optional[AppointmentPayment]:
        """
        Apply a verified processor callback.

        Redeliveries of the same event id are acknowledged without effect.
        If handling fails the event marker is dropped so the processor's
        retry is processed again.

        Returns:
            The (possibly unchanged) payment, or None if the event was a
            duplicate or does not belong to a known payment
        """
        if not await self.manager.mark_webhook_processed(event.event_id):
            record_duplicate_request("webhook", "event_redelivery")
            log_duplicate_request(
                appointment_id=event.appointment_id or "unknown",
                operation="webhook",
                state=event.status,
                reason="event_redelivery"
            )
            return None

        if not event.appointment_id:
            logger.warning(f"Processor event {event.event_id} carries no appointment id")
            return None

        try:
            async with self.manager.lock(event.appointment_id):
                payment = await self.manager.load_payment(event.appointment_id)
                if payment is None:
                    logger.warning(
                        f"Processor event {event.event_id} for unknown appointment "
                        f"{event.appointment_id}"
                    )
                    return None

                known_refs = {payment.external_reference_id, payment.pending_reference_id}
                awaiting_first_ack = (
                    payment.state == PaymentState.PENDING_AUTHORIZATION
                    and payment.pending_reference_id is None
                )
                if event.external_reference_id not in known_refs and not awaiting_first_ack:
                    logger.warning(
                        f"Processor event {event.event_id} references hold "
                        f"{event.external_reference_id}, not the current attempt of "
                        f"appointment {event.appointment_id}"
                    )
                    return payment

                hold = HoldResult(
                    reference_id=event.external_reference_id,
                    status=HoldStatus(event.status),
                    failure_reason=event.failure_reason,
                )
                return await self._apply_hold_result(payment, hold, trigger="webhook")
        except Exception:
            await self.manager.forget_webhook(event.event_id)
            raise

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        appointment_id: str,
        now: Optional[datetime] = None
    ) -> ReconciliationOutcome:
        """
        Bring one record in line with the processor's authoritative state.

        Never captures on its own: a hold that is still capturable long after
        the consultation is flagged for operator review instead.
        """
        now = now or utcnow()
        stale_after = self.settings.reconciliation_stale_after

        async with self.manager.lock(appointment_id):
            payment = await self.manager.load_payment(appointment_id)
            if payment is None or payment.is_terminal:
                return ReconciliationOutcome.UNCHANGED

            if payment.is_hold_expired(self.settings.hold_window, now):
                await self._expire_if_stale(payment, now)
                return ReconciliationOutcome.EXPIRED

            if payment.state == PaymentState.PENDING_AUTHORIZATION:
                if now - payment.created_at <= stale_after:
                    return ReconciliationOutcome.UNCHANGED
                if not payment.pending_reference_id:
                    failed = self.manager.transition(
                        payment,
                        PaymentState.FAILED,
                        trigger="reconciliation",
                        failure_reason=AUTHORIZATION_UNCONFIRMED_REASON,
                        retryable=True,
                        resolved_at=now,
                    )
                    await self.manager.save_payment(failed)
                    return ReconciliationOutcome.RESOLVED
                return await self._reconcile_with_processor(
                    payment, payment.pending_reference_id, flag_if_held=False
                )

            delivery = await self.manager.load_delivery(appointment_id)
            overdue = (
                delivery is not None
                and delivery.delivered
                and now - payment.authorized_at > stale_after
            )
            if not payment.reconciliation_pending and not overdue:
                return ReconciliationOutcome.UNCHANGED

            return await self._reconcile_with_processor(
                payment, payment.external_reference_id, flag_if_held=overdue
            )

    async def _reconcile_with_processor(
        self,
        payment: AppointmentPayment,
        reference_id: str,
        flag_if_held: bool
    ) -> ReconciliationOutcome:
        start = time.time()
        hold = await self.processor.retrieve_hold(reference_id)
        self._record_call(payment, "retrieve_hold", hold.status.value, start,
                          reference_id=hold.reference_id)

        updated = await self._apply_hold_result(payment, hold, trigger="reconciliation")
        if updated.state != payment.state:
            logger.info(
                f"Reconciled appointment {payment.appointment_id}: "
                f"{payment.state.value} -> {updated.state.value}"
            )
            return ReconciliationOutcome.RESOLVED

        changes: Dict[str, object] = {}
        if updated.reconciliation_pending:
            changes["reconciliation_pending"] = False
        flag = flag_if_held and updated.state == PaymentState.AUTHORIZED and not updated.flagged_for_review
        if flag:
            changes["flagged_for_review"] = True
        if changes:
            updated = await self._update(updated, **changes)
        if flag:
            self._alert(updated, "capture_overdue",
                        "hold still capturable after the consultation was delivered")
            return ReconciliationOutcome.FLAGGED
        return ReconciliationOutcome.UNCHANGED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load_or_raise(self, appointment_id: str) -> AppointmentPayment:
        payment = await self.manager.load_payment(appointment_id)
        if payment is None:
            raise PaymentNotFoundError(appointment_id)
        return payment

    async def _expire_if_stale(
        self,
        payment: AppointmentPayment,
        now: Optional[datetime] = None
    ) -> AppointmentPayment:
        """Move an authorized hold past its window to FAILED. Caller holds the lock."""
        if not payment.is_hold_expired(self.settings.hold_window, now):
            return payment

        failed = self.manager.transition(
            payment,
            PaymentState.FAILED,
            trigger="hold_expired",
            failure_reason=HOLD_EXPIRED_REASON,
            retryable=False,
            resolved_at=now or utcnow(),
        )
        failed = await self.manager.save_payment(failed)
        self._alert(failed, "hold_expired",
                    f"hold {failed.external_reference_id} expired before capture")
        return failed

    async def _apply_hold_result(
        self,
        payment: AppointmentPayment,
        hold: HoldResult,
        trigger: str
    ) -> AppointmentPayment:
        """
        Apply a processor-reported hold status to the record.

        Statuses that do not move the record forward (including anything
        reported for a terminal record) leave it unchanged.
        """
        now = utcnow()

        if payment.state == PaymentState.PENDING_AUTHORIZATION:
            if hold.status == HoldStatus.AUTHORIZED:
                authorized = self.manager.transition(
                    payment,
                    PaymentState.AUTHORIZED,
                    trigger=trigger,
                    external_reference_id=hold.reference_id,
                    pending_reference_id=None,
                    authorized_at=now,
                )
                return await self.manager.save_payment(authorized)
            if hold.status == HoldStatus.FAILED:
                failed = self.manager.transition(
                    payment,
                    PaymentState.FAILED,
                    trigger=trigger,
                    failure_reason=hold.failure_reason or "authorization declined",
                    retryable=False,
                    pending_reference_id=hold.reference_id,
                    resolved_at=now,
                )
                return await self.manager.save_payment(failed)
            if hold.status == HoldStatus.RELEASED:
                cancelled = self.manager.transition(
                    payment,
                    PaymentState.CANCELLED,
                    trigger=trigger,
                    cancellation_reason="released_by_processor",
                    pending_reference_id=hold.reference_id,
                    resolved_at=now,
                )
                return await self.manager.save_payment(cancelled)
            if hold.status == HoldStatus.PENDING:
                if payment.pending_reference_id != hold.reference_id:
                    return await self._update(payment, pending_reference_id=hold.reference_id)
                return payment
            # Captured without ever being acknowledged as a hold
            self._alert(payment, "unexpected_capture",
                        f"processor reports {hold.reference_id} captured while pending")
            return await self._update(payment, flagged_for_review=True)

        if payment.state == PaymentState.AUTHORIZED:
            if hold.status == HoldStatus.CAPTURED:
                captured = self.manager.transition(
                    payment,
                    PaymentState.CAPTURED,
                    trigger=trigger,
                    resolved_at=now,
                    reconciliation_pending=False,
                )
                return await self.manager.save_payment(captured)
            if hold.status == HoldStatus.RELEASED:
                cancelled = self.manager.transition(
                    payment,
                    PaymentState.CANCELLED,
                    trigger=trigger,
                    cancellation_reason="released_by_processor",
                    resolved_at=now,
                    reconciliation_pending=False,
                )
                return await self.manager.save_payment(cancelled)
            if hold.status == HoldStatus.FAILED:
                failed = self.manager.transition(
                    payment,
                    PaymentState.FAILED,
                    trigger=trigger,
                    failure_reason=hold.failure_reason or "hold failed at processor",
                    retryable=False,
                    resolved_at=now,
                )
                failed = await self.manager.save_payment(failed)
                self._alert(failed, "hold_failed", failed.failure_reason)
                return failed

        if trigger == "webhook":
            self._duplicate(payment, trigger, "no_state_change")
        return payment

    async def _update(self, payment: AppointmentPayment, **changes) -> AppointmentPayment:
        """Save field changes that do not move the state."""
        updated = payment.model_copy(deep=True)
        for field, value in changes.items():
            setattr(updated, field, value)
        return await self.manager.save_payment(updated)

    def _duplicate(self, payment: AppointmentPayment, operation: str, reason: str) -> None:
        record_duplicate_request(operation, reason)
        log_duplicate_request(
            appointment_id=payment.appointment_id,
            operation=operation,
            state=payment.state.value,
            reason=reason
        )

    def _alert(self, payment: AppointmentPayment, kind: str, detail: str) -> None:
        record_operator_alert(kind)
        log_operator_alert(
            appointment_id=payment.appointment_id,
            kind=kind,
            state=payment.state.value,
            detail=detail,
            patient_id=payment.patient_id
        )

    def _record_call(
        self,
        payment: AppointmentPayment,
        operation: str,
        outcome: str,
        start: float,
        reference_id: Optional[str] = None,
        error: Optional[str] = None
    ) -> None:
        duration = time.time() - start
        record_processor_call(operation, outcome, duration)
        log_processor_call(
            appointment_id=payment.appointment_id,
            operation=operation,
            outcome=outcome,
            duration_ms=duration * 1000,
            external_reference_id=reference_id,
            payment_method_ref=payment.payment_method_ref,
            error=error
        )
