"""
Payment FSM Manager - Core orchestration for payment state management.

This module provides the PaymentStateManager class that orchestrates all state operations:
- Record loading/saving with optimistic locking (CAS)
- State transition validation against VALID_TRANSITIONS
- Per-appointment mutual exclusion (distributed lock)
- Idempotency records for caller tokens and webhook deduplication
- Audit history of superseded attempts

The manager never talks to the payment processor; side effects live in
services.appointment_payment_service.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from redis.exceptions import LockError

from ..config import PaymentSettings, get_settings
from ..exceptions import ConcurrentUpdateError, PaymentBusyError
from .constants import (
    DELIVERY_KEY,
    HISTORY_KEY,
    IDEMPOTENCY_KEY,
    LOCK_KEY,
    PAYMENT_KEY,
    PaymentOperation,
    PaymentState,
    VALID_TRANSITIONS,
    WEBHOOK_KEY,
)
from .logger import log_duplicate_request, log_race_condition, log_state_transition
from .metrics import (
    record_duplicate_request,
    record_lock_contention,
    record_race_condition,
    record_state_transition,
)
from .models import AppointmentPayment, IdempotencyRecord, ServiceDelivery, utcnow
from .redis_client import redis_client

logger = logging.getLogger(__name__)


class InvalidTransitionError(Exception):
    """
    Raised when an invalid state transition is attempted.

    Example:
        >>> # CAPTURED is a terminal state
        >>> raise InvalidTransitionError("Invalid transition: captured -> cancelled")
    """
    pass


class PaymentStateManager:
    """
    Core payment FSM orchestration layer.

    All updates work on deep copies; callers transition a copy and then save
    it. Saves use CAS on ``version`` and fail loudly on conflict, because a
    conflict after a processor call must never be papered over by a retry.

    Usage:
        manager = PaymentStateManager()

        async with manager.lock("42"):
            payment = await manager.load_payment("42")
            payment = manager.transition(payment, PaymentState.CAPTURED, trigger="capture",
                                         resolved_at=utcnow())
            payment = await manager.save_payment(payment)
    """

    def __init__(self, redis=None, settings: Optional[PaymentSettings] = None):
        """
        Initialize the manager.

        Args:
            redis: Storage client (defaults to the redis_client singleton)
            settings: Payment settings (defaults to get_settings())
        """
        self.redis = redis or redis_client
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def load_payment(self, appointment_id: str) -> Optional[AppointmentPayment]:
        """
        Load the current payment record for an appointment.

        Returns:
            The record, or None if the appointment has no payment yet
        """
        data = await self.redis.get(PAYMENT_KEY.format(appointment_id=appointment_id))
        if not data:
            return None

        payment = AppointmentPayment.model_validate_json(data)
        logger.debug(
            f"Loaded payment for appointment {appointment_id}: "
            f"state={payment.state.value}, version={payment.version}"
        )
        return payment

    async def save_payment(self, payment: AppointmentPayment) -> AppointmentPayment:
        """
        Save a payment record with Compare-And-Set.

        Args:
            payment: Record carrying the version it was loaded with

        Returns:
            The stored record (version incremented)

        Raises:
            ValueError: If the record violates an invariant
            ConcurrentUpdateError: If another writer saved first
        """
        payment.check_invariants()

        new_payment = payment.model_copy(deep=True)
        new_payment.version += 1
        new_payment.updated_at = utcnow()

        success = await self.redis.cas_set(
            key=PAYMENT_KEY.format(appointment_id=payment.appointment_id),
            expected_version=payment.version,
            new_value=new_payment.model_dump_json(),
            member=payment.appointment_id
        )

        if not success:
            record_race_condition()
            log_race_condition(
                appointment_id=payment.appointment_id,
                state=payment.state.value,
                expected_version=payment.version
            )
            raise ConcurrentUpdateError(payment.appointment_id, payment.version)

        logger.debug(
            f"Saved payment for appointment {payment.appointment_id}: "
            f"version {payment.version} -> {new_payment.version}, "
            f"state={new_payment.state.value}"
        )
        return new_payment

    async def archive_payment(self, payment: AppointmentPayment) -> None:
        """Append a superseded terminal record to the appointment's audit history."""
        await self.redis.append_history(
            HISTORY_KEY.format(appointment_id=payment.appointment_id),
            payment.model_dump_json()
        )
        logger.info(
            f"Archived payment attempt {payment.attempt} for appointment "
            f"{payment.appointment_id} ({payment.state.value})"
        )

    async def load_history(self, appointment_id: str) -> List[AppointmentPayment]:
        rows = await self.redis.get_history(HISTORY_KEY.format(appointment_id=appointment_id))
        return [AppointmentPayment.model_validate_json(row) for row in rows]

    async def list_by_state(self, state: PaymentState) -> List[AppointmentPayment]:
        """
        Load every record currently indexed under a state.

        Index entries whose record moved on in the meantime are skipped.
        """
        payments = []
        for appointment_id in sorted(await self.redis.state_members(state.value)):
            payment = await self.load_payment(appointment_id)
            if payment and payment.state == state:
                payments.append(payment)
        return payments

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def validate_transition(self, from_state: PaymentState, to_state: PaymentState) -> None:
        """
        Validate that a state transition is allowed.

        Raises:
            InvalidTransitionError: If transition is not allowed

        Example:
            >>> manager.validate_transition(PaymentState.AUTHORIZED, PaymentState.CAPTURED)
            >>> manager.validate_transition(PaymentState.CAPTURED, PaymentState.CANCELLED)
            InvalidTransitionError: Invalid transition: captured -> cancelled
        """
        valid_targets = VALID_TRANSITIONS.get(from_state, [])

        if to_state not in valid_targets:
            raise InvalidTransitionError(
                f"Invalid transition: {from_state.value} -> {to_state.value}"
            )

    def transition(
        self,
        payment: AppointmentPayment,
        new_state: PaymentState,
        trigger: str = "",
        **changes
    ) -> AppointmentPayment:
        """
        Transition to a new state with validation and metrics.

        Returns a new record with the state and the given field changes
        applied. Does NOT mutate the input or save it.

        Args:
            payment: Current record
            new_state: Target state
            trigger: Operation or event causing the transition (for logging)
            **changes: Other fields to set on the new record

        Raises:
            InvalidTransitionError: If transition is not allowed
            ValueError: If ``changes`` tries to rewrite the amount
        """
        start_time = time.time()

        self.validate_transition(payment.state, new_state)
        if "amount" in changes and changes["amount"] != payment.amount:
            raise ValueError("amount is immutable once authorization is requested")

        updated = payment.model_copy(deep=True)
        updated.state = new_state
        for field, value in changes.items():
            setattr(updated, field, value)

        duration_seconds = time.time() - start_time
        record_state_transition(
            from_state=payment.state.value,
            to_state=new_state.value,
            duration_seconds=duration_seconds
        )
        log_state_transition(
            appointment_id=payment.appointment_id,
            patient_id=payment.patient_id,
            from_state=payment.state.value,
            to_state=new_state.value,
            trigger=trigger,
            duration_ms=duration_seconds * 1000
        )

        return updated

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lock(self, appointment_id: str) -> AsyncIterator[None]:
        """
        Serialize all read-modify-write work for one appointment.

        Raises:
            PaymentBusyError: If the lock is not acquired in time
        """
        lock = self.redis.lock(
            LOCK_KEY.format(appointment_id=appointment_id),
            timeout=self.settings.LOCK_TIMEOUT_SECONDS,
            blocking_timeout=self.settings.LOCK_BLOCKING_TIMEOUT_SECONDS
        )

        try:
            acquired = await lock.acquire()
        except LockError as e:
            logger.warning(f"Lock error for appointment {appointment_id}: {e}")
            acquired = False

        if not acquired:
            record_lock_contention()
            raise PaymentBusyError(appointment_id)

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lock outlived its timeout; the CAS version check still guards the save
                logger.warning(f"Lock for appointment {appointment_id} expired before release: {e}")

    # ------------------------------------------------------------------
    # Idempotency
    # ------------------------------------------------------------------

    async def check_idempotency(
        self,
        operation: PaymentOperation,
        appointment_id: str,
        key: Optional[str]
    ) -> Optional[AppointmentPayment]:
        """
        Return the cached result of a previous call with the same token.

        Returns:
            The payment snapshot stored for the token, or None if unseen
        """
        if not key:
            return None

        data = await self.redis.get(IDEMPOTENCY_KEY.format(
            operation=operation.value, appointment_id=appointment_id, key=key
        ))
        if not data:
            return None

        record = IdempotencyRecord.model_validate_json(data)
        record_duplicate_request(operation.value, "idempotency_key")
        log_duplicate_request(
            appointment_id=appointment_id,
            operation=operation.value,
            state=record.payment.state.value,
            reason="idempotency_key"
        )
        return record.payment

    async def cache_result(
        self,
        operation: PaymentOperation,
        key: Optional[str],
        payment: AppointmentPayment
    ) -> None:
        """Store the result of a state-changing call under the caller's token."""
        if not key:
            return

        record = IdempotencyRecord(
            key=key,
            operation=operation,
            appointment_id=payment.appointment_id,
            payment=payment
        )
        await self.redis.set(
            IDEMPOTENCY_KEY.format(
                operation=operation.value, appointment_id=payment.appointment_id, key=key
            ),
            record.model_dump_json(),
            ttl=self.settings.IDEMPOTENCY_TTL_SECONDS
        )

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """
        Remember a processor event id.

        Returns:
            True the first time an event id is seen, False for redeliveries
        """
        return await self.redis.set_if_absent(
            WEBHOOK_KEY.format(event_id=event_id),
            utcnow().isoformat(),
            ttl=self.settings.IDEMPOTENCY_TTL_SECONDS
        )

    async def forget_webhook(self, event_id: str) -> None:
        """Drop an event marker so the processor's redelivery is handled again."""
        await self.redis.delete(WEBHOOK_KEY.format(event_id=event_id))

    # ------------------------------------------------------------------
    # Service delivery
    # ------------------------------------------------------------------

    async def save_delivery(self, delivery: ServiceDelivery) -> None:
        await self.redis.set(
            DELIVERY_KEY.format(appointment_id=delivery.appointment_id),
            delivery.model_dump_json()
        )

    async def load_delivery(self, appointment_id: str) -> Optional[ServiceDelivery]:
        data = await self.redis.get(DELIVERY_KEY.format(appointment_id=appointment_id))
        if not data:
            return None
        return ServiceDelivery.model_validate_json(data)
