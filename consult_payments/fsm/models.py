"""
Payment FSM Pydantic Models

This module defines type-safe data models for the appointment payment state machine.
All models use Pydantic V2 for validation and serialization.

Models:
- AppointmentPayment: The payment record attached to one appointment, versioned for CAS
- ServiceDelivery: "Consultation happened" signal consumed by the capture guard
- IdempotencyRecord: Cached result of a state-changing call for a caller token
- ProcessorEvent: Normalized, already-verified processor callback
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import (
    DeliverySource,
    PaymentOperation,
    PaymentState,
    TERMINAL_STATES,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


class AppointmentPayment(BaseModel):
    """
    Payment record stored in Redis, one per appointment.

    Version tracking enables Compare-And-Set saves; ``amount`` never changes
    after the record is created.

    Attributes:
        appointment_id: Owning appointment (1:1)
        patient_id: Paying patient
        doctor_id: Consulting doctor
        amount: Minor currency units (e.g. centavos), strictly positive
        currency: ISO currency code understood by the processor
        payment_method_ref: Processor reference to the stored payment method
        state: Current lifecycle state
        external_reference_id: Processor id of the acknowledged hold
        pending_reference_id: Processor id of a hold awaiting acknowledgement
        failure_reason: Diagnostic, only in FAILED
        retryable: Whether a FAILED authorization may be retried with the same key
        cancellation_reason: Why the hold was released
        is_emergency: Emergency consultation flag from scheduling
        attempt: Hold attempt number for this appointment (starts at 1)
        reconciliation_pending: A processor call outcome is unknown
        flagged_for_review: Reconciliation found an anomaly for operators
        version: Optimistic lock version (incremented on each save)
    """
    appointment_id: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    currency: str = Field(default="brl", min_length=3, max_length=3)
    payment_method_ref: str = Field(..., min_length=1)
    state: PaymentState = PaymentState.NONE
    external_reference_id: Optional[str] = None
    pending_reference_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retryable: bool = False
    cancellation_reason: Optional[str] = None
    is_emergency: bool = False
    attempt: int = Field(default=1, ge=1)
    reconciliation_pending: bool = False
    flagged_for_review: bool = False
    version: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    authorized_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator('created_at', 'authorized_at', 'resolved_at', 'updated_at')
    @classmethod
    def validate_timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        """Ensure timestamps are timezone-aware (UTC)."""
        return _as_utc(v)

    @model_validator(mode='after')
    def validate_invariants(self) -> 'AppointmentPayment':
        self.check_invariants()
        return self

    def check_invariants(self) -> None:
        """
        Verify the record-level invariants.

        Called on construction and again by the manager before every save,
        since attribute assignment on copies is not re-validated.

        Raises:
            ValueError: If any invariant is violated
        """
        if self.state in (PaymentState.NONE, PaymentState.PENDING_AUTHORIZATION):
            if self.external_reference_id is not None:
                raise ValueError(
                    f"external_reference_id must be empty in state {self.state.value}"
                )
        if self.state in (PaymentState.AUTHORIZED, PaymentState.CAPTURED):
            if not self.external_reference_id:
                raise ValueError(
                    f"external_reference_id is required in state {self.state.value}"
                )
            if self.authorized_at is None:
                raise ValueError(f"authorized_at is required in state {self.state.value}")
        if self.authorized_at is not None and not self.external_reference_id:
            raise ValueError("an authorized hold must keep its external_reference_id")
        if self.failure_reason is not None and self.state != PaymentState.FAILED:
            raise ValueError("failure_reason is only allowed in state failed")
        if self.state in (PaymentState.CAPTURED, PaymentState.CANCELLED) and self.resolved_at is None:
            raise ValueError(f"resolved_at is required in state {self.state.value}")

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def hold_expires_at(self, hold_window: timedelta) -> Optional[datetime]:
        if self.authorized_at is None:
            return None
        return self.authorized_at + hold_window

    def is_hold_expired(self, hold_window: timedelta, now: Optional[datetime] = None) -> bool:
        """
        Check whether an authorized hold has outlived the processor's window.

        Args:
            hold_window: Processor-defined hold lifetime
            now: Reference time (defaults to current UTC time)

        Returns:
            True only for AUTHORIZED records past authorized_at + hold_window
        """
        if self.state != PaymentState.AUTHORIZED or self.authorized_at is None:
            return False
        now = now or utcnow()
        return now > self.authorized_at + hold_window

    def to_public_dict(self) -> Dict[str, Any]:
        """Serialize for API responses (payment method reference omitted)."""
        return self.model_dump(mode="json", exclude={"payment_method_ref"})

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "appointment_id": "42",
                    "patient_id": "patient_7",
                    "doctor_id": "doctor_3",
                    "amount": 15000,
                    "currency": "brl",
                    "payment_method_ref": "pm_card_visa",
                    "state": "authorized",
                    "external_reference_id": "pi_3Nabc",
                    "attempt": 1,
                    "version": 2,
                    "created_at": "2025-10-18T10:00:00Z",
                    "authorized_at": "2025-10-18T10:00:02Z",
                    "updated_at": "2025-10-18T10:00:02Z"
                }
            ]
        }
    }


class ServiceDelivery(BaseModel):
    """
    Consultation delivery signal.

    Attributes:
        appointment_id: Appointment the signal refers to
        duration_minutes: Measured call duration (0 for doctor confirmations without a call)
        source: Where the signal came from
        delivered: Result of the delivery policy for this signal
        recorded_at: UTC timestamp when the signal was stored
    """
    appointment_id: str = Field(..., min_length=1)
    duration_minutes: int = Field(default=0, ge=0)
    source: DeliverySource
    delivered: bool
    recorded_at: datetime = Field(default_factory=utcnow)

    @field_validator('recorded_at')
    @classmethod
    def validate_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)


class IdempotencyRecord(BaseModel):
    """
    Cached result of a state-changing call.

    A retried call carrying the same key for the same operation and
    appointment returns ``payment`` without any side effects.
    """
    key: str = Field(..., min_length=1)
    operation: PaymentOperation
    appointment_id: str = Field(..., min_length=1)
    payment: AppointmentPayment
    processed_at: datetime = Field(default_factory=utcnow)

    @field_validator('processed_at')
    @classmethod
    def validate_timezone_aware(cls, v: datetime) -> datetime:
        return _as_utc(v)


class ProcessorEvent(BaseModel):
    """
    Processor confirmation callback after signature verification.

    Attributes:
        event_id: Processor event id (deduplication key)
        external_reference_id: Hold the event refers to
        status: Normalized hold status (see HoldStatus)
        appointment_id: Appointment from the hold metadata, when present
        failure_reason: Processor diagnostic for failed holds
    """
    event_id: str = Field(..., min_length=1)
    external_reference_id: str = Field(..., min_length=1)
    status: str
    appointment_id: Optional[str] = None
    failure_reason: Optional[str] = None
