"""
Payment FSM Constants Module

This module defines enums and constants for the appointment payment state machine.
Includes payment states, delivery sources, the transition table and Redis key patterns.
"""

from enum import Enum


class PaymentState(str, Enum):
    """
    FSM states for an appointment payment.

    Happy path:
    NONE -> PENDING_AUTHORIZATION -> AUTHORIZED -> CAPTURED

    Alternative paths:
    - CANCELLED: hold released without charging the patient
    - FAILED: decline, processor error or expired hold
    """
    NONE = "none"
    PENDING_AUTHORIZATION = "pending_authorization"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    CANCELLED = "cancelled"
    FAILED = "failed"


class DeliverySource(str, Enum):
    """
    Origin of a "service delivered" signal.

    - VIDEO_CALL: the video session ended with a measured duration
    - DOCTOR_CONFIRMATION: the doctor explicitly marked the consultation done
    """
    VIDEO_CALL = "video_call"
    DOCTOR_CONFIRMATION = "doctor_confirmation"


class PaymentOperation(str, Enum):
    """State-changing operations keyed by caller idempotency tokens."""
    AUTHORIZE = "authorize"
    CAPTURE = "capture"
    CANCEL = "cancel"


# State Transition Rules
# Single authoritative table for the payment lifecycle
# Terminal states (CAPTURED, CANCELLED, FAILED) have empty transition lists
VALID_TRANSITIONS = {
    PaymentState.NONE: [
        PaymentState.PENDING_AUTHORIZATION
    ],
    PaymentState.PENDING_AUTHORIZATION: [
        PaymentState.AUTHORIZED,
        PaymentState.CANCELLED,
        PaymentState.FAILED
    ],
    PaymentState.AUTHORIZED: [
        PaymentState.CAPTURED,
        PaymentState.CANCELLED,
        PaymentState.FAILED
    ],
    PaymentState.CAPTURED: [],  # Terminal state
    PaymentState.CANCELLED: [],  # Terminal state
    PaymentState.FAILED: []  # Terminal state
}

TERMINAL_STATES = frozenset({
    PaymentState.CAPTURED,
    PaymentState.CANCELLED,
    PaymentState.FAILED,
})

# Failure reasons written by the service itself
HOLD_EXPIRED_REASON = "hold_expired"
AUTHORIZATION_UNCONFIRMED_REASON = "authorization_never_acknowledged"

# Redis Key Patterns
# payments:appointment:{appointment_id} - Current AppointmentPayment JSON (no TTL)
# payments:state:{state} - Set of appointment ids currently in {state}
# payments:history:{appointment_id} - List of archived attempts (audit)
# payments:delivery:{appointment_id} - ServiceDelivery JSON
# payments:idempotency:{operation}:{appointment_id}:{key} - IdempotencyRecord JSON
# payments:webhook:{event_id} - Processed webhook marker
# payments:lock:{appointment_id} - Per-appointment mutual exclusion
PAYMENT_KEY = "payments:appointment:{appointment_id}"
STATE_INDEX_KEY = "payments:state:{state}"
HISTORY_KEY = "payments:history:{appointment_id}"
DELIVERY_KEY = "payments:delivery:{appointment_id}"
IDEMPOTENCY_KEY = "payments:idempotency:{operation}:{appointment_id}:{key}"
WEBHOOK_KEY = "payments:webhook:{event_id}"
LOCK_KEY = "payments:lock:{appointment_id}"
