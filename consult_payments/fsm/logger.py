"""
Payment Structured Logging Module

Provides privacy-preserving structured logging for payment lifecycle events:
- JSON-formatted logs for easy parsing by log aggregators
- Patient ID hashing
- Payment method reference masking
- Event-based logging with consistent structure

All logs include:
- Timestamp (ISO 8601 UTC)
- Event type
- Appointment ID
- Hashed patient ID (when known)
- Payment state
- Relevant context
"""

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

logger = logging.getLogger("payments")

# ==============================================================================
# PRIVACY UTILITIES
# ==============================================================================


def hash_patient_id(patient_id: str) -> str:
    """
    Hash patient ID for privacy.

    Uses SHA-256 and truncates to 16 characters so log lines can be
    correlated without exposing the identifier.

    Example:
        >>> len(hash_patient_id("patient_7"))
        16
    """
    return hashlib.sha256(patient_id.encode()).hexdigest()[:16]


def mask_reference(value: Optional[str]) -> Optional[str]:
    """
    Mask a payment method reference, keeping its prefix and last 4 characters.

    Example:
        >>> mask_reference("pm_1NvXyZabcd1234")
        'pm_***1234'
    """
    if not value:
        return value
    prefix = value.split('_', 1)[0] + '_' if '_' in value else ''
    return f"{prefix}***{value[-4:]}"


# ==============================================================================
# CORE LOGGING FUNCTION
# ==============================================================================


def log_payment_event(
    event_type: str,
    appointment_id: str,
    state: Optional[str],
    patient_id: Optional[str] = None,
    error: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
):
    """
    Log payment event with structured JSON.

    This is the base logging function used by all other payment logging functions.

    Args:
        event_type: Type of event (e.g., "state_transition", "processor_call")
        appointment_id: Appointment identifier
        state: Payment state at the time of the event
        patient_id: Patient identifier (will be hashed)
        error: Error message if event failed (optional)
        extra: Additional metadata (optional)
    """
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "appointment_id": appointment_id,
        "patient_id_hash": hash_patient_id(patient_id) if patient_id else None,
        "state": state,
        "error": error,
        **(extra or {})
    }

    if error:
        logger.error(json.dumps(log_data, default=str))
    else:
        logger.info(json.dumps(log_data, default=str))


# ==============================================================================
# EVENT-SPECIFIC LOGGING FUNCTIONS
# ==============================================================================


def log_state_transition(
    appointment_id: str,
    patient_id: str,
    from_state: str,
    to_state: str,
    trigger: str,
    duration_ms: float
):
    """
    Log state transition event.

    Example:
        >>> log_state_transition(
        ...     appointment_id="42",
        ...     patient_id="patient_7",
        ...     from_state="authorized",
        ...     to_state="captured",
        ...     trigger="capture",
        ...     duration_ms=1.3
        ... )
    """
    log_payment_event(
        event_type="state_transition",
        appointment_id=appointment_id,
        patient_id=patient_id,
        state=to_state,
        extra={
            "from_state": from_state,
            "to_state": to_state,
            "trigger": trigger,
            "duration_ms": round(duration_ms, 2)
        }
    )


def log_processor_call(
    appointment_id: str,
    operation: str,
    outcome: str,
    duration_ms: float,
    external_reference_id: Optional[str] = None,
    payment_method_ref: Optional[str] = None,
    error: Optional[str] = None
):
    """Log one call to the payment processor."""
    log_payment_event(
        event_type="processor_call",
        appointment_id=appointment_id,
        state=None,
        error=error,
        extra={
            "operation": operation,
            "outcome": outcome,
            "external_reference_id": external_reference_id,
            "payment_method": mask_reference(payment_method_ref),
            "duration_ms": round(duration_ms, 2)
        }
    )


def log_duplicate_request(
    appointment_id: str,
    operation: str,
    state: str,
    reason: str
):
    """Log a state-changing request answered without side effects."""
    log_payment_event(
        event_type="duplicate_request",
        appointment_id=appointment_id,
        state=state,
        extra={
            "operation": operation,
            "reason": reason
        }
    )


def log_race_condition(
    appointment_id: str,
    state: str,
    expected_version: int
):
    """Log a CAS version conflict."""
    log_payment_event(
        event_type="race_condition",
        appointment_id=appointment_id,
        state=state,
        error=f"CAS conflict at version {expected_version}",
        extra={"expected_version": expected_version}
    )


def log_operator_alert(
    appointment_id: str,
    kind: str,
    state: str,
    detail: str,
    patient_id: Optional[str] = None
):
    """
    Log an alert that needs operator attention.

    Alert delivery (paging, email) is handled by whatever consumes the
    ``payments`` log stream; this only emits the event.

    Example:
        >>> log_operator_alert(
        ...     appointment_id="42",
        ...     kind="capture_failed",
        ...     state="failed",
        ...     detail="charge_expired_for_capture"
        ... )
    """
    log_payment_event(
        event_type="operator_alert",
        appointment_id=appointment_id,
        patient_id=patient_id,
        state=state,
        error=detail,
        extra={"alert_kind": kind}
    )
