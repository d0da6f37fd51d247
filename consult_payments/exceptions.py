"""
Custom exceptions for the consultation payment service.

Every error carries a stable ``code`` that the API layer returns to callers,
a ``retryable`` hint and the HTTP status it maps to.
"""
from typing import Optional


class PaymentError(Exception):
    """Base class for all payment lifecycle errors."""

    code = "PaymentError"
    http_status = 400
    retryable = False

    def __init__(self, message: str, appointment_id: Optional[str] = None):
        self.message = message
        self.appointment_id = appointment_id
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "appointment_id": self.appointment_id,
        }


class InvalidAmountError(PaymentError):
    """Raised when an authorization is requested for a non-positive amount."""

    code = "InvalidAmount"

    def __init__(self, amount: int, appointment_id: Optional[str] = None):
        self.amount = amount
        super().__init__(f"Amount must be a positive integer, got {amount}", appointment_id)


class DuplicateAuthorizationError(PaymentError):
    """Raised when the appointment already has an open or settled payment."""

    code = "DuplicateAuthorization"
    http_status = 409

    def __init__(self, appointment_id: str, state: str):
        self.state = state
        super().__init__(
            f"Appointment {appointment_id} already has a payment in state {state}",
            appointment_id,
        )


class NotAuthorizedError(PaymentError):
    """Raised when capture or cancel is attempted outside the authorized state."""

    code = "NotAuthorized"
    http_status = 409

    def __init__(self, appointment_id: str, state: str):
        self.state = state
        super().__init__(
            f"Payment for appointment {appointment_id} is {state}, not authorized",
            appointment_id,
        )


class ServiceNotDeliveredError(PaymentError):
    """Raised when capture is attempted before the consultation took place."""

    code = "ServiceNotDelivered"
    http_status = 409

    def __init__(self, appointment_id: str):
        super().__init__(
            f"Consultation for appointment {appointment_id} has not been delivered",
            appointment_id,
        )


class PaymentNotFoundError(PaymentError):
    """Raised when no payment record exists for an appointment."""

    code = "NotFound"
    http_status = 404

    def __init__(self, appointment_id: str):
        super().__init__(f"No payment for appointment {appointment_id}", appointment_id)


class PaymentBusyError(PaymentError):
    """Raised when another operation holds the appointment's lock."""

    code = "PaymentBusy"
    http_status = 409
    retryable = True

    def __init__(self, appointment_id: str):
        super().__init__(
            f"Payment for appointment {appointment_id} is being modified, try again",
            appointment_id,
        )


class ConcurrentUpdateError(PaymentError):
    """Raised when a compare-and-set save loses against a concurrent writer."""

    code = "ConcurrentUpdate"
    http_status = 409
    retryable = True

    def __init__(self, appointment_id: str, expected_version: int):
        self.expected_version = expected_version
        super().__init__(
            f"Payment for appointment {appointment_id} changed concurrently "
            f"(expected version {expected_version})",
            appointment_id,
        )


class CaptureFailedError(PaymentError):
    """Raised when the processor refuses to capture an authorized hold."""

    code = "CaptureFailed"
    http_status = 502

    def __init__(self, appointment_id: str, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(
            f"Capture failed for appointment {appointment_id}: {diagnostic}",
            appointment_id,
        )


class ReleaseFailedError(PaymentError):
    """Raised when the processor refuses to release a hold."""

    code = "ReleaseFailed"
    http_status = 502

    def __init__(self, appointment_id: str, diagnostic: str):
        self.diagnostic = diagnostic
        super().__init__(
            f"Release failed for appointment {appointment_id}: {diagnostic}",
            appointment_id,
        )


class ProcessorError(PaymentError):
    """Raised for processor failures that are neither declines nor transient."""

    code = "ProcessorError"
    http_status = 502

    def __init__(self, message: str, processor_code: Optional[str] = None):
        self.processor_code = processor_code
        super().__init__(message)


class ProcessorDeclineError(ProcessorError):
    """Raised when the processor declines the payment method."""

    code = "PaymentDeclined"
    http_status = 402


class ProcessorUnavailableError(ProcessorError):
    """Raised on timeouts, connection failures, rate limits and 5xx responses."""

    code = "ProcessorUnavailable"
    http_status = 503
    retryable = True


class WebhookVerificationError(PaymentError):
    """Raised when a processor callback fails signature verification."""

    code = "InvalidWebhook"
    http_status = 400

    def __init__(self, message: str):
        super().__init__(message)
