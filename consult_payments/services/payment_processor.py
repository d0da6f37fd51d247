"""
Payment Processor Adapter - Stripe Integration
Creates, captures, releases and inspects consultation holds (PaymentIntents
with manual capture) and verifies processor webhooks.
"""

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import stripe

from ..config import PaymentSettings, get_settings
from ..exceptions import (
    ProcessorDeclineError,
    ProcessorError,
    ProcessorUnavailableError,
    WebhookVerificationError,
)
from ..fsm.models import ProcessorEvent

logger = logging.getLogger(__name__)


class HoldStatus(str, Enum):
    """Processor-agnostic status of a hold."""
    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    RELEASED = "released"
    FAILED = "failed"


@dataclass
class HoldResult:
    """Outcome of a processor call on a hold."""
    reference_id: str
    status: HoldStatus
    amount: Optional[int] = None
    failure_reason: Optional[str] = None


class PaymentProcessor(ABC):
    """
    Interface consumed by the payment service.

    Implementations raise ProcessorDeclineError for hard declines,
    ProcessorUnavailableError for timeouts/network/5xx and ProcessorError
    for anything else the processor refuses.
    """

    # Whether a hold that is not yet acknowledged can be released
    supports_pending_release = False

    @abstractmethod
    async def create_hold(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        customer_ref: Optional[str] = None
    ) -> HoldResult:
        ...

    @abstractmethod
    async def capture_hold(self, reference_id: str, idempotency_key: str) -> HoldResult:
        ...

    @abstractmethod
    async def release_hold(self, reference_id: str, idempotency_key: str) -> HoldResult:
        ...

    @abstractmethod
    async def retrieve_hold(self, reference_id: str) -> HoldResult:
        ...

    @abstractmethod
    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[ProcessorEvent]:
        """
        Verify and normalize a webhook delivery.

        Returns:
            ProcessorEvent for hold-related events, None for events this
            service does not track

        Raises:
            WebhookVerificationError: If the payload or signature is invalid
        """
        ...


# Stripe PaymentIntent status -> HoldStatus
STRIPE_STATUS_MAP = {
    "requires_capture": HoldStatus.AUTHORIZED,
    "succeeded": HoldStatus.CAPTURED,
    "canceled": HoldStatus.RELEASED,
    "requires_payment_method": HoldStatus.FAILED,
    "requires_action": HoldStatus.PENDING,
    "requires_confirmation": HoldStatus.PENDING,
    "processing": HoldStatus.PENDING,
}

# Webhook event types that carry hold status changes
STRIPE_HOLD_EVENTS = {
    "payment_intent.amount_capturable_updated",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.succeeded",
}


def _failure_reason(intent: Any) -> Optional[str]:
    error = getattr(intent, "last_payment_error", None)
    if not error:
        return None
    return getattr(error, "code", None) or getattr(error, "message", None)


def hold_from_intent(intent: Any) -> HoldResult:
    """Translate a Stripe PaymentIntent into a HoldResult."""
    status = STRIPE_STATUS_MAP.get(intent.status, HoldStatus.PENDING)
    return HoldResult(
        reference_id=intent.id,
        status=status,
        amount=getattr(intent, "amount", None),
        failure_reason=_failure_reason(intent) if status == HoldStatus.FAILED else None,
    )


class StripePaymentProcessor(PaymentProcessor):
    """
    Stripe implementation using PaymentIntents with ``capture_method="manual"``.

    The Stripe SDK is blocking, so every call runs in a worker thread and is
    bounded by PROCESSOR_TIMEOUT_SECONDS. Idempotency keys are forwarded so a
    retried call after a timeout never creates a second hold or capture.
    """

    supports_pending_release = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        settings: Optional[PaymentSettings] = None
    ):
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or self.settings.STRIPE_WEBHOOK_SECRET
        self.timeout = self.settings.PROCESSOR_TIMEOUT_SECONDS

        stripe.api_key = self.api_key
        stripe.max_network_retries = self.settings.PROCESSOR_MAX_NETWORK_RETRIES

    async def _call(self, operation: str, func, *args, **kwargs):
        """Run a blocking Stripe call with a timeout and error classification."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(functools.partial(func, *args, **kwargs)),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            logger.error(f"Stripe {operation} timed out after {self.timeout}s")
            raise ProcessorUnavailableError(f"Stripe {operation} timed out")
        except stripe.CardError as e:
            logger.warning(f"Stripe {operation} declined: {e.code} {e.user_message}")
            raise ProcessorDeclineError(e.user_message or str(e), processor_code=e.code)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.error(f"Stripe {operation} unavailable: {e}")
            raise ProcessorUnavailableError(str(e), processor_code=getattr(e, "code", None))
        except stripe.StripeError as e:
            if e.http_status is not None and e.http_status >= 500:
                logger.error(f"Stripe {operation} server error: {e}")
                raise ProcessorUnavailableError(str(e), processor_code=e.code)
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProcessorError(e.user_message or str(e), processor_code=e.code)

    async def create_hold(
        self,
        amount: int,
        currency: str,
        payment_method_ref: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        customer_ref: Optional[str] = None
    ) -> HoldResult:
        params = {
            "amount": amount,
            "currency": currency,
            "payment_method": payment_method_ref,
            "capture_method": "manual",
            "confirm": True,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
            "metadata": {**metadata, "type": "consultation_payment"},
            "description": f"Consultation payment for appointment {metadata.get('appointment_id')}",
        }
        if customer_ref:
            params["customer"] = customer_ref

        intent = await self._call(
            "create_hold",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params
        )
        result = hold_from_intent(intent)
        logger.info(f"Created Stripe hold {result.reference_id} ({intent.status})")

        if result.status == HoldStatus.FAILED:
            raise ProcessorDeclineError(
                result.failure_reason or "payment method declined",
                processor_code=result.failure_reason
            )
        return result

    async def capture_hold(self, reference_id: str, idempotency_key: str) -> HoldResult:
        intent = await self._call(
            "capture_hold",
            stripe.PaymentIntent.capture,
            reference_id,
            idempotency_key=idempotency_key
        )
        return hold_from_intent(intent)

    async def release_hold(self, reference_id: str, idempotency_key: str) -> HoldResult:
        intent = await self._call(
            "release_hold",
            stripe.PaymentIntent.cancel,
            reference_id,
            cancellation_reason="requested_by_customer",
            idempotency_key=idempotency_key
        )
        return hold_from_intent(intent)

    async def retrieve_hold(self, reference_id: str) -> HoldResult:
        intent = await self._call("retrieve_hold", stripe.PaymentIntent.retrieve, reference_id)
        return hold_from_intent(intent)

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> Optional[ProcessorEvent]:
        if not self.webhook_secret:
            logger.error("STRIPE_WEBHOOK_SECRET not configured")
            raise WebhookVerificationError("Webhook not configured")

        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise WebhookVerificationError("Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookVerificationError("Invalid signature")

        event_type = event.type
        if event_type not in STRIPE_HOLD_EVENTS:
            logger.info(f"Unhandled event type: {event_type}")
            return None

        intent = event.data.object
        hold = hold_from_intent(intent)
        metadata = getattr(intent, "metadata", None)

        return ProcessorEvent(
            event_id=event.id,
            external_reference_id=hold.reference_id,
            status=hold.status.value,
            appointment_id=getattr(metadata, "appointment_id", None) if metadata else None,
            failure_reason=hold.failure_reason,
        )
