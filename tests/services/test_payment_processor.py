"""
Tests for the Stripe payment processor adapter

The Stripe SDK is patched; responses are real StripeObjects built with
construct_from so attribute access matches production.
"""

import time
from unittest.mock import patch

import pytest
import stripe

from consult_payments.config import PaymentSettings
from consult_payments.exceptions import (
    ProcessorDeclineError,
    ProcessorError,
    ProcessorUnavailableError,
    WebhookVerificationError,
)
from consult_payments.services.payment_processor import (
    HoldStatus,
    StripePaymentProcessor,
    hold_from_intent,
)


def make_intent(status, intent_id="pi_123", **extra):
    return stripe.PaymentIntent.construct_from(
        {"id": intent_id, "object": "payment_intent", "status": status, "amount": 15000, **extra},
        "sk_test_123",
    )


def make_event(event_type, intent_values, event_id="evt_123"):
    return stripe.Event.construct_from(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": {"object": "payment_intent", "amount": 15000, **intent_values}},
        },
        "sk_test_123",
    )


@pytest.fixture
def stripe_settings():
    return PaymentSettings(
        _env_file=None,
        STRIPE_SECRET_KEY="sk_test_123",
        STRIPE_WEBHOOK_SECRET="whsec_test",
        PROCESSOR_TIMEOUT_SECONDS=2,
    )


@pytest.fixture
def stripe_processor(stripe_settings):
    return StripePaymentProcessor(settings=stripe_settings)


class TestHoldFromIntent:

    @pytest.mark.parametrize("status,expected", [
        ("requires_capture", HoldStatus.AUTHORIZED),
        ("succeeded", HoldStatus.CAPTURED),
        ("canceled", HoldStatus.RELEASED),
        ("requires_payment_method", HoldStatus.FAILED),
        ("requires_action", HoldStatus.PENDING),
        ("processing", HoldStatus.PENDING),
    ])
    def test_status_mapping(self, status, expected):
        assert hold_from_intent(make_intent(status)).status == expected

    def test_failure_reason_from_last_error(self):
        intent = make_intent(
            "requires_payment_method",
            last_payment_error={"code": "card_declined", "message": "Your card was declined."},
        )

        result = hold_from_intent(intent)

        assert result.failure_reason == "card_declined"


class TestStripePaymentProcessor:
    """Test suite for StripePaymentProcessor"""

    def test_configures_sdk(self, stripe_processor, stripe_settings):
        assert stripe.api_key == "sk_test_123"
        assert stripe.max_network_retries == stripe_settings.PROCESSOR_MAX_NETWORK_RETRIES
        assert stripe_processor.supports_pending_release

    async def test_create_hold_uses_manual_capture(self, stripe_processor):
        with patch("stripe.PaymentIntent.create", return_value=make_intent("requires_capture")) as create:
            result = await stripe_processor.create_hold(
                amount=15000,
                currency="brl",
                payment_method_ref="pm_card_visa",
                metadata={"appointment_id": "42"},
                idempotency_key="hold:42:1",
                customer_ref="cus_9",
            )

        assert result.reference_id == "pi_123"
        assert result.status == HoldStatus.AUTHORIZED
        kwargs = create.call_args.kwargs
        assert kwargs["capture_method"] == "manual"
        assert kwargs["confirm"] is True
        assert kwargs["idempotency_key"] == "hold:42:1"
        assert kwargs["customer"] == "cus_9"
        assert kwargs["metadata"] == {"appointment_id": "42", "type": "consultation_payment"}

    async def test_create_hold_pending(self, stripe_processor):
        with patch("stripe.PaymentIntent.create", return_value=make_intent("requires_action")):
            result = await stripe_processor.create_hold(
                15000, "brl", "pm_card_visa", {"appointment_id": "42"}, "hold:42:1"
            )

        assert result.status == HoldStatus.PENDING

    async def test_card_error_is_decline(self, stripe_processor):
        error = stripe.CardError("Your card was declined.", param=None, code="card_declined")

        with patch("stripe.PaymentIntent.create", side_effect=error):
            with pytest.raises(ProcessorDeclineError) as exc_info:
                await stripe_processor.create_hold(
                    15000, "brl", "pm_card_visa", {"appointment_id": "42"}, "hold:42:1"
                )

        assert exc_info.value.processor_code == "card_declined"
        assert exc_info.value.retryable is False

    async def test_failed_intent_is_decline(self, stripe_processor):
        intent = make_intent(
            "requires_payment_method", last_payment_error={"code": "insufficient_funds"}
        )

        with patch("stripe.PaymentIntent.create", return_value=intent):
            with pytest.raises(ProcessorDeclineError, match="insufficient_funds"):
                await stripe_processor.create_hold(
                    15000, "brl", "pm_card_visa", {"appointment_id": "42"}, "hold:42:1"
                )

    @pytest.mark.parametrize("error", [
        stripe.APIConnectionError("Network error"),
        stripe.RateLimitError("Too many requests"),
        stripe.APIError("Internal error", http_status=500),
    ])
    async def test_transient_errors_are_unavailable(self, stripe_processor, error):
        with patch("stripe.PaymentIntent.capture", side_effect=error):
            with pytest.raises(ProcessorUnavailableError) as exc_info:
                await stripe_processor.capture_hold("pi_123", "capture:42:1")

        assert exc_info.value.retryable

    async def test_invalid_request_is_processor_error(self, stripe_processor):
        error = stripe.InvalidRequestError(
            "This PaymentIntent could not be captured because it has expired.",
            param=None,
            code="charge_expired_for_capture",
            http_status=400,
        )

        with patch("stripe.PaymentIntent.capture", side_effect=error):
            with pytest.raises(ProcessorError) as exc_info:
                await stripe_processor.capture_hold("pi_123", "capture:42:1")

        assert not isinstance(exc_info.value, ProcessorUnavailableError)
        assert exc_info.value.processor_code == "charge_expired_for_capture"

    async def test_timeout_is_unavailable(self, stripe_settings):
        stripe_settings.PROCESSOR_TIMEOUT_SECONDS = 0.05
        slow_processor = StripePaymentProcessor(settings=stripe_settings)

        def slow_capture(*args, **kwargs):
            time.sleep(0.3)
            return make_intent("succeeded")

        with patch("stripe.PaymentIntent.capture", side_effect=slow_capture):
            with pytest.raises(ProcessorUnavailableError, match="timed out"):
                await slow_processor.capture_hold("pi_123", "capture:42:1")

    async def test_capture_forwards_idempotency_key(self, stripe_processor):
        with patch("stripe.PaymentIntent.capture", return_value=make_intent("succeeded")) as capture:
            result = await stripe_processor.capture_hold("pi_123", "capture:42:1")

        assert result.status == HoldStatus.CAPTURED
        capture.assert_called_once_with("pi_123", idempotency_key="capture:42:1")

    async def test_release_cancels_intent(self, stripe_processor):
        with patch("stripe.PaymentIntent.cancel", return_value=make_intent("canceled")) as cancel:
            result = await stripe_processor.release_hold("pi_123", "release:42:1")

        assert result.status == HoldStatus.RELEASED
        assert cancel.call_args.kwargs["idempotency_key"] == "release:42:1"

    async def test_retrieve_hold(self, stripe_processor):
        with patch("stripe.PaymentIntent.retrieve", return_value=make_intent("requires_capture")):
            result = await stripe_processor.retrieve_hold("pi_123")

        assert result.status == HoldStatus.AUTHORIZED


class TestWebhookParsing:
    """Test suite for webhook verification and normalization"""

    def test_hold_event_normalized(self, stripe_processor):
        event = make_event(
            "payment_intent.amount_capturable_updated",
            {"id": "pi_123", "status": "requires_capture", "metadata": {"appointment_id": "42"}},
        )

        with patch("stripe.Webhook.construct_event", return_value=event) as construct:
            parsed = stripe_processor.parse_webhook(b"{}", "t=1,v1=sig")

        construct.assert_called_once_with(b"{}", "t=1,v1=sig", "whsec_test")
        assert parsed.event_id == "evt_123"
        assert parsed.external_reference_id == "pi_123"
        assert parsed.status == "authorized"
        assert parsed.appointment_id == "42"

    def test_event_without_metadata(self, stripe_processor):
        event = make_event("payment_intent.canceled", {"id": "pi_123", "status": "canceled"})

        with patch("stripe.Webhook.construct_event", return_value=event):
            parsed = stripe_processor.parse_webhook(b"{}", "t=1,v1=sig")

        assert parsed.status == "released"
        assert parsed.appointment_id is None

    def test_untracked_event_ignored(self, stripe_processor):
        event = make_event("customer.created", {"id": "pi_123", "status": "requires_capture"})

        with patch("stripe.Webhook.construct_event", return_value=event):
            assert stripe_processor.parse_webhook(b"{}", "t=1,v1=sig") is None

    def test_bad_signature(self, stripe_processor):
        error = stripe.SignatureVerificationError("No signatures found", "t=1,v1=bad")

        with patch("stripe.Webhook.construct_event", side_effect=error):
            with pytest.raises(WebhookVerificationError, match="Invalid signature"):
                stripe_processor.parse_webhook(b"{}", "t=1,v1=bad")

    def test_bad_payload(self, stripe_processor):
        with patch("stripe.Webhook.construct_event", side_effect=ValueError("bad json")):
            with pytest.raises(WebhookVerificationError, match="Invalid payload"):
                stripe_processor.parse_webhook(b"not json", "t=1,v1=sig")

    def test_missing_secret(self, stripe_settings):
        stripe_settings.STRIPE_WEBHOOK_SECRET = ""
        unconfigured = StripePaymentProcessor(settings=stripe_settings)

        with pytest.raises(WebhookVerificationError):
            unconfigured.parse_webhook(b"{}", "t=1,v1=sig")
