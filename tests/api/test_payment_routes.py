"""
Tests for the appointment payment HTTP routes
"""

import json

import pytest
from fastapi.testclient import TestClient

from consult_payments.app_factory import create_app
from consult_payments.exceptions import ProcessorDeclineError, ProcessorUnavailableError
from consult_payments.services.payment_processor import HoldStatus

from ..fakes import VALID_SIGNATURE

BASE = "/api/appointment-payments"

AUTHORIZE_BODY = {
    "amount": 15000,
    "payment_method_ref": "pm_card_visa",
    "patient_id": "patient_7",
    "doctor_id": "doctor_3",
}


@pytest.fixture
def client(service):
    app = create_app()
    app.state.payment_service = service
    app.state.reconciliation_worker = None
    return TestClient(app)


def authorize(client, appointment_id="42", **overrides):
    return client.post(f"{BASE}/{appointment_id}/authorize", json={**AUTHORIZE_BODY, **overrides})


def complete(client, appointment_id="42", minutes=32, source="video_call"):
    return client.post(
        f"{BASE}/{appointment_id}/complete",
        json={"duration_minutes": minutes, "source": source},
    )


class TestAuthorizeRoute:

    def test_authorize(self, client):
        response = authorize(client)

        assert response.status_code == 200
        data = response.json()
        assert data["included_in_plan"] is False
        assert data["payment"]["state"] == "authorized"
        assert data["payment"]["amount"] == 15000
        assert "payment_method_ref" not in data["payment"]

    def test_plan_discount_applied(self, client):
        response = authorize(client, subscription_plan="premium")

        assert response.json()["payment"]["amount"] == 7500

    def test_included_emergency_creates_no_hold(self, client, processor):
        response = authorize(client, subscription_plan="ultra", is_emergency=True)

        data = response.json()
        assert data["included_in_plan"] is True
        assert data["payment"] is None
        assert processor.calls == []

    def test_invalid_amount(self, client):
        response = authorize(client, amount=0)

        assert response.status_code == 400
        assert response.json() == {
            "error": "InvalidAmount",
            "message": "Amount must be a positive integer, got 0",
            "retryable": False,
            "appointment_id": "42",
        }

    def test_duplicate(self, client):
        authorize(client)
        response = authorize(client)

        assert response.status_code == 409
        assert response.json()["error"] == "DuplicateAuthorization"

    def test_decline_reported_in_record(self, client, processor):
        processor.fail_next("create_hold", ProcessorDeclineError("Your card was declined."))

        response = authorize(client)

        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["state"] == "failed"
        assert payment["failure_reason"] == "Your card was declined."


class TestLifecycleRoutes:

    def test_get_missing(self, client):
        response = client.get(f"{BASE}/missing")

        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"

    def test_get_reports_hold_expiry_and_delivery(self, client):
        authorize(client)

        before = client.get(f"{BASE}/42").json()
        assert before["state"] == "authorized"
        assert before["hold_expires_at"] is not None
        assert before["delivery"] is None

        complete(client)
        after = client.get(f"{BASE}/42").json()

        assert after["delivery"]["delivered"] is True
        assert after["delivery"]["duration_minutes"] == 32
        assert after["delivery"]["source"] == "video_call"

    def test_get_pending_has_no_hold_expiry(self, client, processor):
        processor.create_status = HoldStatus.PENDING
        authorize(client)

        response = client.get(f"{BASE}/42")

        assert response.json()["state"] == "pending_authorization"
        assert response.json()["hold_expires_at"] is None

    def test_capture_requires_completion(self, client):
        authorize(client)

        response = client.post(f"{BASE}/42/capture")

        assert response.status_code == 409
        assert response.json()["error"] == "ServiceNotDelivered"

    def test_complete_then_capture(self, client, processor):
        authorize(client)

        completed = complete(client)
        assert completed.status_code == 200
        assert completed.json()["delivery"]["delivered"] is True

        first = client.post(f"{BASE}/42/capture", headers={"Idempotency-Key": "cap-1"})
        second = client.post(f"{BASE}/42/capture", headers={"Idempotency-Key": "cap-1"})

        assert first.status_code == 200
        assert first.json()["state"] == "captured"
        assert second.json() == first.json()
        assert len(processor.calls_for("capture_hold")) == 1

    def test_complete_rejects_negative_duration(self, client):
        response = complete(client, minutes=-1)
        assert response.status_code == 422

    def test_cancel_then_capture(self, client):
        authorize(client, "43", amount=20000)

        cancelled = client.post(f"{BASE}/43/cancel", json={"reason": "patient_cancelled"})
        assert cancelled.status_code == 200
        assert cancelled.json()["state"] == "cancelled"

        complete(client, "43")
        response = client.post(f"{BASE}/43/capture")

        assert response.status_code == 409
        assert response.json()["error"] == "NotAuthorized"

    def test_cancel_without_body(self, client):
        authorize(client)

        response = client.post(f"{BASE}/42/cancel")

        assert response.status_code == 200
        assert response.json()["cancellation_reason"] == "cancelled"

    def test_processor_unavailable(self, client, processor):
        authorize(client)
        complete(client)
        processor.fail_next("capture_hold", ProcessorUnavailableError("Stripe capture_hold timed out"))

        response = client.post(f"{BASE}/42/capture")

        assert response.status_code == 503
        data = response.json()
        assert data["error"] == "ProcessorUnavailable"
        assert data["retryable"] is True
        assert data["appointment_id"] == "42"


class TestWebhookRoute:

    def test_invalid_signature(self, client):
        response = client.post(f"{BASE}/webhook", content=b"{}", headers={"Stripe-Signature": "bad"})

        assert response.status_code == 400
        assert response.json()["error"] == "InvalidWebhook"

    def test_confirmation_applied(self, client, processor):
        processor.create_status = HoldStatus.PENDING
        authorize(client)
        payload = json.dumps({
            "event_id": "evt_1",
            "external_reference_id": "pi_test_1",
            "status": "authorized",
            "appointment_id": "42",
        })

        response = client.post(
            f"{BASE}/webhook", content=payload, headers={"Stripe-Signature": VALID_SIGNATURE}
        )

        assert response.status_code == 200
        assert response.json()["payment"]["state"] == "authorized"

        duplicate = client.post(
            f"{BASE}/webhook", content=payload, headers={"Stripe-Signature": VALID_SIGNATURE}
        )
        assert duplicate.json() == {"status": "success", "payment": None}

    def test_untracked_event(self, client):
        response = client.post(
            f"{BASE}/webhook", content=b"{}", headers={"Stripe-Signature": VALID_SIGNATURE}
        )

        assert response.json() == {"status": "ignored"}


class TestOperationalRoutes:

    def test_quote(self, client):
        response = client.post(
            f"{BASE}/quote", json={"base_amount": 20000, "subscription_plan": "basic"}
        )

        assert response.status_code == 200
        assert response.json()["final_amount"] == 14000
        assert response.json()["requires_payment"] is True

    def test_reconcile(self, client):
        authorize(client)

        response = client.post(f"{BASE}/reconcile")

        assert response.status_code == 200
        assert response.json()["examined"] == 1

    def test_metrics(self, client):
        authorize(client)

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "payment_state_transitions_total" in response.text

    def test_health(self, client):
        response = client.get("/health")

        assert response.json() == {"status": "healthy", "redis": "connected"}
