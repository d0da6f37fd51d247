"""
Appointment Payment Routes
Authorization, capture and release of consultation holds, delivery signals,
pricing quotes and processor webhooks
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..exceptions import PaymentError
from ..fsm.constants import DeliverySource
from ..services.appointment_payment_service import AppointmentPaymentService
from ..services.pricing import quote_consultation
from ..workers.payment_reconciliation import PaymentReconciliationWorker

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/appointment-payments", tags=["appointment-payments"])


# ==============================================================================
# Request/Response Models
# ==============================================================================

class AuthorizeRequest(BaseModel):
    amount: int  # Listed price in minor units, before plan discounts
    payment_method_ref: str = Field(..., min_length=1)
    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    customer_ref: Optional[str] = None
    is_emergency: bool = False
    subscription_plan: Optional[str] = None
    emergency_consultations_left: Optional[int] = None


class QuoteRequest(BaseModel):
    base_amount: int = Field(..., ge=0)
    subscription_plan: Optional[str] = None
    is_emergency: bool = False
    emergency_consultations_left: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class CompleteRequest(BaseModel):
    duration_minutes: int = Field(0, ge=0)
    source: DeliverySource = DeliverySource.VIDEO_CALL


# ==============================================================================
# Dependencies and error mapping
# ==============================================================================

def get_payment_service(request: Request) -> AppointmentPaymentService:
    return request.app.state.payment_service


def get_reconciliation_worker(request: Request) -> Optional[PaymentReconciliationWorker]:
    return getattr(request.app.state, "reconciliation_worker", None)


async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
    """Render a PaymentError as ``{"error", "message", "retryable", "appointment_id"}``."""
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# ==============================================================================
# Routes
# ==============================================================================

@router.post("/quote")
async def quote(body: QuoteRequest):
    """Price a consultation for the patient's subscription plan."""
    result = quote_consultation(
        body.base_amount,
        subscription_plan=body.subscription_plan,
        is_emergency=body.is_emergency,
        emergency_consultations_left=body.emergency_consultations_left,
    )
    return {
        "base_amount": result.base_amount,
        "discount_percentage": result.discount_percentage,
        "final_amount": result.final_amount,
        "included_in_plan": result.included_in_plan,
        "requires_payment": result.requires_payment,
    }


@router.post("/webhook")
async def processor_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    service: AppointmentPaymentService = Depends(get_payment_service)
):
    """
    Handle processor confirmation callbacks.

    The signature is verified before anything is read from the payload.
    Failures other than verification return an error status so the
    processor redelivers the event.
    """
    body = await request.body()
    event = service.processor.parse_webhook(body, stripe_signature)

    if event is None:
        return {"status": "ignored"}

    logger.info(
        f"Received processor event {event.event_id}: {event.status} "
        f"for hold {event.external_reference_id}"
    )
    payment = await service.handle_processor_event(event)
    return {
        "status": "success",
        "payment": payment.to_public_dict() if payment else None,
    }


@router.post("/reconcile")
async def reconcile(
    service: AppointmentPaymentService = Depends(get_payment_service),
    worker: Optional[PaymentReconciliationWorker] = Depends(get_reconciliation_worker)
):
    """Run one reconciliation sweep now (operator use)."""
    if worker is None:
        worker = PaymentReconciliationWorker(service)
    return await worker.run_once()


@router.post("/{appointment_id}/authorize")
async def authorize(
    appointment_id: str,
    body: AuthorizeRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: AppointmentPaymentService = Depends(get_payment_service)
) -> Dict[str, Any]:
    """
    Place a hold for the consultation.

    With plan context the amount is discounted first; consultations included
    in the plan create no hold.
    """
    amount = body.amount
    consultation_quote = None

    if body.subscription_plan or body.is_emergency:
        consultation_quote = quote_consultation(
            body.amount,
            subscription_plan=body.subscription_plan,
            is_emergency=body.is_emergency,
            emergency_consultations_left=body.emergency_consultations_left,
        )
        if consultation_quote.included_in_plan:
            logger.info(f"Consultation for appointment {appointment_id} included in plan")
            return {
                "included_in_plan": True,
                "amount": 0,
                "payment": None,
            }
        amount = consultation_quote.final_amount

    payment = await service.request_authorization(
        appointment_id,
        amount,
        body.payment_method_ref,
        patient_id=body.patient_id,
        doctor_id=body.doctor_id,
        is_emergency=body.is_emergency,
        customer_ref=body.customer_ref,
        idempotency_key=idempotency_key,
    )
    return {
        "included_in_plan": False,
        "amount": amount,
        "payment": payment.to_public_dict(),
    }


@router.post("/{appointment_id}/capture")
async def capture(
    appointment_id: str,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: AppointmentPaymentService = Depends(get_payment_service)
):
    payment = await service.capture(appointment_id, idempotency_key=idempotency_key)
    return payment.to_public_dict()


@router.post("/{appointment_id}/cancel")
async def cancel(
    appointment_id: str,
    body: Optional[CancelRequest] = None,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
    service: AppointmentPaymentService = Depends(get_payment_service)
):
    payment = await service.cancel(
        appointment_id,
        reason=body.reason if body else None,
        idempotency_key=idempotency_key,
    )
    return payment.to_public_dict()


@router.post("/{appointment_id}/complete")
async def complete(
    appointment_id: str,
    body: CompleteRequest,
    service: AppointmentPaymentService = Depends(get_payment_service)
):
    """Record that the consultation ended (video call end or doctor confirmation)."""
    delivery = await service.record_service_delivery(
        appointment_id, body.duration_minutes, body.source
    )
    payment = await service.manager.load_payment(appointment_id)
    return {
        "delivery": delivery.model_dump(mode="json"),
        "payment": payment.to_public_dict() if payment else None,
    }


@router.get("/{appointment_id}")
async def get_payment(
    appointment_id: str,
    service: AppointmentPaymentService = Depends(get_payment_service)
):
    payment = await service.get_state(appointment_id)
    delivery = await service.get_delivery(appointment_id)
    expires_at = payment.hold_expires_at(service.settings.hold_window)

    return {
        **payment.to_public_dict(),
        "hold_expires_at": expires_at.isoformat() if expires_at else None,
        "delivery": delivery.model_dump(mode="json") if delivery else None,
    }
