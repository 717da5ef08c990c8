# app/api/v1/appointment_router.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, status

from app.auth import Identity, require_identity, require_roles
from app.db.models import UserRole
from app.db.schemas import (
    AppointmentCreate,
    AppointmentResponse,
    CancelRequest,
    CancelResponse,
    DeleteResponse,
    JoinResponse,
    PaymentAuthorizationRequest,
    PaymentAuthorizationResponse,
)
from app.services.v1 import AppointmentService
from .deps import get_appointment_service

appointment_router = APIRouter(
    prefix="/api/appointments",
    tags=["Appointments"],
    responses={
        400: {"description": "Invalid input or appointment id"},
        401: {"description": "Authentication required"},
        403: {"description": "Not a participant of this appointment"},
        404: {"description": "Appointment not found"},
    },
)


@appointment_router.post(
    "/payment-authorization",
    response_model=PaymentAuthorizationResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pre-authorize a consultation payment",
    description="""
    Reserves the amount on the customer's card with manual capture. Pass the
    returned `paymentIntentId` and `amount` when booking; the amount is
    captured after the consultation or released on cancellation.
    """,
    responses={502: {"description": "Payment provider unavailable"}},
)
async def authorize_payment(
    payload: PaymentAuthorizationRequest,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    intent = await service.authorize_payment(
        identity,
        amount=payload.amount,
        doctor_id=payload.doctor_id,
        customer_id=payload.customer_id,
        when=payload.date,
    )
    return PaymentAuthorizationResponse(
        payment_intent_id=intent.id,
        status=intent.status,
        amount=intent.amount,
        currency=intent.currency,
    )


@appointment_router.post(
    "",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Book an appointment",
    description="""
    Non-emergency bookings must carry a payment authorization
    (`paymentIntentId` + `amount`). Emergency bookings are checked against
    the requester's subscription plan.
    """,
)
async def create_appointment(
    payload: AppointmentCreate,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.create(
        identity,
        when=payload.date,
        doctor_id=payload.doctor_id,
        duration=payload.duration,
        is_emergency=payload.is_emergency,
        payment_intent_id=payload.payment_intent_id,
        amount=payload.amount,
        appointment_type=payload.type,
        notes=payload.notes,
    )
    return AppointmentResponse.model_validate(appointment)


@appointment_router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    summary="Get appointment details",
)
async def get_appointment(
    appointment_id: str,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.get(appointment_id, identity)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post(
    "/{appointment_id}/join",
    response_model=JoinResponse,
    summary="Join the appointment's video room",
    description="""
    Provisions the room on first join and mints a participant token.

    **Provider Impact:** - First join may wait up to ~15s for room propagation.
    - Doctors joining an unassigned appointment claim it.
    """,
    responses={
        409: {"description": "Appointment is cancelled or completed"},
        502: {"description": "Video provider unavailable"},
    },
)
async def join_appointment(
    appointment_id: str,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment, room, token = await service.join(appointment_id, identity)
    return JoinResponse(appointment_id=appointment.id, room=room, token=token)


@appointment_router.post(
    "/{appointment_id}/start",
    response_model=AppointmentResponse,
    summary="Mark the appointment as in progress",
    responses={409: {"description": "Invalid status transition"}},
)
async def start_appointment(
    appointment_id: str,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.start(appointment_id, identity)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post(
    "/{appointment_id}/capture-payment",
    response_model=AppointmentResponse,
    summary="Capture the authorized payment and complete the appointment",
    responses={
        409: {"description": "Payment already captured or cancelled"},
        502: {"description": "Payment provider unavailable"},
    },
)
async def capture_payment(
    appointment_id: str,
    identity: Identity = Depends(require_roles(UserRole.DOCTOR, UserRole.ADMIN)),
    service: AppointmentService = Depends(get_appointment_service),
):
    appointment = await service.capture_payment(appointment_id, identity)
    return AppointmentResponse.model_validate(appointment)


@appointment_router.post(
    "/{appointment_id}/cancel",
    response_model=CancelResponse,
    summary="Cancel an appointment",
    description="""
    Releases the payment authorization when there is one. A payment
    provider failure is logged and does not fail the cancellation.
    """,
    responses={409: {"description": "Already cancelled or payment captured"}},
)
async def cancel_appointment(
    appointment_id: str,
    payload: Optional[CancelRequest] = Body(None),
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    reason = payload.reason if payload else None
    appointment = await service.cancel(appointment_id, identity, reason)
    return CancelResponse(
        message="Consulta cancelada com sucesso",
        appointment=AppointmentResponse.model_validate(appointment),
    )


@appointment_router.delete(
    "/{appointment_id}",
    response_model=DeleteResponse,
    summary="Delete an appointment",
    description="Synthetic emergency ids (e.g. `emergency-doctor-9`) succeed without touching the database.",
)
async def delete_appointment(
    appointment_id: str,
    identity: Identity = Depends(require_identity),
    service: AppointmentService = Depends(get_appointment_service),
):
    deleted = await service.delete(appointment_id, identity)
    return DeleteResponse(
        message="Consulta removida com sucesso" if deleted else "Nada a remover",
    )


__all__ = ["appointment_router"]
