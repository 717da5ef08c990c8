# app/db/schemas/appointment_schemas.py
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional
from ..models import AppointmentStatus, AppointmentType, PaymentStatus
from .room_schemas import AccessToken, RoomDescriptor

# Wire format is camelCase; Python attributes stay snake_case
_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AppointmentCreate(BaseModel):
    model_config = _CAMEL

    # Optional: emergency requests are booked without a doctor
    doctor_id: Optional[int] = Field(None, gt=0)
    date: datetime = Field(..., description="Scheduled UTC date and time")
    duration: int = Field(30, ge=5, le=240, description="Minutes")
    is_emergency: bool = False
    type: Optional[AppointmentType] = None
    notes: Optional[str] = Field(None, max_length=1000)

    # Pre-authorization obtained by the client before booking
    payment_intent_id: Optional[str] = Field(None, min_length=1, max_length=255)
    amount: Optional[int] = Field(None, gt=0, description="Authorized amount in cents")


class PaymentAuthorizationRequest(BaseModel):
    model_config = _CAMEL

    amount: int = Field(..., gt=0, description="Amount to reserve in cents")
    doctor_id: int = Field(..., gt=0)
    customer_id: str = Field(..., min_length=1, max_length=255)
    date: Optional[datetime] = None


class PaymentAuthorizationResponse(BaseModel):
    model_config = _CAMEL

    payment_intent_id: str
    status: str
    amount: int
    currency: str


class AppointmentResponse(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )

    id: int
    user_id: int
    doctor_id: Optional[int]
    date: datetime
    duration: int
    status: AppointmentStatus
    type: AppointmentType
    is_emergency: bool
    telemed_room_name: Optional[str]
    telemed_link: Optional[str]
    payment_intent_id: Optional[str]
    payment_amount: Optional[int]
    payment_status: Optional[PaymentStatus]
    payment_captured_at: Optional[datetime]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime


class CancelRequest(BaseModel):
    model_config = _CAMEL

    reason: Optional[str] = Field(None, max_length=500)


class JoinResponse(BaseModel):
    model_config = _CAMEL

    success: bool = True
    appointment_id: int
    room: RoomDescriptor
    token: AccessToken


class CancelResponse(BaseModel):
    model_config = _CAMEL

    success: bool = True
    message: str
    appointment: AppointmentResponse


class DeleteResponse(BaseModel):
    success: bool = True
    message: str


__all__ = [
    "AppointmentCreate",
    "PaymentAuthorizationRequest",
    "PaymentAuthorizationResponse",
    "AppointmentResponse",
    "CancelRequest",
    "JoinResponse",
    "CancelResponse",
    "DeleteResponse",
]
