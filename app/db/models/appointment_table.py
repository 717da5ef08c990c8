# app/db/models/appointment_table.py
from __future__ import annotations
from typing import TYPE_CHECKING, Optional
from enum import Enum
from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    Enum as sqlalchemy_Enum,
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from datetime import datetime
from .db_base_model import DbBaseModel

if TYPE_CHECKING:
    from .user_table import User


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"  # Booked, not started
    IN_PROGRESS = "in_progress"  # Video encounter under way
    COMPLETED = "completed"  # Finished (payment captured)
    CANCELLED = "cancelled"  # Cancelled by patient, doctor or admin

    @property
    def is_terminal(self) -> bool:
        return self in (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED)


class AppointmentType(str, Enum):
    REGULAR = "regular"
    TELEMEDICINE = "telemedicine"
    EMERGENCY = "emergency"


class PaymentStatus(str, Enum):
    AUTHORIZED = "authorized"  # Pre-authorized on the card, not captured
    COMPLETED = "completed"  # Captured
    CANCELLED = "cancelled"  # Authorization released


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class Appointment(DbBaseModel):
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Requesting patient
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # Stays NULL for emergency requests until a doctor claims the appointment
    doctor_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration: Mapped[int] = mapped_column(Integer, nullable=False, default=30)

    status: Mapped[AppointmentStatus] = mapped_column(
        sqlalchemy_Enum(
            AppointmentStatus,
            name="appointment_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )

    type: Mapped[AppointmentType] = mapped_column(
        sqlalchemy_Enum(
            AppointmentType,
            name="appointment_type",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=AppointmentType.TELEMEDICINE,
    )

    is_emergency: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Video room, assigned once on first join
    telemed_room_name: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, unique=True
    )
    telemed_link: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Payment pre-authorization
    payment_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_amount: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True
    )  # cents
    payment_status: Mapped[Optional[PaymentStatus]] = mapped_column(
        sqlalchemy_Enum(
            PaymentStatus,
            name="payment_status",
            values_callable=_enum_values,
        ),
        nullable=True,
    )
    payment_captured_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    patient: Mapped["User"] = relationship("User", foreign_keys=[user_id])
    doctor: Mapped[Optional["User"]] = relationship("User", foreign_keys=[doctor_id])


__all__ = ["Appointment", "AppointmentStatus", "AppointmentType", "PaymentStatus"]
