# app/services/v1/appointment_service.py
"""
Appointment lifecycle: payment authorization, create, join, start, capture,
cancel, delete.

Status moves scheduled -> in_progress -> completed, or from any
non-terminal status to cancelled. Room-name assignment and the doctor
claim on unassigned appointments are single conditional UPDATEs, so two
concurrent joins can never persist two different rooms.
"""

import re
from datetime import datetime
from typing import Optional, Protocol, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth import Identity
from app.clients import PaymentIntent
from app.db.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    PaymentStatus,
    User,
    UserRole,
    utcnow,
)
from app.db.schemas import AccessToken, RoomDescriptor
from common import (
    ConfigurationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ProviderUnavailable,
    ValidationError,
    get_app_logger,
)
from common.retry import Clock, SystemClock
from .entitlements import emergency_entitlement
from .notification_service import NotificationService
from .room_provisioner import RoomProvisioner

logger = get_app_logger(__name__)

# Client-side placeholders such as "emergency-doctor-9"; never persisted
_SYNTHETIC_ID = re.compile(r"^emergency-[a-z0-9-]+$", re.IGNORECASE)

_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset(
        {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}


class PaymentGateway(Protocol):
    async def create_authorization(
        self,
        amount_cents: int,
        customer_id: str,
        metadata: Optional[dict[str, str]] = None,
    ) -> PaymentIntent: ...

    async def capture(self, intent_id: str) -> PaymentIntent: ...

    async def cancel(
        self, intent_id: str, reason: str = "requested_by_customer"
    ) -> PaymentIntent: ...


def check_transition(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """Raise ConflictError unless ``current -> target`` is allowed."""
    if target not in _TRANSITIONS[current]:
        raise ConflictError(
            f"Cannot move appointment from {current.value} to {target.value}"
        )


def is_synthetic_id(raw_id: Union[str, int]) -> bool:
    return isinstance(raw_id, str) and bool(_SYNTHETIC_ID.match(raw_id))


def parse_appointment_id(raw_id: Union[str, int]) -> int:
    if isinstance(raw_id, int) and not isinstance(raw_id, bool):
        value = raw_id
    elif isinstance(raw_id, str) and raw_id.strip().isdigit():
        value = int(raw_id.strip())
    else:
        raise ValidationError(
            "Invalid appointment id", details={"appointmentId": str(raw_id)}
        )
    if value <= 0:
        raise ValidationError(
            "Invalid appointment id", details={"appointmentId": str(raw_id)}
        )
    return value


class AppointmentService:
    def __init__(
        self,
        db: AsyncSession,
        provisioner: RoomProvisioner,
        payments: PaymentGateway,
        *,
        clock: Optional[Clock] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.provisioner = provisioner
        self.payments = payments
        self.clock = clock or SystemClock()
        self.notifications = notifications or NotificationService(db)

    # -- helpers ---------------------------------------------------------

    async def _load(self, appointment_id: int) -> Appointment:
        query = (
            select(Appointment)
            .where(Appointment.id == appointment_id)
            .execution_options(logging_token="AppointmentService._load")
        )
        appointment = (await self.db.execute(query)).scalar_one_or_none()
        if appointment is None:
            raise NotFoundError("Appointment not found")
        return appointment

    @staticmethod
    def _is_participant(appointment: Appointment, actor: Identity) -> bool:
        return (
            actor.is_admin
            or appointment.user_id == actor.id
            or (actor.is_doctor and appointment.doctor_id == actor.id)
        )

    def _require_participant(self, appointment: Appointment, actor: Identity) -> None:
        if not self._is_participant(appointment, actor):
            logger.warning(
                "Appointment access denied",
                appointment_id=appointment.id,
                actor_id=actor.id,
                actor_role=actor.role.value,
            )
            raise ForbiddenError("You do not have access to this appointment")

    async def _claim_doctor(self, appointment: Appointment, doctor: Identity) -> None:
        result = await self.db.execute(
            update(Appointment)
            .where(Appointment.id == appointment.id, Appointment.doctor_id.is_(None))
            .values(doctor_id=doctor.id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(appointment)

        if result.rowcount == 1:
            logger.info(
                "Doctor assigned to appointment",
                appointment_id=appointment.id,
                doctor_id=doctor.id,
            )
        elif appointment.doctor_id != doctor.id:
            # Another doctor won the claim
            raise ForbiddenError("Appointment already assigned to another doctor")

    async def _assign_room_name(self, appointment: Appointment) -> str:
        candidate = f"appointment-{appointment.id}-{int(self.clock.now() * 1000)}"
        result = await self.db.execute(
            update(Appointment)
            .where(
                Appointment.id == appointment.id,
                Appointment.telemed_room_name.is_(None),
            )
            .values(telemed_room_name=candidate, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(appointment)

        if result.rowcount == 1:
            logger.info(
                "Room name assigned",
                appointment_id=appointment.id,
                room_name=candidate,
            )
        else:
            logger.debug(
                "Room name already assigned by a concurrent join",
                appointment_id=appointment.id,
                room_name=appointment.telemed_room_name,
            )
        room_name = appointment.telemed_room_name
        if room_name is None:
            raise ConflictError("Room assignment failed, retry the join")
        return room_name

    # -- operations ------------------------------------------------------

    async def get(self, raw_id: Union[str, int], actor: Identity) -> Appointment:
        appointment = await self._load(parse_appointment_id(raw_id))
        unassigned_for_doctor = actor.is_doctor and appointment.doctor_id is None
        if not unassigned_for_doctor:
            self._require_participant(appointment, actor)
        return appointment

    async def authorize_payment(
        self,
        requester: Identity,
        *,
        amount: int,
        doctor_id: int,
        customer_id: str,
        when: Optional[datetime] = None,
    ) -> PaymentIntent:
        """Reserve the consultation amount; the intent id is then passed to create()."""
        doctor = await self.db.get(User, doctor_id)
        if doctor is None or doctor.role != UserRole.DOCTOR:
            raise NotFoundError("Doctor not found")

        metadata = {"userId": str(requester.id), "doctorId": str(doctor_id)}
        if when is not None:
            metadata["appointmentDate"] = when.isoformat()
        return await self.payments.create_authorization(amount, customer_id, metadata)

    async def create(
        self,
        requester: Identity,
        *,
        when: datetime,
        doctor_id: Optional[int] = None,
        duration: int = 30,
        is_emergency: bool = False,
        payment_intent_id: Optional[str] = None,
        amount: Optional[int] = None,
        appointment_type: Optional[AppointmentType] = None,
        notes: Optional[str] = None,
    ) -> Appointment:
        """
        Book an appointment.

        Non-emergency bookings need a doctor and a prior payment
        authorization (intent id + amount). Emergency bookings, including
        any booking of type emergency, are gated by the requester's
        subscription plan instead.
        """
        if appointment_type == AppointmentType.EMERGENCY:
            is_emergency = True

        if not is_emergency:
            missing = {}
            if not payment_intent_id:
                missing["paymentIntentId"] = "required for non-emergency appointments"
            if amount is None:
                missing["amount"] = "required for non-emergency appointments"
            if doctor_id is None:
                missing["doctorId"] = "required for non-emergency appointments"
            if missing:
                raise ValidationError("Payment authorization required", details=missing)

        if doctor_id is not None:
            doctor = await self.db.get(User, doctor_id)
            if doctor is None or doctor.role != UserRole.DOCTOR:
                raise NotFoundError("Doctor not found")

        if is_emergency:
            await self._consume_emergency_entitlement(requester)

        appointment = Appointment(
            user_id=requester.id,
            doctor_id=doctor_id,
            date=when,
            duration=duration,
            status=AppointmentStatus.SCHEDULED,
            type=(
                AppointmentType.EMERGENCY
                if is_emergency
                else appointment_type or AppointmentType.TELEMEDICINE
            ),
            is_emergency=is_emergency,
            payment_intent_id=payment_intent_id,
            payment_amount=amount,
            payment_status=PaymentStatus.AUTHORIZED if payment_intent_id else None,
            notes=notes,
        )
        self.db.add(appointment)
        await self.db.flush()

        await self.notifications.notify(
            requester.id,
            "Consulta agendada",
            f"Sua consulta para {when:%d/%m/%Y %H:%M} foi agendada.",
            related_id=appointment.id,
            link=f"/appointments/{appointment.id}",
        )
        if doctor_id is not None:
            await self.notifications.notify(
                doctor_id,
                "Nova consulta",
                f"Nova consulta agendada por {requester.display_name}.",
                related_id=appointment.id,
                link=f"/appointments/{appointment.id}",
            )

        logger.info(
            "Appointment created",
            appointment_id=appointment.id,
            requester_id=requester.id,
            doctor_id=doctor_id,
            emergency=is_emergency,
            payment_status=appointment.payment_status.value if appointment.payment_status else None,
        )
        return appointment

    async def _consume_emergency_entitlement(self, requester: Identity) -> None:
        user = await self.db.get(User, requester.id)
        if user is None:
            raise NotFoundError("User not found")

        entitlement = emergency_entitlement(
            requester.role, user.subscription_plan, user.emergency_consultations_left
        )
        if not entitlement.allowed:
            raise ForbiddenError(entitlement.reason or "Emergency consultations not available")

        if entitlement.consumes_credit and user.emergency_consultations_left is not None:
            result = await self.db.execute(
                update(User)
                .where(User.id == user.id, User.emergency_consultations_left > 0)
                .values(emergency_consultations_left=User.emergency_consultations_left - 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ForbiddenError("Monthly emergency consultation limit reached")
            await self.db.refresh(user)
            logger.info(
                "Emergency consultation credit used",
                user_id=user.id,
                remaining=user.emergency_consultations_left,
            )

    async def join(
        self, raw_id: Union[str, int], actor: Identity
    ) -> tuple[Appointment, RoomDescriptor, AccessToken]:
        """
        Return the appointment's room and a token for ``actor``.

        A doctor joining an appointment with no doctor claims it. The room
        name is generated on first join; later joins reuse it.
        """
        appointment = await self._load(parse_appointment_id(raw_id))

        claiming = actor.is_doctor and appointment.doctor_id is None
        if not claiming:
            self._require_participant(appointment, actor)
        if appointment.status.is_terminal:
            raise ConflictError(f"Appointment is {appointment.status.value}")
        if claiming:
            await self._claim_doctor(appointment, actor)

        room_name = appointment.telemed_room_name or await self._assign_room_name(appointment)
        # Release row locks before the (slow) provider calls
        await self.db.commit()

        emergency = appointment.is_emergency
        room = await self.provisioner.ensure_room(
            room_name, self.provisioner.room_ttl_minutes(emergency)
        )
        token = await self.provisioner.mint_token(room.name, actor, emergency=emergency)

        if appointment.telemed_link != room.url:
            appointment.telemed_link = room.url
            await self.db.flush()

        logger.info(
            "Appointment joined",
            appointment_id=appointment.id,
            actor_id=actor.id,
            room_name=room.name,
            is_owner=token.is_owner,
        )
        return appointment, room, token

    async def start(self, raw_id: Union[str, int], actor: Identity) -> Appointment:
        appointment = await self._load(parse_appointment_id(raw_id))
        self._require_participant(appointment, actor)

        check_transition(appointment.status, AppointmentStatus.IN_PROGRESS)
        appointment.status = AppointmentStatus.IN_PROGRESS
        await self.db.flush()

        logger.info("Appointment started", appointment_id=appointment.id, actor_id=actor.id)
        return appointment

    async def capture_payment(self, raw_id: Union[str, int], actor: Identity) -> Appointment:
        """Capture the pre-authorized amount and complete the appointment."""
        if actor.role not in (UserRole.DOCTOR, UserRole.ADMIN):
            raise ForbiddenError("Only the doctor or an admin can capture payments")

        appointment = await self._load(parse_appointment_id(raw_id))
        self._require_participant(appointment, actor)

        if not appointment.payment_intent_id:
            raise ValidationError("Appointment has no payment authorization")
        if appointment.payment_status == PaymentStatus.COMPLETED:
            raise ConflictError("Payment already captured")
        if appointment.payment_status == PaymentStatus.CANCELLED:
            raise ConflictError("Payment authorization was cancelled")
        if appointment.status == AppointmentStatus.SCHEDULED:
            check_transition(appointment.status, AppointmentStatus.IN_PROGRESS)
            appointment.status = AppointmentStatus.IN_PROGRESS
        check_transition(appointment.status, AppointmentStatus.COMPLETED)

        intent = await self.payments.capture(appointment.payment_intent_id)

        appointment.status = AppointmentStatus.COMPLETED
        appointment.payment_status = PaymentStatus.COMPLETED
        appointment.payment_captured_at = utcnow()
        await self.db.flush()

        await self.notifications.notify(
            appointment.user_id,
            "Pagamento confirmado",
            "O pagamento da sua consulta foi processado.",
            type="payment",
            related_id=appointment.id,
        )
        logger.info(
            "Payment captured",
            appointment_id=appointment.id,
            payment_intent_id=intent.id,
            amount=intent.amount,
        )
        return appointment

    async def cancel(
        self,
        raw_id: Union[str, int],
        actor: Identity,
        reason: Optional[str] = None,
    ) -> Appointment:
        """
        Cancel and release the payment authorization.

        A payment-provider failure is logged and does not fail the
        cancellation.
        """
        appointment = await self._load(parse_appointment_id(raw_id))
        self._require_participant(appointment, actor)

        if appointment.payment_status == PaymentStatus.COMPLETED:
            raise ConflictError("Cannot cancel an appointment whose payment was captured")
        check_transition(appointment.status, AppointmentStatus.CANCELLED)

        note = f"Cancelada: {reason}" if reason else "Consulta cancelada"
        appointment.status = AppointmentStatus.CANCELLED
        appointment.notes = f"{appointment.notes}\n{note}" if appointment.notes else note
        if appointment.payment_intent_id:
            appointment.payment_status = PaymentStatus.CANCELLED
        # Release the row lock before calling the payment provider
        await self.db.commit()

        if appointment.payment_intent_id:
            try:
                await self.payments.cancel(appointment.payment_intent_id)
            except (ProviderUnavailable, ConfigurationError) as e:
                logger.error(
                    "Payment authorization release failed",
                    appointment_id=appointment.id,
                    payment_intent_id=appointment.payment_intent_id,
                    error=str(e),
                )

        await self.notifications.notify(
            appointment.user_id,
            "Consulta cancelada",
            note,
            related_id=appointment.id,
        )
        if appointment.doctor_id is not None and appointment.doctor_id != actor.id:
            await self.notifications.notify(
                appointment.doctor_id,
                "Consulta cancelada",
                note,
                related_id=appointment.id,
            )

        logger.info(
            "Appointment cancelled",
            appointment_id=appointment.id,
            actor_id=actor.id,
            had_payment=bool(appointment.payment_intent_id),
        )
        return appointment

    async def delete(self, raw_id: Union[str, int], actor: Identity) -> bool:
        """
        Physically delete an appointment.

        Returns False for synthetic emergency ids, which were never stored
        and are accepted as a no-op.
        """
        if is_synthetic_id(raw_id):
            logger.info("Synthetic appointment delete ignored", appointment_ref=raw_id)
            return False

        appointment = await self._load(parse_appointment_id(raw_id))
        self._require_participant(appointment, actor)

        appointment_id, patient_id = appointment.id, appointment.user_id
        await self.db.delete(appointment)
        await self.db.flush()

        if patient_id != actor.id:
            await self.notifications.notify(
                patient_id,
                "Consulta removida",
                "Uma consulta foi removida da sua agenda.",
                related_id=appointment_id,
            )

        logger.info("Appointment deleted", appointment_id=appointment_id, actor_id=actor.id)
        return True


__all__ = [
    "AppointmentService",
    "PaymentGateway",
    "check_transition",
    "is_synthetic_id",
    "parse_appointment_id",
]
