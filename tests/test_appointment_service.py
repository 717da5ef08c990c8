# tests/test_appointment_service.py
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from app.clients import PaymentIntent
from app.db.models import (
    Appointment,
    AppointmentStatus,
    AppointmentType,
    Notification,
    PaymentStatus,
    User,
)
from app.db.schemas import ProvisioningState
from app.services.v1 import (
    AppointmentService,
    check_transition,
    is_synthetic_id,
    parse_appointment_id,
)
from common import ConflictError, ForbiddenError, NotFoundError, ValidationError
from tests.conftest import (
    ADMIN,
    DOCTOR,
    OTHER_DOCTOR,
    PATIENT,
    START_TIME,
    STRANGER,
    FakeClock,
    add_appointment,
    fetch_appointment,
)

WHEN = datetime(2025, 1, 10, 14, 0, tzinfo=timezone.utc)


async def count_rows(manager, model) -> int:
    async with manager.session() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def notifications_for(manager, user_id: int) -> list[Notification]:
    async with manager.session() as session:
        result = await session.execute(
            select(Notification).where(Notification.user_id == user_id)
        )
        return list(result.scalars())


class ObservingPayments:
    """Payment gateway that records the stored appointment while a release is in flight."""

    def __init__(self, manager, appointment_id: int):
        self.manager = manager
        self.appointment_id = appointment_id
        self.seen = None

    async def cancel(self, intent_id: str, reason: str = "requested_by_customer") -> PaymentIntent:
        stored = await fetch_appointment(self.manager, self.appointment_id)
        self.seen = (stored.status, stored.payment_status)
        return PaymentIntent(id=intent_id, status="canceled", amount=15000, currency="brl")


class TestIdHandling:
    @pytest.mark.parametrize("raw", ["emergency-doctor-9", "Emergency-Doctor-9", "emergency-abc"])
    def test_synthetic_ids(self, raw):
        assert is_synthetic_id(raw)

    @pytest.mark.parametrize("raw", ["42", 42, "emergency-", "doctor-9", ""])
    def test_non_synthetic_ids(self, raw):
        assert not is_synthetic_id(raw)

    def test_numeric_ids_parse(self):
        assert parse_appointment_id("42") == 42
        assert parse_appointment_id(42) == 42

    @pytest.mark.parametrize("raw", ["abc", "0", "-3", "4.2", ""])
    def test_invalid_ids_raise(self, raw):
        with pytest.raises(ValidationError) as exc_info:
            parse_appointment_id(raw)
        assert exc_info.value.details == {"appointmentId": raw}


class TestTransitions:
    def test_allowed(self):
        check_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.IN_PROGRESS)
        check_transition(AppointmentStatus.IN_PROGRESS, AppointmentStatus.COMPLETED)
        check_transition(AppointmentStatus.SCHEDULED, AppointmentStatus.CANCELLED)

    @pytest.mark.parametrize(
        "current,target",
        [
            (AppointmentStatus.CANCELLED, AppointmentStatus.CANCELLED),
            (AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED),
            (AppointmentStatus.SCHEDULED, AppointmentStatus.COMPLETED),
            (AppointmentStatus.CANCELLED, AppointmentStatus.IN_PROGRESS),
        ],
    )
    def test_rejected(self, current, target):
        with pytest.raises(ConflictError):
            check_transition(current, target)


class TestCreate:
    @pytest.mark.asyncio
    async def test_paid_booking_is_authorized(self, db_manager, make_service):
        async with db_manager.session() as session:
            appointment = await make_service(session).create(
                PATIENT,
                when=WHEN,
                doctor_id=DOCTOR.id,
                payment_intent_id="pi_abc",
                amount=15000,
            )
            appointment_id = appointment.id

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.status == AppointmentStatus.SCHEDULED
        assert stored.payment_status == PaymentStatus.AUTHORIZED
        assert stored.payment_intent_id == "pi_abc"
        assert stored.payment_amount == 15000
        assert stored.type == AppointmentType.TELEMEDICINE
        assert stored.user_id == PATIENT.id and stored.doctor_id == DOCTOR.id
        assert stored.telemed_room_name is None

        assert len(await notifications_for(db_manager, PATIENT.id)) == 1
        assert len(await notifications_for(db_manager, DOCTOR.id)) == 1

    @pytest.mark.asyncio
    async def test_missing_payment_authorization_is_rejected(self, db_manager, make_service):
        with pytest.raises(ValidationError) as exc_info:
            async with db_manager.session() as session:
                await make_service(session).create(PATIENT, when=WHEN, doctor_id=DOCTOR.id)

        assert "paymentIntentId" in exc_info.value.details
        assert "amount" in exc_info.value.details
        assert await count_rows(db_manager, Appointment) == 0

    @pytest.mark.asyncio
    async def test_unknown_doctor(self, db_manager, make_service):
        with pytest.raises(NotFoundError):
            async with db_manager.session() as session:
                await make_service(session).create(
                    PATIENT,
                    when=WHEN,
                    doctor_id=PATIENT.id,
                    payment_intent_id="pi_abc",
                    amount=15000,
                )

    @pytest.mark.asyncio
    async def test_emergency_uses_a_basic_plan_credit(self, db_manager, make_service):
        async with db_manager.session() as session:
            appointment = await make_service(session).create(
                PATIENT, when=WHEN, is_emergency=True
            )
            appointment_id = appointment.id

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.is_emergency is True
        assert stored.type == AppointmentType.EMERGENCY
        assert stored.doctor_id is None
        assert stored.payment_status is None

        async with db_manager.session() as session:
            user = await session.get(User, PATIENT.id)
            assert user.emergency_consultations_left == 1

    @pytest.mark.asyncio
    async def test_emergency_denied_on_free_plan(self, db_manager, make_service):
        with pytest.raises(ForbiddenError):
            async with db_manager.session() as session:
                await make_service(session).create(STRANGER, when=WHEN, is_emergency=True)
        assert await count_rows(db_manager, Appointment) == 0

    @pytest.mark.asyncio
    async def test_emergency_denied_when_credits_run_out(self, db_manager, make_service):
        for _ in range(2):
            async with db_manager.session() as session:
                await make_service(session).create(PATIENT, when=WHEN, is_emergency=True)

        with pytest.raises(ForbiddenError):
            async with db_manager.session() as session:
                await make_service(session).create(PATIENT, when=WHEN, is_emergency=True)
        assert await count_rows(db_manager, Appointment) == 2

    @pytest.mark.asyncio
    async def test_emergency_type_is_an_emergency_booking(self, db_manager, make_service):
        async with db_manager.session() as session:
            appointment = await make_service(session).create(
                PATIENT, when=WHEN, appointment_type=AppointmentType.EMERGENCY
            )
            appointment_id = appointment.id

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.type == AppointmentType.EMERGENCY
        assert stored.is_emergency is True

        async with db_manager.session() as session:
            user = await session.get(User, PATIENT.id)
            assert user.emergency_consultations_left == 1

    @pytest.mark.asyncio
    async def test_emergency_type_still_needs_entitlement(self, db_manager, make_service):
        with pytest.raises(ForbiddenError):
            async with db_manager.session() as session:
                await make_service(session).create(
                    STRANGER, when=WHEN, appointment_type=AppointmentType.EMERGENCY
                )
        assert await count_rows(db_manager, Appointment) == 0


class TestAuthorizePayment:
    @pytest.mark.asyncio
    async def test_reserves_amount_for_doctor(self, db_manager, make_service, fake_stripe):
        async with db_manager.session() as session:
            intent = await make_service(session).authorize_payment(
                PATIENT, amount=15000, doctor_id=DOCTOR.id, customer_id="cus_123", when=WHEN
            )

        assert intent.id == "pi_new"
        assert intent.status == "requires_capture"
        path, form = fake_stripe.requests[0]
        assert path == "/payment_intents"
        assert form["customer"] == "cus_123"
        assert form["metadata[userId]"] == "7"
        assert form["metadata[doctorId]"] == "3"
        assert form["metadata[appointmentDate]"] == WHEN.isoformat()
        assert await count_rows(db_manager, Appointment) == 0

    @pytest.mark.asyncio
    async def test_unknown_doctor_is_not_charged(self, db_manager, make_service, fake_stripe):
        with pytest.raises(NotFoundError):
            async with db_manager.session() as session:
                await make_service(session).authorize_payment(
                    PATIENT, amount=15000, doctor_id=STRANGER.id, customer_id="cus_123"
                )
        assert fake_stripe.requests == []


class TestGet:
    @pytest.mark.asyncio
    async def test_participants_and_admin_can_read(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager)
        async with db_manager.session() as session:
            service = make_service(session)
            for actor in (PATIENT, DOCTOR, ADMIN):
                assert (await service.get(str(appointment_id), actor)).id == appointment_id

    @pytest.mark.asyncio
    async def test_outsiders_are_forbidden(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager)
        async with db_manager.session() as session:
            service = make_service(session)
            for actor in (STRANGER, OTHER_DOCTOR):
                with pytest.raises(ForbiddenError):
                    await service.get(appointment_id, actor)

    @pytest.mark.asyncio
    async def test_doctors_see_unassigned_requests(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager, doctor_id=None)
        async with db_manager.session() as session:
            appointment = await make_service(session).get(appointment_id, OTHER_DOCTOR)
        assert appointment.doctor_id is None

    @pytest.mark.asyncio
    async def test_missing_appointment(self, db_manager, make_service):
        async with db_manager.session() as session:
            with pytest.raises(NotFoundError):
                await make_service(session).get("999", ADMIN)


class TestJoin:
    @pytest.mark.asyncio
    async def test_doctor_claims_unassigned_appointment(
        self, db_manager, make_service, fake_daily
    ):
        await add_appointment(db_manager, id=42, doctor_id=None, is_emergency=True)

        async with db_manager.session() as session:
            appointment, room, token = await make_service(session).join("42", DOCTOR)

        assert room.name == "appointment-42-1736517600000"
        assert room.url == "https://cnvidas.daily.co/appointment-42-1736517600000"
        assert token.is_owner is True
        assert token.room_name == room.name
        assert appointment.doctor_id == DOCTOR.id

        stored = await fetch_appointment(db_manager, 42)
        assert stored.doctor_id == DOCTOR.id
        assert stored.telemed_room_name == room.name
        assert stored.telemed_link == room.url
        assert fake_daily.calls("POST", "/rooms") == 1

    @pytest.mark.asyncio
    async def test_emergency_room_lifetime(self, db_manager, make_service, fake_daily):
        await add_appointment(db_manager, id=42, doctor_id=None, is_emergency=True)

        async with db_manager.session() as session:
            await make_service(session).join("42", DOCTOR)

        room = fake_daily.rooms["appointment-42-1736517600000"]
        assert room["properties"]["exp"] == int(START_TIME) + 240 * 60
        assert fake_daily.token_requests[-1]["enable_recording"] == "cloud"

    @pytest.mark.asyncio
    async def test_repeat_join_reuses_room(self, db_manager, make_service, fake_daily, clock):
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            _, first_room, patient_token = await make_service(session).join(
                appointment_id, PATIENT
            )
        async with db_manager.session() as session:
            _, second_room, doctor_token = await make_service(session).join(
                appointment_id, DOCTOR
            )

        assert first_room.name == second_room.name
        assert first_room.url == second_room.url
        assert patient_token.is_owner is False
        assert doctor_token.is_owner is True
        assert fake_daily.calls("POST", "/rooms") == 1

    @pytest.mark.asyncio
    async def test_join_succeeds_while_room_still_reads_missing(
        self, db_manager, make_service, fake_daily
    ):
        fake_daily.hidden_reads = 4
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            _, first_room, _ = await make_service(session).join(appointment_id, PATIENT)
        async with db_manager.session() as session:
            _, second_room, token = await make_service(session).join(appointment_id, DOCTOR)

        assert first_room.state == ProvisioningState.ASSUMED_VISIBLE
        assert second_room.name == first_room.name
        assert token.room_name == first_room.name
        assert len(fake_daily.rooms) == 1
        assert len(fake_daily.token_requests) == 2

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.telemed_link == first_room.url

    @pytest.mark.asyncio
    async def test_outsiders_cannot_join(self, db_manager, make_service, fake_daily):
        appointment_id = await add_appointment(db_manager)

        for actor in (STRANGER, OTHER_DOCTOR):
            with pytest.raises(ForbiddenError):
                async with db_manager.session() as session:
                    await make_service(session).join(appointment_id, actor)

        assert fake_daily.requests == []
        assert (await fetch_appointment(db_manager, appointment_id)).telemed_room_name is None

    @pytest.mark.asyncio
    async def test_cancelled_appointment_cannot_be_joined(
        self, db_manager, make_service, fake_daily
    ):
        appointment_id = await add_appointment(
            db_manager, status=AppointmentStatus.CANCELLED
        )
        with pytest.raises(ConflictError):
            async with db_manager.session() as session:
                await make_service(session).join(appointment_id, PATIENT)
        assert fake_daily.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_first_joins_share_one_room(
        self, db_manager, make_service, clock
    ):
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session_b:
            service_b = make_service(session_b, FakeClock(START_TIME + 1000))
            # B reads the appointment before A has assigned a room
            stale = await service_b.get(appointment_id, DOCTOR)
            await session_b.commit()
            assert stale.telemed_room_name is None

            async with db_manager.session() as session_a:
                _, room_a, _ = await make_service(session_a).join(appointment_id, PATIENT)

            _, room_b, _ = await service_b.join(appointment_id, DOCTOR)

        assert room_a.name == room_b.name == f"appointment-{appointment_id}-1736517600000"
        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.telemed_room_name == room_a.name

    @pytest.mark.asyncio
    async def test_losing_doctor_claim_is_forbidden(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager, doctor_id=None)

        async with db_manager.session() as session_b:
            service_b = make_service(session_b)
            await service_b.get(appointment_id, OTHER_DOCTOR)
            await session_b.commit()

            async with db_manager.session() as session_a:
                await make_service(session_a).join(appointment_id, DOCTOR)

            with pytest.raises(ForbiddenError):
                await service_b.join(appointment_id, OTHER_DOCTOR)

        assert (await fetch_appointment(db_manager, appointment_id)).doctor_id == DOCTOR.id


class TestStartAndCapture:
    @pytest.mark.asyncio
    async def test_start_then_capture(self, db_manager, make_service, fake_stripe):
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            started = await make_service(session).start(appointment_id, DOCTOR)
            assert started.status == AppointmentStatus.IN_PROGRESS

        async with db_manager.session() as session:
            await make_service(session).capture_payment(appointment_id, DOCTOR)

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.status == AppointmentStatus.COMPLETED
        assert stored.payment_status == PaymentStatus.COMPLETED
        assert stored.payment_captured_at is not None
        assert fake_stripe.calls("/capture") == ["/payment_intents/pi_abc/capture"]

    @pytest.mark.asyncio
    async def test_start_twice_conflicts(self, db_manager, make_service):
        appointment_id = await add_appointment(
            db_manager, status=AppointmentStatus.IN_PROGRESS
        )
        async with db_manager.session() as session:
            with pytest.raises(ConflictError):
                await make_service(session).start(appointment_id, PATIENT)

    @pytest.mark.asyncio
    async def test_patients_cannot_capture(self, db_manager, make_service, fake_stripe):
        appointment_id = await add_appointment(db_manager)
        async with db_manager.session() as session:
            with pytest.raises(ForbiddenError):
                await make_service(session).capture_payment(appointment_id, PATIENT)
        assert fake_stripe.requests == []

    @pytest.mark.asyncio
    async def test_capture_without_authorization(self, db_manager, make_service):
        appointment_id = await add_appointment(
            db_manager, payment_intent_id=None, payment_status=None
        )
        async with db_manager.session() as session:
            with pytest.raises(ValidationError):
                await make_service(session).capture_payment(appointment_id, ADMIN)

    @pytest.mark.asyncio
    async def test_capture_twice_conflicts(self, db_manager, make_service, fake_stripe):
        appointment_id = await add_appointment(
            db_manager,
            status=AppointmentStatus.COMPLETED,
            payment_status=PaymentStatus.COMPLETED,
        )
        async with db_manager.session() as session:
            with pytest.raises(ConflictError):
                await make_service(session).capture_payment(appointment_id, DOCTOR)
        assert fake_stripe.requests == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_releases_authorization(self, db_manager, make_service, fake_stripe):
        await add_appointment(db_manager, id=42)

        async with db_manager.session() as session:
            await make_service(session).cancel("42", PATIENT, "no longer needed")

        stored = await fetch_appointment(db_manager, 42)
        assert stored.status == AppointmentStatus.CANCELLED
        assert stored.payment_status == PaymentStatus.CANCELLED
        assert "Cancelada: no longer needed" in stored.notes

        assert fake_stripe.calls("/cancel") == ["/payment_intents/pi_abc/cancel"]
        _, form = fake_stripe.requests[0]
        assert form["cancellation_reason"] == "requested_by_customer"

        assert len(await notifications_for(db_manager, DOCTOR.id)) == 1

    @pytest.mark.asyncio
    async def test_cancellation_is_committed_before_releasing_payment(
        self, db_manager, provisioner, clock
    ):
        appointment_id = await add_appointment(db_manager)
        payments = ObservingPayments(db_manager, appointment_id)

        async with db_manager.session() as session:
            service = AppointmentService(session, provisioner, payments, clock=clock)
            await service.cancel(appointment_id, PATIENT)

        assert payments.seen == (AppointmentStatus.CANCELLED, PaymentStatus.CANCELLED)

    @pytest.mark.asyncio
    async def test_cancel_note_appends_to_existing_notes(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager, notes="Retorno")

        async with db_manager.session() as session:
            await make_service(session).cancel(appointment_id, DOCTOR)

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.notes == "Retorno\nConsulta cancelada"

    @pytest.mark.asyncio
    async def test_captured_payment_blocks_cancellation(
        self, db_manager, make_service, fake_stripe
    ):
        appointment_id = await add_appointment(
            db_manager,
            status=AppointmentStatus.IN_PROGRESS,
            payment_status=PaymentStatus.COMPLETED,
        )

        with pytest.raises(ConflictError):
            async with db_manager.session() as session:
                await make_service(session).cancel(appointment_id, PATIENT, "too late")

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.status == AppointmentStatus.IN_PROGRESS
        assert stored.payment_status == PaymentStatus.COMPLETED
        assert stored.notes is None
        assert fake_stripe.requests == []

    @pytest.mark.asyncio
    async def test_payment_provider_failure_does_not_block(
        self, db_manager, make_service, fake_stripe
    ):
        fake_stripe.fail = True
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            await make_service(session).cancel(appointment_id, PATIENT)

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.status == AppointmentStatus.CANCELLED
        assert len(fake_stripe.calls("/cancel")) == 1

    @pytest.mark.asyncio
    async def test_cancel_without_payment_skips_provider(
        self, db_manager, make_service, fake_stripe
    ):
        appointment_id = await add_appointment(
            db_manager, payment_intent_id=None, payment_status=None
        )

        async with db_manager.session() as session:
            await make_service(session).cancel(appointment_id, PATIENT)

        stored = await fetch_appointment(db_manager, appointment_id)
        assert stored.status == AppointmentStatus.CANCELLED
        assert stored.payment_status is None
        assert fake_stripe.requests == []

    @pytest.mark.asyncio
    async def test_cancel_twice_conflicts(self, db_manager, make_service, fake_stripe):
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            await make_service(session).cancel(appointment_id, PATIENT)
        with pytest.raises(ConflictError):
            async with db_manager.session() as session:
                await make_service(session).cancel(appointment_id, PATIENT)

        assert len(fake_stripe.calls("/cancel")) == 1

    @pytest.mark.asyncio
    async def test_outsider_cannot_cancel(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager)
        with pytest.raises(ForbiddenError):
            async with db_manager.session() as session:
                await make_service(session).cancel(appointment_id, STRANGER)


class TestDelete:
    @pytest.mark.asyncio
    async def test_synthetic_id_is_a_no_op(
        self, db_manager, make_service, fake_daily, fake_stripe
    ):
        await add_appointment(db_manager)

        async with db_manager.session() as session:
            deleted = await make_service(session).delete("emergency-doctor-9", PATIENT)

        assert deleted is False
        assert await count_rows(db_manager, Appointment) == 1
        assert await count_rows(db_manager, Notification) == 0
        assert fake_daily.requests == []
        assert fake_stripe.requests == []

    @pytest.mark.asyncio
    async def test_numeric_id_deletes_row(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager)

        async with db_manager.session() as session:
            assert await make_service(session).delete(str(appointment_id), DOCTOR) is True

        assert await fetch_appointment(db_manager, appointment_id) is None
        notes = await notifications_for(db_manager, PATIENT.id)
        assert [n.related_id for n in notes] == [appointment_id]

    @pytest.mark.asyncio
    async def test_invalid_id(self, db_manager, make_service):
        async with db_manager.session() as session:
            with pytest.raises(ValidationError):
                await make_service(session).delete("abc", PATIENT)

    @pytest.mark.asyncio
    async def test_outsider_cannot_delete(self, db_manager, make_service):
        appointment_id = await add_appointment(db_manager)
        with pytest.raises(ForbiddenError):
            async with db_manager.session() as session:
                await make_service(session).delete(appointment_id, STRANGER)
        assert await fetch_appointment(db_manager, appointment_id) is not None
