# tests/conftest.py
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import pytest
from pydantic import SecretStr

from common.config import (
    AppConfig,
    AuthConfig,
    EnvLogLevel,
    Environment,
    LoggingConfig,
    PaymentConfig,
    VideoProviderConfig,
    configure_structlog,
)

# get_app_logger() refuses to log before structlog is configured
configure_structlog(logging.DEBUG)

from app.auth import Identity  # noqa: E402
from app.clients import DailyClient, StripePaymentClient  # noqa: E402
from app.db import DbManager  # noqa: E402
from app.db.models import (  # noqa: E402
    Appointment,
    AppointmentStatus,
    AppointmentType,
    PaymentStatus,
    User,
    UserRole,
)
from app.services.v1 import AppointmentService, RoomProvisioner  # noqa: E402

DAILY_URL = "https://api.daily.test/v1"
STRIPE_URL = "https://api.stripe.test/v1"
START_TIME = 1_736_517_600.0  # 2025-01-10T14:00:00Z


class FakeClock:
    """Deterministic clock; sleeping just moves time forward."""

    def __init__(self, start: float = START_TIME):
        self._now = start
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self._now += seconds


class FakeDaily:
    """In-memory stand-in for the Daily.co REST API."""

    def __init__(self) -> None:
        self.rooms: dict[str, dict[str, Any]] = {}
        self.requests: list[tuple[str, str, Optional[dict[str, Any]]]] = []
        self.token_requests: list[dict[str, Any]] = []
        # GETs answered 404 for a room that does exist (propagation lag)
        self.hidden_reads = 0
        self.token_failures = 0
        self.create_status = 200
        self.down = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, method: str, prefix: str) -> int:
        return sum(1 for m, p, _ in self.requests if m == method and p.startswith(prefix))

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        path = request.url.path.removeprefix("/v1")
        self.requests.append((request.method, path, body))

        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        if request.method == "GET" and path.startswith("/rooms/"):
            name = path.removeprefix("/rooms/")
            if name in self.rooms and self.hidden_reads > 0:
                self.hidden_reads -= 1
                return httpx.Response(404, json={"error": "not-found"})
            if name in self.rooms:
                return httpx.Response(200, json=self.rooms[name])
            return httpx.Response(404, json={"error": "not-found"})

        if request.method == "POST" and path == "/rooms":
            if self.create_status != 200:
                return httpx.Response(self.create_status, json={"info": "create failed"})
            name = body["name"]
            if name in self.rooms:
                return httpx.Response(
                    400,
                    json={
                        "error": "invalid-request-error",
                        "info": f"a room named {name} already exists",
                    },
                )
            self.rooms[name] = {
                "name": name,
                "url": f"https://somewhere-else.example/{name}",
                "config": {"exp": body["properties"]["exp"]},
                "properties": body["properties"],
            }
            return httpx.Response(200, json=self.rooms[name])

        if request.method == "POST" and path == "/meeting-tokens":
            properties = body["properties"]
            self.token_requests.append(properties)
            if self.token_failures > 0:
                self.token_failures -= 1
                return httpx.Response(500, json={"error": "server-error"})
            return httpx.Response(
                200,
                json={"token": f"tok-{properties['room_name']}-{properties['user_id']}"},
            )

        return httpx.Response(404, json={"error": "unknown endpoint"})


class FakeStripe:
    """Records payment-intent calls; can be told to fail."""

    def __init__(self) -> None:
        self.requests: list[tuple[str, dict[str, str]]] = []
        self.fail = False

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def calls(self, suffix: str) -> list[str]:
        return [path for path, _ in self.requests if path.endswith(suffix)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.removeprefix("/v1")
        form = dict(httpx.QueryParams(request.content.decode())) if request.content else {}
        self.requests.append((path, form))

        if self.fail:
            return httpx.Response(
                503, json={"error": {"message": "Stripe is having a bad day"}}
            )

        intent_id = path.split("/")[2] if path.count("/") >= 2 else "pi_new"
        status = "requires_capture"
        if path.endswith("/capture"):
            status = "succeeded"
        elif path.endswith("/cancel"):
            status = "canceled"
        return httpx.Response(
            200,
            json={"id": intent_id, "status": status, "amount": 15000, "currency": "brl"},
        )


@pytest.fixture
def auth_config() -> AuthConfig:
    return AuthConfig(jwt_secret=SecretStr("test-secret-that-is-long-enough-123"))


@pytest.fixture
def video_config() -> VideoProviderConfig:
    return VideoProviderConfig(api_key=SecretStr("daily-test-key"), api_url=DAILY_URL)


@pytest.fixture
def payment_config() -> PaymentConfig:
    return PaymentConfig(secret_key=SecretStr("sk_test_123"), api_url=STRIPE_URL)


@pytest.fixture
def app_config(auth_config, video_config, payment_config) -> AppConfig:
    return AppConfig(
        app_title="Telehealth Test",
        app_version="1.0.0",
        environment=Environment.DEVELOPMENT,
        logging=LoggingConfig(log_level=EnvLogLevel.DEBUG),
        auth=auth_config,
        video=video_config,
        payment=payment_config,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_daily() -> FakeDaily:
    return FakeDaily()


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
async def video_client(video_config, fake_daily):
    client = DailyClient(video_config, transport=fake_daily.transport)
    yield client
    await client.aclose()


@pytest.fixture
async def payment_client(payment_config, fake_stripe):
    client = StripePaymentClient(payment_config, transport=fake_stripe.transport)
    yield client
    await client.aclose()


@pytest.fixture
def provisioner(video_client, video_config, clock) -> RoomProvisioner:
    return RoomProvisioner(video_client, video_config, clock)


# -- database ----------------------------------------------------------------

PATIENT = Identity(id=7, email="maria@example.com", role=UserRole.PATIENT, full_name="Maria Souza")
DOCTOR = Identity(id=3, email="dr.silva@example.com", role=UserRole.DOCTOR, full_name="Dr. Silva")
OTHER_DOCTOR = Identity(id=4, email="dr.costa@example.com", role=UserRole.DOCTOR, full_name="Dr. Costa")
ADMIN = Identity(id=1, email="admin@example.com", role=UserRole.ADMIN, full_name="Admin")
STRANGER = Identity(id=8, email="joao@example.com", role=UserRole.PATIENT, full_name="Joao Lima")


@pytest.fixture
async def db_manager(tmp_path):
    manager = DbManager(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await manager.create_schema()
    async with manager.session() as session:
        session.add_all(
            [
                User(id=1, email=ADMIN.email, full_name=ADMIN.full_name, role=UserRole.ADMIN),
                User(id=3, email=DOCTOR.email, full_name=DOCTOR.full_name, role=UserRole.DOCTOR),
                User(
                    id=4,
                    email=OTHER_DOCTOR.email,
                    full_name=OTHER_DOCTOR.full_name,
                    role=UserRole.DOCTOR,
                ),
                User(
                    id=7,
                    email=PATIENT.email,
                    full_name=PATIENT.full_name,
                    role=UserRole.PATIENT,
                    subscription_plan="basic",
                    emergency_consultations_left=2,
                ),
                User(
                    id=8,
                    email=STRANGER.email,
                    full_name=STRANGER.full_name,
                    role=UserRole.PATIENT,
                ),
            ]
        )
    yield manager
    await manager.dispose()


async def add_appointment(manager: DbManager, **fields: Any) -> int:
    values: dict[str, Any] = {
        "user_id": PATIENT.id,
        "doctor_id": DOCTOR.id,
        "date": datetime(2025, 1, 10, 14, 0, tzinfo=timezone.utc),
        "status": AppointmentStatus.SCHEDULED,
        "type": AppointmentType.TELEMEDICINE,
        "payment_intent_id": "pi_abc",
        "payment_amount": 15000,
        "payment_status": PaymentStatus.AUTHORIZED,
    }
    values.update(fields)
    async with manager.session() as session:
        appointment = Appointment(**values)
        session.add(appointment)
        await session.flush()
        return appointment.id


async def fetch_appointment(manager: DbManager, appointment_id: int) -> Optional[Appointment]:
    async with manager.session() as session:
        return await session.get(Appointment, appointment_id)


@pytest.fixture
def make_service(provisioner, payment_client, clock):
    def _make(session, service_clock: Optional[FakeClock] = None) -> AppointmentService:
        return AppointmentService(
            session, provisioner, payment_client, clock=service_clock or clock
        )

    return _make
