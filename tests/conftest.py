"""
Configuración de pytest para tests
"""
import pytest
import itertools
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from ondemand.config import Settings
from ondemand.lifecycle import BookingLifecycleManager
from ondemand.notifications import NotificationSender
from ondemand.schemas.booking import Actor, ActorRole, BookingCreate, BookingStatus
from ondemand.store import MemoryBookingStore, MongoBookingStore

CUSTOMER = Actor(role=ActorRole.customer, id="cust-1")
OTHER_CUSTOMER = Actor(role=ActorRole.customer, id="cust-2")
PROVIDER = Actor(role=ActorRole.provider, id="prov-1")
OTHER_PROVIDER = Actor(role=ActorRole.provider, id="prov-2")
ADMIN = Actor(role=ActorRole.admin, id="admin-1")

# Camino feliz desde pending hasta cada estado
PATH = {
    BookingStatus.pending: [],
    BookingStatus.confirmed: [],  # lo hace assign_provider
    BookingStatus.provider_on_way: [BookingStatus.provider_on_way],
    BookingStatus.in_progress: [BookingStatus.provider_on_way, BookingStatus.in_progress],
    BookingStatus.work_completed: [
        BookingStatus.provider_on_way, BookingStatus.in_progress, BookingStatus.work_completed,
    ],
}


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentOtp:
    contact_email: str
    code: str
    booking_id: str


class RecordingSender(NotificationSender):
    def __init__(self):
        self.sent: list[SentOtp] = []
        self.fail = False

    async def send_otp(self, contact, code, booking):
        if self.fail:
            raise RuntimeError("SMS gateway caído")
        self.sent.append(SentOtp(contact.email, code, booking.id))

    @property
    def last_code(self) -> str:
        return self.sent[-1].code


def booking_payload(**overrides) -> BookingCreate:
    data = {
        "service_id": "plumbing-service",
        "customer": {"name": "Test Customer", "email": "customer@example.com", "phone": "+919999999999"},
        "service_address": {
            "address_line1": "123 Main Street",
            "city": "Bangalore",
            "state": "Karnataka",
            "pincode": "560001",
        },
        "scheduled_date": "2026-10-20T10:00:00",
        "time_slot": {"start": "10:00", "end": "12:00"},
        "pricing": {"service_charge": 500, "tax": 90},
    }
    data.update(overrides)
    return BookingCreate.model_validate(data)


class SequentialOtp:
    """Códigos predecibles (100001, 100002...) para que ningún test dependa del azar."""

    def __init__(self):
        self._counter = itertools.count(100001)

    def __call__(self, length: int) -> str:
        return str(next(self._counter)).zfill(length)[-length:]


@pytest.fixture
def settings():
    return Settings(
        completion_otp_length=6,
        completion_otp_ttl_minutes=10,
        completion_otp_max_attempts=5,
        booking_id_prefix="OD-BK-",
        notification_timeout_seconds=1.0,
    )

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 20, 9, 0, 0))

@pytest.fixture
def sender():
    return RecordingSender()

@pytest.fixture
def store():
    return MemoryBookingStore()

@pytest.fixture
def mongo_db():
    """Base de datos Mongo en memoria (mongomock-motor), una por test"""
    client = AsyncMongoMockClient()
    return client[f"hoh108_test_{uuid.uuid4().hex[:8]}"]

@pytest.fixture
def mongo_store(mongo_db):
    return MongoBookingStore(mongo_db)

@pytest.fixture
def manager(store, sender, settings, clock):
    return BookingLifecycleManager(store, sender, settings=settings, clock=clock, otp_generator=SequentialOtp())

@pytest.fixture
def make_booking(manager):
    """Crea una reserva del CUSTOMER y la avanza hasta el estado pedido."""
    async def _make(status: BookingStatus = BookingStatus.pending):
        booking = await manager.create_booking(booking_payload(), CUSTOMER)
        if status == BookingStatus.pending:
            return booking
        booking = await manager.assign_provider(booking.id, PROVIDER.id, ADMIN)
        for step in PATH[status]:
            booking = await manager.transition(booking.id, step, PROVIDER)
        await manager.drain_notifications()
        return booking
    return _make

@pytest.fixture
async def client(manager):
    """Cliente HTTP contra la app con el store en memoria"""
    from ondemand.main import app
    from ondemand.dependencies import get_lifecycle_manager

    app.state.limiter = None
    app.dependency_overrides[get_lifecycle_manager] = lambda: manager
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
