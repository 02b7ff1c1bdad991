"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) with the production
models, so tests run without Docker / PostgreSQL / Redis.  External
collaborators (payment gateway, distance matrix, push notifications, search
snapshots) are replaced with in-memory fakes.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, patch
from zoneinfo import ZoneInfo

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from cabbooking.api.auth import issue_token
from cabbooking.config import settings
from cabbooking.domain.cancellation import CancellationPolicy
from cabbooking.domain.entities import Identity, Location
from cabbooking.domain.enums import PaymentMethod, TripType, UserRole, VehicleClass
from cabbooking.domain.fares import FareCalculator
from cabbooking.domain.tariffs import default_tariffs
from cabbooking.errors import ServiceUnavailableError
from cabbooking.infrastructure.database import Base
from cabbooking.infrastructure.models import DriverModel, UserModel
from cabbooking.integrations.gateway import PaymentGateway
from cabbooking.integrations.geocoder import DistanceProvider
from cabbooking.integrations.notifier import Notifier
from cabbooking.services.bookings import BookingService
from cabbooking.services.payments import PaymentReconciler

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

IST = ZoneInfo("Asia/Kolkata")


def local_time(days: int = 3, hour: int = 10, minute: int = 0) -> datetime:
    """An aware UTC datetime *days* from today at *hour*:*minute* Kolkata time."""
    day = datetime.now(IST).date() + timedelta(days=days)
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=IST).astimezone(
        timezone.utc
    )


def auth_header(user_id: int, role: UserRole = UserRole.CUSTOMER) -> dict:
    return {"Authorization": f"Bearer {issue_token(user_id, role)}"}


# ── Fakes ─────────────────────────────────────────────────────────────


class FakeGateway(PaymentGateway):
    key_id = "rzp_test_key"

    def __init__(self):
        self.orders: list[dict] = []
        self.refunds: list[tuple[str, int]] = []
        self.fail_orders = False
        self.fail_refunds = False

    async def create_order(self, amount_minor, currency, receipt, notes):
        if self.fail_orders:
            raise ServiceUnavailableError("Payment gateway is unavailable")
        order = {
            "id": f"order_{len(self.orders) + 1:04d}",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        }
        self.orders.append(order)
        return order

    async def refund(self, payment_id, amount_minor):
        if self.fail_refunds:
            raise ServiceUnavailableError("Payment gateway is unavailable")
        self.refunds.append((payment_id, amount_minor))
        return {"id": f"rfnd_{len(self.refunds)}", "amount": amount_minor}


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, token, title, body, data):
        self.sent.append({"token": token, "title": title, "data": data})

    def of_type(self, kind: str) -> list[dict]:
        return [n for n in self.sent if n["data"].get("type") == kind]


class FixedDistance(DistanceProvider):
    def __init__(self, km: Optional[float] = 230.0):
        self.km = km
        self.calls: list[list[dict]] = []

    async def route_km(self, stops):
        if self.km is None:
            raise ServiceUnavailableError("Unable to calculate distance")
        self.calls.append(list(stops))
        return self.km


class MemorySearchStore:
    def __init__(self):
        self.snapshots: dict[str, dict] = {}

    async def save(self, search_id, snapshot):
        self.snapshots[search_id] = snapshot
        return True

    async def load(self, search_id):
        return self.snapshots.get(search_id)


@dataclass
class Seeded:
    customer: UserModel
    other_customer: UserModel
    admin: UserModel
    driver_user: UserModel
    driver: DriverModel
    other_driver_user: UserModel
    other_driver: DriverModel


# ── Database ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded(session_factory) -> Seeded:
    async with session_factory() as session:
        customer = UserModel(name="Aarav Sharma", phone="9876543210",
                             email="aarav@example.com", fcm_token="tok-customer")
        other = UserModel(name="Priya Patel", phone="9876543211")
        admin = UserModel(name="Ops Admin", phone="9000000001", role=UserRole.ADMIN)
        driver_user = UserModel(name="Ramesh Yadav", phone="9812345670",
                                role=UserRole.DRIVER)
        other_driver_user = UserModel(name="Suresh Kumar", phone="9812345671",
                                      role=UserRole.DRIVER)
        session.add_all([customer, other, admin, driver_user, other_driver_user])
        await session.flush()

        driver = DriverModel(user_id=driver_user.id, name=driver_user.name,
                             phone=driver_user.phone, fcm_token="tok-driver")
        other_driver = DriverModel(user_id=other_driver_user.id,
                                   name=other_driver_user.name,
                                   phone=other_driver_user.phone)
        session.add_all([driver, other_driver])
        await session.commit()
        return Seeded(customer, other, admin, driver_user, driver,
                      other_driver_user, other_driver)


# ── Collaborators ─────────────────────────────────────────────────────


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def distance() -> FixedDistance:
    return FixedDistance()


@pytest.fixture
def search_store() -> MemorySearchStore:
    return MemorySearchStore()


@pytest.fixture
def calculator() -> FareCalculator:
    return FareCalculator(default_tariffs(), "Asia/Kolkata")


@pytest.fixture
def reconciler(db_session, gateway, notifier) -> PaymentReconciler:
    return PaymentReconciler(
        db_session,
        gateway,
        notifier,
        settings.gateway_key_secret,
        settings.gateway_webhook_secret,
    )


@pytest.fixture
def service(db_session, calculator, reconciler, distance, notifier,
            search_store) -> BookingService:
    return BookingService(
        db_session,
        calculator,
        CancellationPolicy(24, 0.20),
        reconciler,
        distance,
        notifier,
        search_store,
    )


@pytest.fixture
def book(service, seeded):
    """Create a 230 km Bengaluru -> Mysuru sedan booking (Rs 3623)."""

    async def _book(method=PaymentMethod.UPI, *, user=None, days=3, hour=10, **kw):
        identity = Identity((user or seeded.customer).id, UserRole.CUSTOMER)
        kw.setdefault("trip_type", TripType.ONE_WAY)
        kw.setdefault("vehicle_class", VehicleClass.SEDAN)
        return await service.create(
            identity,
            pickup=Location("Bengaluru", "MG Road", 12.9756, 77.6050),
            drop=Location("Mysuru", "Palace Road", 12.3052, 76.6552),
            start_time=local_time(days, hour),
            payment_method=method,
            **kw,
        )

    return _book


# ── API client ────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def client(session_factory, seeded, gateway, notifier, distance, search_store):
    """AsyncClient backed by SQLite and the fake collaborators."""
    with (
        patch("cabbooking.workers.sweeper.start_sweep_loop", new_callable=AsyncMock),
        patch("cabbooking.workers.sweeper.stop_sweep_loop", new_callable=AsyncMock),
    ):
        async def _test_db():
            async with session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        from cabbooking.api.app import create_app
        from cabbooking.api.dependencies import get_db, get_search_store
        from cabbooking.api.middleware import limiter
        from cabbooking.infrastructure.redis_client import get_redis
        from cabbooking.integrations.clients import (
            get_distance_provider,
            get_gateway,
            get_notifier,
        )

        fake_redis = AsyncMock()
        fake_redis.ping = AsyncMock(return_value=True)

        limiter.reset()
        app = create_app()
        app.dependency_overrides[get_db] = _test_db
        app.dependency_overrides[get_gateway] = lambda: gateway
        app.dependency_overrides[get_notifier] = lambda: notifier
        app.dependency_overrides[get_distance_provider] = lambda: distance
        app.dependency_overrides[get_search_store] = lambda: search_store
        app.dependency_overrides[get_redis] = lambda: fake_redis

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
