"""
Shared fixtures: in-memory SQLite database, HTTP client with dependency
overrides, catalog/fleet factories and a Stripe signature helper.
"""
import hashlib
import hmac
import os
import time
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["SECRET_KEY"] = "test-secret"
os.environ.pop("NEW_RELIC_LICENSE_KEY", None)
os.environ.pop("STRIPE_SECRET_KEY", None)

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.database import Base, get_db
from app.main import app
from app.middleware.auth import create_access_token
from app.models import Booking, Driver, HotelZone, PricingRule, Vehicle, VehicleType
from app.redis_client import get_redis

WEBHOOK_SECRET = "whsec_test"


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """File-backed database: every session gets its own connection, so writes really interleave."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def fake_redis():
    redis = AsyncMock()
    redis.set = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.delete = AsyncMock(return_value=1)
    redis.eval = AsyncMock(return_value=1)
    return redis


@pytest.fixture(autouse=True)
def side_effects():
    """Notifications and background dispatch never leave the test process."""
    with patch("app.services.payment_events.notify") as notify_payment, \
         patch("app.services.payment_events.schedule_auto_dispatch") as auto_dispatch, \
         patch("app.services.bookings.notify") as notify_bookings, \
         patch("app.services.dispatch.notify") as notify_dispatch:
        yield SimpleNamespace(
            notify_payment=notify_payment,
            auto_dispatch=auto_dispatch,
            notify_bookings=notify_bookings,
            notify_dispatch=notify_dispatch,
        )


@pytest_asyncio.fixture
async def client(session_factory, fake_redis):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_redis():
        return fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@pytest.fixture
def dispatcher_headers():
    token = create_access_token({"sub": "dispatcher-001", "role": "dispatcher"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def driver_headers():
    def _headers(driver_id: str) -> dict:
        token = create_access_token({"sub": driver_id, "role": "driver"})
        return {"Authorization": f"Bearer {token}"}
    return _headers


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def catalog(db):
    """Sedan + SUV classes, Bavaro hotels, PUJ→BAVARO rules."""
    sedan = VehicleType(id="vt-sedan", name="Sedan", passenger_capacity=3, luggage_capacity=3, display_order=1)
    suv = VehicleType(
        id="vt-suv", name="SUV", passenger_capacity=6, luggage_capacity=6,
        minimum_fare=Decimal("80"), display_order=2,
    )
    db.add_all([sedan, suv])
    db.add_all([
        HotelZone(hotel_name="Hard Rock Hotel", zone_code="BAVARO", search_terms=["hard rock punta cana"]),
        HotelZone(hotel_name="Barcelo Bavaro Palace", zone_code="BAVARO", search_terms=["barcelo bavaro"]),
        PricingRule(id="rule-sedan", vehicle_type_id="vt-sedan", origin="PUJ", destination="BAVARO",
                    base_price=Decimal("25")),
        PricingRule(id="rule-suv", vehicle_type_id="vt-suv", origin="PUJ", destination="BAVARO",
                    base_price=Decimal("100")),
    ])
    await db.commit()
    return SimpleNamespace(sedan=sedan, suv=suv)


@pytest.fixture
def make_booking(db):
    async def _make(**overrides) -> Booking:
        values = dict(
            customer_name="Ana Perez",
            customer_email="ana@example.com",
            customer_phone="+18095550100",
            pickup_location="PUJ Airport",
            dropoff_location="Hard Rock Hotel Punta Cana",
            pickup_datetime=datetime(2026, 12, 1, 10, 0, tzinfo=timezone.utc),
            passengers=2,
            vehicle_type="sedan",
            total_price=Decimal("25"),
            currency="usd",
            status="pending",
            payment_status="pending",
            details={"trip_type": "one_way"},
        )
        values.update(overrides)
        booking = Booking(**values)
        db.add(booking)
        await db.commit()
        return booking
    return _make


@pytest.fixture
def make_vehicle(db):
    async def _make(vehicle_id: str, vehicle_type: str = "sedan", status: str = "available") -> Vehicle:
        vehicle = Vehicle(id=vehicle_id, vehicle_type=vehicle_type, plate_number=f"PL-{vehicle_id}", status=status)
        db.add(vehicle)
        await db.commit()
        return vehicle
    return _make


@pytest.fixture
def make_driver(db):
    async def _make(driver_id: str, rating: float = 4.5, status: str = "active", vehicle_id=None) -> Driver:
        driver = Driver(
            id=driver_id,
            first_name=driver_id.title(),
            last_name="Driver",
            phone=f"+1809-{driver_id}",
            email=f"{driver_id}@example.com",
            rating=rating,
            status=status,
            vehicle_id=vehicle_id,
        )
        db.add(driver)
        await db.commit()
        return driver
    return _make


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Builds a Stripe-Signature header the way Stripe does (v1 = HMAC-SHA256)."""
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture
def stripe_signature():
    return sign_payload


def checkout_event(booking_id, event_type="checkout.session.completed", payment_status="paid", **obj) -> dict:
    data = {
        "id": "cs_test_123",
        "object": "checkout.session",
        "payment_status": payment_status,
        "payment_intent": "pi_test_123",
        "amount_total": 2500,
        "currency": "usd",
        "metadata": {"booking_id": booking_id} if booking_id else {},
    }
    data.update(obj)
    return {"id": "evt_test_1", "type": event_type, "data": {"object": data}}


@pytest.fixture
def make_checkout_event():
    return checkout_event
