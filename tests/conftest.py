"""
tests/conftest.py
Shared fixtures: SQLite test database, fakeredis, eager Celery,
HTTP client over the ASGI app, and user/booking factories.
"""

import os

os.environ.update({
    "APP_ENV": "test",
    "SECRET_KEY": "test-secret-key",
    "DATABASE_URL": "sqlite+aiosqlite:///./test_travel.db",
    "GOOGLE_CLIENT_ID": "test-google-client-id",
    "GOOGLE_CLIENT_SECRET": "test-google-client-secret",
    "JWT_SECRET_KEY": "test-jwt-secret",
    "STRIPE_SECRET_KEY": "sk_test_dummy",
    "STRIPE_WEBHOOK_SECRET": "whsec_test",
    "RESEND_API_KEY": "",
    "RATE_LIMIT_PER_MINUTE": "10000",
    "RATE_LIMIT_UNAUTH_PER_MINUTE": "10000",
})

import uuid
from datetime import date, timedelta
from decimal import Decimal

import fakeredis.aioredis
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

import config.redis_client as redis_state
from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from main import app
from shared.models.models import (
    Booking,
    BookingStatus,
    PaymentStatus,
    User,
    UserRole,
)
from shared.utils.resilience import circuit_breaker_manager
from shared.utils.security import create_access_token, hash_password
from tasks.celery_app import celery_app

TEST_PASSWORD = "password123"
TEST_PASSWORD_HASH = hash_password(TEST_PASSWORD)

celery_app.conf.task_always_eager = True


def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


async def make_booking(db: AsyncSession, user: User, **overrides) -> Booking:
    start = date.today() + timedelta(days=30)
    values = {
        "user_id": user.id,
        "email": user.email,
        "destination": "Lisbon, Portugal",
        "start_date": start,
        "end_date": start + timedelta(days=6),
        "passengers": {"adults": 2, "children": 0, "infants": 0},
        "hotel": {"name": "Hotel Avenida", "price_per_night": 120},
        "selected_activities": [{"name": "Tram 28 tour", "price": 40.0}],
        "price": "$1,200",
        "base_price": Decimal("1200.00"),
        "total_price": Decimal("1240.00"),
        "status": BookingStatus.PENDING_PAYMENT,
        "payment_status": PaymentStatus.PENDING,
        "modifications": [],
    }
    values.update(overrides)
    booking = Booking(**values)
    db.add(booking)
    await db.commit()
    await db.refresh(booking)
    return booking


# ── Infrastructure ─────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await client.flushall()
    redis_state.redis_client = client
    app.dependency_overrides[get_redis] = lambda: client
    circuit_breaker_manager.reset()
    yield client
    app.dependency_overrides.pop(get_redis, None)
    redis_state.redis_client = None
    await client.aclose()


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db():
    async with AsyncSessionLocal() as session:
        yield session


# ── Users ──────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def user(db: AsyncSession) -> User:
    u = User(
        id=uuid.uuid4(),
        email="traveller@example.com",
        name="Test Traveller",
        password_hash=TEST_PASSWORD_HASH,
        role=UserRole.USER,
        email_verified=True,
    )
    db.add(u)
    await db.commit()
    await db.refresh(u)
    return u


@pytest_asyncio.fixture
async def other_user(db: AsyncSession) -> User:
    u = User(
        id=uuid.uuid4(),
        email="someone.else@example.com",
        name="Someone Else",
        password_hash=TEST_PASSWORD_HASH,
        role=UserRole.USER,
    )
    db.add(u)
    await db.commit()
    await db.refresh(u)
    return u


@pytest_asyncio.fixture
async def admin_user(db: AsyncSession) -> User:
    u = User(
        id=uuid.uuid4(),
        email="admin@example.com",
        name="Admin User",
        password_hash=TEST_PASSWORD_HASH,
        role=UserRole.ADMIN,
        email_verified=True,
    )
    db.add(u)
    await db.commit()
    await db.refresh(u)
    return u


# ── Bookings ───────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def booking(db: AsyncSession, user: User) -> Booking:
    return await make_booking(db, user)


@pytest_asyncio.fixture
async def confirmed_booking(db: AsyncSession, user: User) -> Booking:
    return await make_booking(
        db,
        user,
        status=BookingStatus.CONFIRMED,
        payment_status=PaymentStatus.PAID,
        stripe_session_id="cs_test_confirmed",
        stripe_payment_intent_id="pi_test_confirmed",
    )
