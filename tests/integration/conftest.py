"""
Shared fixtures for the integration tests.

Each test gets its own SQLite file, a fake Redis, the stub payment gateway,
a mocked item catalog and a mocked notification transport.
"""
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ezrent import redis_client
from ezrent.config import get_settings
from ezrent.database import Base, get_db
from ezrent.main import app
from ezrent.middleware.auth import Actor, create_access_token
from ezrent.schemas.schemas import ActorRole, BookingCreateRequest, PaymentMethodEnum
from ezrent.services import catalog, notifications, reconciliation, webhooks
from ezrent.services.catalog import ItemSnapshot
from ezrent.services.money import Money

import ezrent.models  # noqa: F401  registers tables on Base.metadata

settings = get_settings()

WEBHOOK_SECRET = "whsk_integration"

CUSTOMER = Actor(id="cust-1", role=ActorRole.customer)
OTHER_CUSTOMER = Actor(id="cust-2", role=ActorRole.customer)
OWNER = Actor(id="owner-1", role=ActorRole.owner)
ADMIN = Actor(id="admin-1", role=ActorRole.admin)


def auth_headers(actor: Actor) -> dict:
    token = create_access_token({"sub": actor.id, "role": actor.role.value})
    return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}


@pytest.fixture
def customer_headers():
    return auth_headers(CUSTOMER)


@pytest.fixture
def owner_headers():
    return auth_headers(OWNER)


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ezrent_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def redis(monkeypatch):
    fake = fakeredis.aioredis.FakeRedis(decode_responses=True)
    await fake.flushall()
    monkeypatch.setattr(redis_client, "_redis_pool", fake)
    yield fake
    await fake.aclose()


@pytest.fixture
def catalog_item(monkeypatch):
    """Item item-1 owned by owner-1, PHP 500 per day."""
    mock = AsyncMock(
        return_value=ItemSnapshot(
            item_id="item-1",
            available=True,
            price_per_unit=Money.from_major("500"),
            owner_id=OWNER.id,
        )
    )
    monkeypatch.setattr(catalog, "fetch_item", mock)
    return mock


@pytest.fixture
def sent(monkeypatch):
    """Notification transport; set side_effect to simulate SMTP / relay outages."""
    mock = AsyncMock()
    monkeypatch.setattr(notifications, "_send", mock)
    return mock


@pytest_asyncio.fixture(autouse=True)
async def wiring(monkeypatch, session_factory, redis, catalog_item, sent):
    monkeypatch.setattr(settings, "gateway_use_stub", True)
    monkeypatch.setattr(settings, "gateway_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "webhook_tolerance_seconds", 300)
    monkeypatch.setattr(settings, "commission_rate", Decimal("0.30"))
    monkeypatch.setattr(settings, "payment_retry_window_hours", 72)
    monkeypatch.setattr(settings, "intent_expiry_hours", 24)
    monkeypatch.setattr(settings, "booking_lock_wait_seconds", 5.0)
    monkeypatch.setattr(notifications, "AsyncSessionLocal", session_factory)

    async def override_get_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db] = override_get_db
    yield
    await notifications.wait_for_pending()
    app.dependency_overrides.pop(get_db, None)


@pytest_asyncio.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

PICKUP = datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)
RETURN = PICKUP + timedelta(days=3)


def booking_payload(method: PaymentMethodEnum = PaymentMethodEnum.gcash, **overrides) -> dict:
    """3 days at PHP 500 plus PHP 100 delivery: PHP 1,600."""
    payload = {
        "item_id": "item-1",
        "rental_duration": 3,
        "rental_period_unit": "day",
        "delivery_charge": "100",
        "payment_method": method.value,
        "pickup_date": PICKUP.isoformat(),
        "return_date": RETURN.isoformat(),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def make_booking(session_factory, redis):
    """Drive a booking to `stage` (pending, booked or approved) through the service layer."""

    async def _make(method: PaymentMethodEnum = PaymentMethodEnum.gcash, stage: str = "approved"):
        async with session_factory() as db:
            booking = await reconciliation.create_booking(
                db, CUSTOMER, BookingCreateRequest(**booking_payload(method))
            )
            if stage in ("booked", "approved"):
                await reconciliation.request_booking(db, redis, booking.id, CUSTOMER)
            if stage == "approved":
                await reconciliation.approve_booking(db, redis, booking.id, OWNER)
            return booking.id

    return _make


def payment_event(intent_id: str, event_type: str = "payment.paid", amount: int = 160000) -> bytes:
    return json.dumps({
        "data": {
            "id": f"evt_{event_type}_{intent_id}",
            "type": "event",
            "attributes": {
                "type": event_type,
                "livemode": False,
                "data": {
                    "id": f"pay_{intent_id}",
                    "type": "payment",
                    "attributes": {"amount": amount, "payment_intent_id": intent_id, "currency": "PHP"},
                },
            },
        }
    }).encode()


def signed(raw: bytes) -> dict:
    return {"Paymongo-Signature": webhooks.sign_payload(raw, WEBHOOK_SECRET), "Content-Type": "application/json"}
