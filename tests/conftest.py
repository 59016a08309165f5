import os

# database.py builds its engine at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")

from datetime import date, timedelta

import httpx
import pytest
import respx
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from config import Settings, get_settings
from database import get_session
from main import app
from models import TimeSlot
from notifications import NotificationQueue, WebhookDispatcher
from payments import SquareClient

BOOKING_HOOK = "https://hooks.test/booking"
CONTACT_HOOK = "https://hooks.test/contact"
SQUARE_LINKS = "https://connect.squareupsandbox.com/v2/online-checkout/payment-links"


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite://",
        public_url="https://farm.test",
        admin_email="admin@farm.test",
        make_booking_webhook_url=BOOKING_HOOK,
        make_contact_webhook_url=CONTACT_HOOK,
        square_application_id="sq-app",
        square_application_secret="sq-secret",
        square_access_token="sq-token",
        square_location_id="LOC123",
        square_webhook_signature_key="sq-signature",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def future_date():
    return date.today() + timedelta(days=30)


@pytest.fixture
def add_slot(session):
    async def _add(visit_date, time="10:00 AM", max_capacity=10, max_bookings=5):
        slot = TimeSlot(date=visit_date, time=time, max_capacity=max_capacity, max_bookings=max_bookings)
        session.add(slot)
        await session.commit()
        return slot

    return _add


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def mock_http():
    # Unmatched requests get an empty 200 response
    with respx.mock(assert_all_called=False, assert_all_mocked=False) as router:
        yield router


@pytest.fixture
async def dispatcher(settings, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)

    dispatcher = WebhookDispatcher(settings, http=httpx.AsyncClient(), sleep=fake_sleep)
    yield dispatcher
    await dispatcher.aclose()


@pytest.fixture
async def notifications(dispatcher):
    queue = NotificationQueue(dispatcher)
    queue.start()
    yield queue
    await queue.stop(timeout=5)


@pytest.fixture
async def square(settings):
    client = SquareClient(settings, http=httpx.AsyncClient(), clock=lambda: 1751328000.0)
    yield client
    await client.aclose()


@pytest.fixture
async def client(settings, session_factory, square, notifications, mock_http):
    async def override_session():
        async with session_factory() as session:
            yield session

    app.state.session_factory = session_factory
    app.state.square = square
    app.state.notifications = notifications
    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_settings] = lambda: settings

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
