import os
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from salon_booking import models  # noqa: F401
from salon_booking.core.config import EngineSettings
from salon_booking.core.database import Base, get_db
from salon_booking.main import app
from salon_booking.services.booking_engine import BookingEngine

# In-memory SQLite by default; point at PostgreSQL (see scripts/setup_test_db.py)
# to exercise SERIALIZABLE isolation.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Every test runs at this instant; bookings are made a couple of days ahead.
FIXED_NOW = datetime(2030, 6, 1, 8, 0)


def fixed_clock() -> datetime:
    return FIXED_NOW


class RecordingDispatcher:
    """Stands in for the Celery-backed dispatcher and keeps what was sent."""

    def __init__(self):
        self.sent = []

    async def send(self, recipient, channel, message, priority="normal", title=None):
        self.sent.append(
            {
                "recipient": recipient,
                "channel": channel,
                "message": message,
                "priority": priority,
                "title": title,
            }
        )


@pytest.fixture
async def db():
    """Create a fresh database session for each test."""
    options = {"echo": False}
    if TEST_DATABASE_URL.startswith("sqlite"):
        options["poolclass"] = StaticPool
        options["connect_args"] = {"check_same_thread": False}
    engine = create_async_engine(TEST_DATABASE_URL, **options)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)  # Clean slate
        await conn.run_sync(Base.metadata.create_all)

    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with async_session() as session:
        yield session

    await engine.dispose()


@pytest.fixture
def clock():
    return fixed_clock


@pytest.fixture
def engine_settings() -> EngineSettings:
    return EngineSettings(read_retry_backoff_seconds=0)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def booking_engine(db, engine_settings, dispatcher, clock) -> BookingEngine:
    return BookingEngine(db, settings=engine_settings, dispatcher=dispatcher, clock=clock)


@pytest.fixture
async def client(db, engine_settings, dispatcher, clock):
    """HTTP client against the app, wired to the test session.

    ASGITransport does not run the lifespan, so the shared clients are put on
    ``app.state`` here.
    """

    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.state.engine_settings = engine_settings
    app.state.dispatcher = dispatcher
    app.state.slot_cache = None
    app.state.clock = clock

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# Import all booking fixtures to make them available
pytest_plugins = ["tests.fixtures.booking_fixtures"]
