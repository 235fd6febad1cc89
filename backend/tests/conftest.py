"""
AssistQR Backend — Test Configuration (conftest.py)
=====================================================

What:  Shared pytest fixtures for the entire test suite.
How:   Environment is pointed at throwaway SQLite files and a temp storage
       root BEFORE any assistqr module is imported, so the module-level
       settings, engine and storage singletons all pick them up.

Fixture Hierarchy:
    ├── db_tables:          server tables created, dropped after the test
    ├── db_session:         AsyncSession on the server database
    ├── seeded_vehicle:     vehicle with two emergency contacts
    ├── fanout_stub:        NotificationFanout stand-in (no network)
    ├── sample_image_bytes: tiny JPEG
    ├── offline_queue:      LocalQueue on a fresh SQLite file
    └── test_client:        HTTPX AsyncClient wired to the app (ASGITransport)
"""

import os
import tempfile

# ══════════════════════════════════════════════════════════════════════════
# Environment Setup (before any assistqr import)
# ══════════════════════════════════════════════════════════════════════════

_TEST_DIR = tempfile.mkdtemp(prefix="assistqr_test_")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/server.db"
os.environ["STORAGE_ROOT"] = os.path.join(_TEST_DIR, "storage")
os.environ["PUBLIC_BASE_URL"] = "http://testserver.local"
os.environ["REPORT_CHANNELS"] = "email"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["RATE_LIMIT_REQUESTS"] = "10000"
for _key in (
    "RESEND_API_KEY", "SENDGRID_API_KEY", "SMTP_HOST",
    "FAST2SMS_API_KEY", "TWILIO_ACCOUNT_SID", "TWILIO_AUTH_TOKEN",
):
    os.environ[_key] = ""

from datetime import datetime, timezone  # noqa: E402
from typing import Iterable, Sequence  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from assistqr.services.notifications.base import Channel, ContactInfo, ReportAlert  # noqa: E402
from assistqr.services.notifications.fanout import (  # noqa: E402
    FanoutResult,
    NotificationAttempt,
)

TEST_TOKEN = "tok-KA01AB1234"


# ══════════════════════════════════════════════════════════════════════════
# Server Database
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def db_tables():
    """
    Fresh server tables for one test.

    The engine is disposed afterwards: pooled aiosqlite connections must not
    outlive the event loop of the test that opened them.
    """
    from assistqr.database import Base, engine, init_db

    await init_db()
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_tables):
    from assistqr.database import async_session_factory

    async with async_session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seeded_vehicle(db_session):
    """
    A vehicle with one Indian contact (email + phone) and one US contact
    (phone only).
    """
    from assistqr.models.vehicle import EmergencyContact, Vehicle

    vehicle = Vehicle(
        license_plate="KA01AB1234",
        model="Honda City",
        color="White",
        qr_token=TEST_TOKEN,
        contacts=[
            EmergencyContact(name="Asha", phone_number="+919876543210", email="asha@example.com"),
            EmergencyContact(name="Ben", phone_number="+14155550123"),
        ],
    )
    db_session.add(vehicle)
    await db_session.commit()
    return vehicle


@pytest_asyncio.fixture
async def bare_vehicle(db_session):
    """A vehicle nobody can be alerted for."""
    from assistqr.models.vehicle import Vehicle

    vehicle = Vehicle(license_plate="MH12XY0001", model="Swift", qr_token="tok-no-contacts")
    db_session.add(vehicle)
    await db_session.commit()
    return vehicle


# ══════════════════════════════════════════════════════════════════════════
# Notification Stubs
# ══════════════════════════════════════════════════════════════════════════

class FanoutStub:
    """
    Records dispatch() calls and reports every contact as notified on every
    requested channel, unless `fail` is set.
    """

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def dispatch(
        self,
        alert: ReportAlert,
        contacts: Sequence[ContactInfo],
        channels: Iterable[Channel],
    ) -> FanoutResult:
        channels = list(channels)
        self.calls.append((alert, list(contacts), channels))
        result = FanoutResult(contact_count=len(contacts))
        for idx, contact in enumerate(contacts):
            for channel in channels:
                result.attempts.append(
                    NotificationAttempt(
                        channel=channel,
                        contact=contact,
                        success=not self.fail,
                        provider=None if self.fail else "stub",
                        error="stub failure" if self.fail else None,
                    )
                )
                result._contact_index.append(idx)
        return result


@pytest.fixture
def fanout_stub():
    return FanoutStub()


@pytest.fixture
def sample_alert():
    return ReportAlert(
        report_id="3f2c9a1e-0000-4000-8000-000000000001",
        license_plate="KA01AB1234",
        model="Honda City",
        color="White",
        reported_at=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        latitude=12.9716,
        longitude=77.5946,
        helper_note="Two people injured, ambulance called",
    )


@pytest.fixture
def mock_provider():
    """Factory for configured providers whose send() is scripted."""
    from unittest.mock import AsyncMock

    def make(name: str, side_effect=None, configured: bool = True):
        provider = MagicMock()
        provider.name = name
        provider.timeout = 1.0
        provider.is_configured.return_value = configured
        provider.send = AsyncMock(side_effect=side_effect)
        return provider

    return make


# ══════════════════════════════════════════════════════════════════════════
# Files
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def temp_storage(tmp_path):
    storage_dir = tmp_path / "storage"
    storage_dir.mkdir()
    return str(storage_dir)


@pytest.fixture
def sample_image_bytes():
    """Minimal JPEG: SOI marker + JFIF header + EOI marker."""
    return (
        b'\xff\xd8\xff\xe0\x00\x10JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00'
        b'\xff\xd9'
    )


# ══════════════════════════════════════════════════════════════════════════
# Offline Client
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def queue_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path}/offline.db"


@pytest_asyncio.fixture
async def offline_queue(queue_url):
    from assistqr.offline.queue import LocalQueue

    queue = LocalQueue(queue_url)
    await queue.init()
    yield queue
    await queue.close()


# ══════════════════════════════════════════════════════════════════════════
# HTTP
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(db_tables):
    """
    HTTPX AsyncClient talking to the app in-process.

    ASGITransport does not run the lifespan, so tables come from db_tables.
    """
    from assistqr.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
