"""Test fixtures — fresh tables per test, fake receivers, tenant tokens."""

import os
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Force SQLite test database *before* any app import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_usage_webhooks.db"
os.environ["APP_ENV"] = "test"
os.environ["SECRET_KEY"] = "test-secret-key"

from app.database import Base, async_session, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.services.auth import create_access_token  # noqa: E402


@pytest_asyncio.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db():
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _bearer(**claims) -> dict:
    return {"Authorization": f"Bearer {create_access_token(claims)}"}


@pytest.fixture
def tenant_headers():
    return _bearer(sub="user-a", tenant_id="tenant-a")


@pytest.fixture
def other_tenant_headers():
    return _bearer(sub="user-b", tenant_id="tenant-b")


@pytest.fixture
def admin_headers():
    return _bearer(sub="ops", is_admin=True)


class FakeClock:
    """Settable clock for the queue's retry scheduling."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class Receiver:
    """Scripted webhook receiver behind an ``httpx.MockTransport``.

    ``responses`` are consumed in order; the last one repeats. An entry may
    be a status code or an exception instance to raise.
    """

    def __init__(self, *responses):
        self.responses = list(responses) or [200]
        self.requests: list[httpx.Request] = []
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        index = min(len(self.requests), len(self.responses)) - 1
        outcome = self.responses[index]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, text=f"status {outcome}")


@pytest.fixture
def clock():
    return FakeClock()


def naive(dt: datetime | None) -> datetime | None:
    """SQLite hands datetimes back without tzinfo; compare on naive UTC."""
    if dt is None or dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)
