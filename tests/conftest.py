"""
Test fixtures for the Savings API test suite.

This module provides shared fixtures used across all test files:

  - db_engine / session_factory / db_session: Fresh in-memory SQLite
    database for each test
  - cache: In-process MemoryCache standing in for Redis
  - queue: JobQueue that only runs jobs on an explicit drain()
  - outbox: Records every e-mail the notification handlers send
  - client: Async HTTP test client (unauthenticated)
  - authenticated_client: Test client with a registered CLIENT user
  - admin_client: Test client logged in as an ADMIN
  - make_user: Registers a client directly through auth_service
  - signup / read_code: Register through the API; read back e-mailed codes

Key design decisions:
  - In-memory SQLite (sqlite+aiosqlite://) is used for speed and isolation.
    Each test gets a completely fresh database; no state leaks between tests.
  - ASGITransport does not run the app lifespan, so the fixtures put the
    cache, queue, and device policy on app.state themselves.
  - The queue never starts a background pass by itself in tests. Tests
    that care about notifications call `await queue.drain()`.
  - One-time codes are read back from the database (read_code), exactly
    as an operator would; they never appear in API responses.
  - The admin_client fixture registers normally, promotes the user in the
    database, then logs in from a new device. Admins are auto-trusted, so
    that login exercises the device-trust asymmetry.
"""

import os

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-access-secret")
os.environ.setdefault("REFRESH_SECRET_KEY", "test-refresh-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("RUN_BACKGROUND_TASKS", "false")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from savings.cache import MemoryCache
from savings.database import Base, get_db
from savings.exceptions import SavingsAPIError
from savings.main import app
from savings.models.one_time_code import OneTimeCode, OtcPurpose
from savings.models.user import User, UserRole
from savings.services import auth_service
from savings.services.device_service import DeviceTrustPolicy
from savings.services.notification_service import EmailSender, NotificationService
from savings.services.queue_service import JobQueue


# In-memory SQLite for fast, isolated tests
TEST_DATABASE_URL = "sqlite+aiosqlite://"

CLIENT_PASSWORD = "SecurePass123!"
ADMIN_PASSWORD = "AdminPass123!"


class RecordingEmailSender(EmailSender):
    """Keeps sent e-mails in memory instead of delivering them."""

    def __init__(self):
        self.sent: list[dict] = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append({"to": to, "subject": subject, "body": body})

    def to(self, email: str) -> list[dict]:
        return [message for message in self.sent if message["to"] == email]


@pytest_asyncio.fixture
async def db_engine():
    """Create a fresh async engine with all tables for each test."""
    engine = create_async_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Provide an async session bound to the test engine."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def queue():
    return JobQueue(autostart=False)


@pytest.fixture
def outbox():
    return RecordingEmailSender()


@pytest.fixture
def notifications(queue, session_factory, outbox):
    service = NotificationService(queue, session_factory, outbox)
    service.register()
    return service


@pytest.fixture
def device_policy():
    return DeviceTrustPolicy()


@pytest.fixture
def read_code(session_factory):
    """
    Return an async helper that fetches the newest unused code for an
    e-mail address and purpose.
    """

    async def _read(email: str, purpose: OtcPurpose) -> str:
        async with session_factory() as session:
            result = await session.execute(
                select(OneTimeCode.code)
                .join(User, User.id == OneTimeCode.user_id)
                .where(User.email == email)
                .where(OneTimeCode.purpose == purpose)
                .where(OneTimeCode.is_used.is_(False))
                .order_by(OneTimeCode.created_at.desc())
                .limit(1)
            )
            return result.scalar_one()

    return _read


@pytest_asyncio.fixture
async def make_user(db_session, cache, queue):
    """
    Return an async factory that registers a CLIENT through auth_service.

    The user is committed, so other sessions can see it.
    """

    async def _make(
        email: str = "saver@example.com",
        device_id: str = "device-1",
        pin: str | None = None,
    ) -> User:
        user, _ = await auth_service.register(
            db_session,
            cache,
            queue,
            email=email,
            password=CLIENT_PASSWORD,
            first_name="Sam",
            last_name="Saver",
            device_id=device_id,
        )
        if pin is not None:
            await auth_service.set_transaction_pin(db_session, user, pin, CLIENT_PASSWORD)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def client(session_factory, cache, queue, device_policy, notifications):
    """
    Async HTTP test client with the test database and services injected.

    get_db is overridden with the same commit/rollback rules as production:
    domain errors commit, anything else rolls back.
    """

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except SavingsAPIError:
                await session.commit()
                raise
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.cache = cache
    app.state.queue = queue
    app.state.device_policy = device_policy

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


def bearer(body: dict) -> dict:
    """Authorization header from a register or login response body."""
    return {"Authorization": f"Bearer {body['tokens']['access_token']}"}


@pytest.fixture
def signup(client):
    """
    Return an async helper that registers through the API.

    The helper returns (response body, Authorization header).
    """

    async def _signup(
        email: str,
        password: str = CLIENT_PASSWORD,
        device_id: str = "device-1",
    ) -> tuple[dict, dict]:
        response = await client.post(
            "/auth/register",
            json={
                "email": email,
                "password": password,
                "first_name": "Test",
                "last_name": "User",
                "device_id": device_id,
            },
        )
        assert response.status_code == 201, f"Register failed: {response.text}"
        body = response.json()
        return body, bearer(body)

    return _signup


@pytest_asyncio.fixture
async def authenticated_client(client, signup):
    """
    Test client with a registered CLIENT user.

    Registers via the real endpoint, then sets the Authorization header on
    the client for all subsequent requests.
    """
    _, headers = await signup("testuser@example.com")
    client.headers.update(headers)
    return client


@pytest_asyncio.fixture
async def second_user_headers(signup):
    """Authorization header of a second CLIENT, for cross-user tests."""
    _, headers = await signup("seconduser@example.com", device_id="device-2")
    return headers


@pytest_asyncio.fixture
async def admin_headers(client, signup, session_factory, read_code):
    """
    Authorization header of an ADMIN.

    Registers a normal user, promotes it in the database (admins are
    provisioned by an operator, not self-service), then logs in from a
    device the account has never used.
    """
    body, _ = await signup("admin@example.com", password=ADMIN_PASSWORD)

    async with session_factory() as session:
        await session.execute(
            update(User)
            .where(User.email == "admin@example.com")
            .values(role=UserRole.ADMIN)
        )
        await session.commit()

    credentials = {
        "email": "admin@example.com",
        "password": ADMIN_PASSWORD,
        "device_id": "admin-laptop",
    }
    first = await client.post("/auth/login", json=credentials)
    assert first.status_code == 200, first.text
    assert first.json()["requires_otc"] is True

    code = await read_code("admin@example.com", OtcPurpose.LOGIN)
    second = await client.post("/auth/login", json={**credentials, "otc": code})
    assert second.status_code == 200, second.text
    assert body["user_id"] == second.json()["user_id"]
    return bearer(second.json())


@pytest_asyncio.fixture
async def admin_client(client, admin_headers):
    """Test client logged in as an ADMIN."""
    client.headers.update(admin_headers)
    return client
