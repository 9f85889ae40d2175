"""Pytest configuration and fixtures for WorkTally tests.

Relational store: a throwaway SQLite file per test (aiosqlite).
Redis: fakeredis. API tests go through httpx over ASGITransport with
the database / Redis dependencies overridden.
"""

import os

# Must be set before worktally.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("PROVISIONING_RETRY_BASE_DELAY", "0")

import asyncio
from typing import AsyncGenerator

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from worktally.auth.jwt import create_access_token
from worktally.auth.password import hash_password
from worktally.database import create_all_tables, get_db, get_session_factory
from worktally.main import app
from worktally.models.public.user import User
from worktally.schemas.onboarding import (
    SubmitOnboarding,
    UpdateAdmin,
    UpdateOrganization,
    UpdateTeam,
    initial_state,
)
from worktally.services.data_client import ChangeFeed, ClientError, ClientResult, DataClient, ErrorCode
from worktally.services.onboarding_reducer import reduce
from worktally.services.onboarding_store import OnboardingStore
from worktally.services.provisioning import TenantProvisioner
from worktally.utils.redis_pool import get_redis

TEST_PASSWORD = "Sup3r$ecret"
ADMIN_EMAIL = "ada@example.com"


# ── Database ─────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'worktally.db'}", poolclass=NullPool)
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ── Redis ────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


# ── Services ─────────────────────────────────────────────────────

@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def data_client(session_factory, feed) -> DataClient:
    return DataClient(session_factory, feed=feed)


@pytest.fixture
def store(redis_client) -> OnboardingStore:
    return OnboardingStore(redis_client, "test-session")


@pytest.fixture
def provisioner(data_client, store, redis_client) -> TenantProvisioner:
    return TenantProvisioner(data_client, store, redis_client, attempts=3, base_delay=0)


class FaultyClient(DataClient):
    """DataClient whose selected calls always fail, counting every attempt."""

    def __init__(self, *args, fail_rpc=(), fail_query=(), fail_insert=(), query_delay=0.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_rpc = set(fail_rpc)
        self.fail_query = set(fail_query)
        self.fail_insert = set(fail_insert)
        self.query_delay = query_delay
        self.calls: list[str] = []

    @staticmethod
    def _boom() -> ClientResult:
        return ClientResult(error=ClientError(ErrorCode.DATABASE_ERROR.value, "connection reset"))

    async def rpc(self, name, args=None):
        self.calls.append(f"rpc:{name}")
        if name in self.fail_rpc:
            return self._boom()
        return await super().rpc(name, args)

    async def query(self, table, filters=None):
        self.calls.append(f"query:{table}")
        if self.query_delay:
            await asyncio.sleep(self.query_delay)
        if table in self.fail_query:
            return self._boom()
        return await super().query(table, filters)

    async def insert(self, table, rows):
        self.calls.append(f"insert:{table}")
        if table in self.fail_insert:
            return self._boom()
        return await super().insert(table, rows)


@pytest.fixture
def faulty_client(session_factory, feed):
    """Factory for FaultyClient on the test database."""

    def make(**faults) -> FaultyClient:
        return FaultyClient(session_factory, feed=feed, **faults)

    return make


@pytest.fixture
def faulty_provisioner(faulty_client, store, redis_client):
    """Factory: provisioner over a FaultyClient, returned with that client."""

    def make(attempts: int = 3, timeout: float | None = None, **faults):
        client = faulty_client(**faults)
        provisioner = TenantProvisioner(
            client, store, redis_client, attempts=attempts, base_delay=0, timeout=timeout
        )
        return provisioner, client

    return make


@pytest.fixture
def submit_wizard(store):
    """Write a submitted wizard state for `store`'s session."""

    async def submit(name: str = "Acme Co", team: dict | None = None, email: str = ADMIN_EMAIL) -> None:
        state = initial_state()
        state = reduce(
            state, UpdateOrganization(payload={"name": name, "industry": "construction", "size": "11-50"})
        )
        state = reduce(
            state,
            UpdateAdmin(payload={"firstName": "Ada", "lastName": "Lovelace", "email": email, "password": TEST_PASSWORD}),
        )
        if team:
            state = reduce(state, UpdateTeam(payload=team))
        state = reduce(state, SubmitOnboarding())
        await store.save(state)

    return submit


# ── HTTP client ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, redis_client) -> AsyncGenerator[AsyncClient, None]:
    """API client with database and Redis dependencies overridden."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_get_redis():
        return redis_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_redis] = override_get_redis

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Test data ────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    user = User(
        email="owner@example.com",
        full_name="Olivia Owner",
        hashed_password=hash_password(TEST_PASSWORD),
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
def auth_headers(test_user: User) -> dict:
    token = create_access_token(test_user.id, test_user.email)
    return {"Authorization": f"Bearer {token}"}


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: HTTP API tests")
    config.addinivalue_line("markers", "auth: Authentication tests")
