"""Pytest configuration and fixtures.

Service tests run against the in-memory stores with a controllable clock.

PostgreSQL Handling (SQL store tests only):
- TEST_DATABASE_URL is used when set
- Otherwise, if testcontainers is installed and Docker is available, a PostgreSQL container is started
- Tests using the db_session_maker fixture are skipped if neither is available
"""

import asyncio
import functools
import inspect
import os
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from argon2 import PasswordHasher
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, NullPool

# Set test environment variables before importing app modules
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-sessionkeeper-tests-0123456789"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["DEBUG"] = "false"

from sessionkeeper.core.config import Settings  # noqa: E402
from sessionkeeper.services.account_guard import AccountGuard  # noqa: E402
from sessionkeeper.services.auth import AuthenticationFacade  # noqa: E402
from sessionkeeper.services.passwords import Argon2SecretVerifier  # noqa: E402
from sessionkeeper.services.revocation import RevocationRegistry  # noqa: E402
from sessionkeeper.services.session_issuer import SessionIssuer  # noqa: E402
from sessionkeeper.services.token_codec import SignedTokenCodec  # noqa: E402
from sessionkeeper.storage.memory import (  # noqa: E402
    MemoryAccountStore,
    MemoryBlacklistStore,
    MemoryCredentialStore,
)
from sessionkeeper.storage.records import DeviceContext, UserAccount  # noqa: E402

TEST_SECRET = os.environ["JWT_SECRET_KEY"]
TEST_PASSWORD = "correct horse battery staple"
TEST_EPOCH = datetime(2026, 1, 1, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = TEST_EPOCH):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        self._now += delta if delta is not None else timedelta(**kwargs)
        return self._now


class YieldingStore:
    """Wraps a store so every coroutine method suspends before and after its work.

    The in-memory stores never await anything, so without this a gather of
    service calls runs each call to completion in turn. Calls are recorded as
    (task name, method name) in ``calls``.
    """

    def __init__(self, inner):
        self._inner = inner
        self.calls: list[tuple[str, str]] = []

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if not inspect.iscoroutinefunction(attr):
            return attr

        @functools.wraps(attr)
        async def _yielding(*args, **kwargs):
            await asyncio.sleep(0)
            task = asyncio.current_task()
            self.calls.append((task.get_name() if task else "", name))
            result = await attr(*args, **kwargs)
            await asyncio.sleep(0)
            return result

        return _yielding


# --- Core fixtures ---


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        jwt_secret_key=TEST_SECRET,
        storage_backend="memory",
        max_active_devices=3,
        lockout_threshold=5,
        lockout_duration_minutes=60,
    )


@pytest.fixture(scope="session")
def verifier() -> Argon2SecretVerifier:
    """Argon2 with minimal cost so tests stay fast."""
    return Argon2SecretVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, hash_len=16, salt_len=8)
    )


@pytest.fixture(scope="session")
def password_hash(verifier: Argon2SecretVerifier) -> str:
    return verifier.hash(TEST_PASSWORD)


@pytest.fixture
def accounts() -> MemoryAccountStore:
    return MemoryAccountStore()


@pytest.fixture
def credentials(clock: FrozenClock) -> MemoryCredentialStore:
    return MemoryCredentialStore(refresh_token_ttl=timedelta(days=7), clock=clock)


@pytest.fixture
def blacklist_store() -> MemoryBlacklistStore:
    return MemoryBlacklistStore()


@pytest.fixture
def codec(clock: FrozenClock) -> SignedTokenCodec:
    return SignedTokenCodec(
        TEST_SECRET,
        issuer="sessionkeeper",
        audience="sessionkeeper-clients",
        clock=clock,
    )


@pytest.fixture
def registry(blacklist_store: MemoryBlacklistStore, clock: FrozenClock) -> RevocationRegistry:
    return RevocationRegistry(blacklist_store, clock=clock)


@pytest.fixture
def guard(accounts: MemoryAccountStore, clock: FrozenClock) -> AccountGuard:
    return AccountGuard(accounts, threshold=5, lock_duration=timedelta(hours=1), clock=clock)


@pytest.fixture
def issuer(
    credentials: MemoryCredentialStore,
    accounts: MemoryAccountStore,
    codec: SignedTokenCodec,
    clock: FrozenClock,
) -> SessionIssuer:
    return SessionIssuer(
        credentials,
        accounts,
        codec,
        access_token_ttl=timedelta(minutes=15),
        max_active_devices=3,
        clock=clock,
    )


@pytest.fixture
def facade(
    accounts: MemoryAccountStore,
    credentials: MemoryCredentialStore,
    verifier: Argon2SecretVerifier,
    guard: AccountGuard,
    issuer: SessionIssuer,
    registry: RevocationRegistry,
    codec: SignedTokenCodec,
    clock: FrozenClock,
) -> AuthenticationFacade:
    return AuthenticationFacade(
        accounts=accounts,
        credentials=credentials,
        verifier=verifier,
        guard=guard,
        issuer=issuer,
        registry=registry,
        codec=codec,
        operation_timeout=5.0,
        clock=clock,
    )


@pytest.fixture
def yielding_credentials(credentials: MemoryCredentialStore) -> YieldingStore:
    return YieldingStore(credentials)


@pytest.fixture
def yielding_accounts(accounts: MemoryAccountStore) -> YieldingStore:
    return YieldingStore(accounts)


@pytest.fixture
def yielding_issuer(
    yielding_credentials: YieldingStore,
    yielding_accounts: YieldingStore,
    codec: SignedTokenCodec,
    clock: FrozenClock,
) -> SessionIssuer:
    """Issuer over stores that interleave at every call."""
    return SessionIssuer(
        yielding_credentials,
        yielding_accounts,
        codec,
        access_token_ttl=timedelta(minutes=15),
        max_active_devices=3,
        clock=clock,
    )


@pytest.fixture
def yielding_facade(
    yielding_accounts: YieldingStore,
    yielding_credentials: YieldingStore,
    verifier: Argon2SecretVerifier,
    yielding_issuer: SessionIssuer,
    registry: RevocationRegistry,
    codec: SignedTokenCodec,
    clock: FrozenClock,
) -> AuthenticationFacade:
    return AuthenticationFacade(
        accounts=yielding_accounts,
        credentials=yielding_credentials,
        verifier=verifier,
        guard=AccountGuard(
            yielding_accounts, threshold=5, lock_duration=timedelta(hours=1), clock=clock
        ),
        issuer=yielding_issuer,
        registry=registry,
        codec=codec,
        operation_timeout=5.0,
        clock=clock,
    )


@pytest.fixture
def device() -> DeviceContext:
    return DeviceContext(ip_address="203.0.113.7", user_agent="pytest-client/1.0", device_id="A")


# --- Test Factories ---


@pytest.fixture
def user_factory(accounts: MemoryAccountStore, password_hash: str):
    """Factory for registering accounts in the in-memory account store."""
    counter = 0

    def _create_user(
        email: str | None = None,
        username: str | None = None,
        **kwargs,
    ) -> UserAccount:
        nonlocal counter
        counter += 1
        user = UserAccount(
            id=kwargs.pop("id", uuid.uuid4()),
            email=email or f"user{counter}@example.com",
            username=username if username is not None else f"user{counter}",
            password_hash=kwargs.pop("password_hash", password_hash),
            display_name=kwargs.pop("display_name", f"Test User {counter}"),
            secondary_id=kwargs.pop("secondary_id", f"S{counter:05d}"),
            **kwargs,
        )
        return accounts.add(user)

    return _create_user


@pytest.fixture
def user(user_factory) -> UserAccount:
    return user_factory(email="alice@example.com", username="alice")


@pytest_asyncio.fixture
async def async_client(facade: AuthenticationFacade, test_settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the app, wired to the in-memory facade."""
    from sessionkeeper.main import create_app

    app = create_app(test_settings, facade=facade)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --- PostgreSQL Container Management ---

_container = None
_pg_available: bool | None = None
_database_url: str | None = None


def _try_testcontainers() -> str | None:
    """Try to start PostgreSQL using testcontainers.

    Returns database URL if successful, None otherwise.
    """
    try:
        from testcontainers.postgres import PostgresContainer
    except ImportError:
        return None

    global _container
    try:
        _container = PostgresContainer(
            image="postgres:15-alpine",
            username="test",
            password="test",
            dbname="sessionkeeper_test",
        )
        _container.start()

        url = _container.get_connection_url()
        async_url = url.replace("postgresql+psycopg2://", "postgresql+asyncpg://")
        return async_url.replace("postgresql://", "postgresql+asyncpg://")
    except Exception as e:
        # Docker not available or other error
        import warnings

        warnings.warn(f"Testcontainers not available: {e}", stacklevel=2)
        if _container:
            try:
                _container.stop()
            except Exception as stop_error:
                warnings.warn(f"Failed to stop container: {stop_error}", stacklevel=2)
            _container = None
        return None


def _get_database_url() -> str | None:
    global _database_url
    if _database_url is None:
        _database_url = os.environ.get("TEST_DATABASE_URL") or _try_testcontainers()
    return _database_url


async def _check_postgres_available() -> bool:
    global _pg_available
    if _pg_available is not None:
        return _pg_available

    url = _get_database_url()
    if url is None:
        _pg_available = False
        return False

    from sqlalchemy import text

    try:
        engine = create_async_engine(url, poolclass=NullPool)
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        await engine.dispose()
        _pg_available = True
    except Exception as e:
        import warnings

        warnings.warn(f"PostgreSQL not available: {e}", stacklevel=2)
        _pg_available = False
    return _pg_available


def pytest_sessionfinish(session, exitstatus):
    """Clean up testcontainers when tests finish."""
    global _container
    if _container:
        _container.stop()
        _container = None


@pytest_asyncio.fixture
async def db_session_maker() -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a freshly created schema."""
    if not await _check_postgres_available():
        pytest.skip("PostgreSQL test database not available")

    from sessionkeeper.core.database import Base
    from sessionkeeper.models import RefreshToken, TokenBlacklist, UserAccount  # noqa: F401

    engine = create_async_engine(_get_database_url(), poolclass=NullPool, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def pooled_session_maker(
    db_session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Session factory over a pool of exactly one connection.

    Shares the schema created by db_session_maker. A locked section that
    needs a second connection times out here instead of passing.
    """
    engine = create_async_engine(
        _get_database_url(),
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
        pool_timeout=5,
    )
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()
