"""Pytest configuration and fixtures for refreshvault tests.

Database handling:
- Every test gets a fresh in-memory SQLite database (aiosqlite), created
  from the model metadata. StaticPool keeps the single connection alive for
  the lifetime of the engine so the schema survives across sessions.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing refreshvault modules
os.environ["REFRESHVAULT_ENCRYPTION_KEY"] = "0" * 64  # Valid 32-byte key for tests
os.environ["REFRESHVAULT_ENCRYPTION_KEY_ID"] = "k1"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["REFRESHVAULT_ADMIN_API_KEY"] = "test-admin-key-" + "x" * 32

TEST_ADMIN_KEY = os.environ["REFRESHVAULT_ADMIN_API_KEY"]

TEST_KEY_HEX = "a" * 64
OLD_KEY_HEX = "b" * 64

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create an in-memory database engine with all tables."""
    from refreshvault.models import BaseModel

    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(BaseModel.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# --- Domain Fixtures ---


@pytest.fixture
def codec():
    """Codec with a fixed test key."""
    from refreshvault.services.crypto import TokenCodec

    return TokenCodec(current_key_id="k1", keys={"k1": bytes.fromhex(TEST_KEY_HEX)})


@pytest.fixture
def policy():
    """Default abuse policy: 5 attempts, 1 hour block window."""
    from refreshvault.services.validity import AbusePolicy

    return AbusePolicy(max_failed_attempts=5, block_window=timedelta(hours=1))


@pytest.fixture
def now() -> datetime:
    return datetime.now(UTC)


@pytest_asyncio.fixture
async def user_factory(db_session) -> Callable[..., Awaitable[Any]]:
    """Factory creating persisted users."""
    from refreshvault.models import User

    counter = 0

    async def _create(username: str | None = None, is_active: bool = True) -> User:
        nonlocal counter
        counter += 1
        user = User(username=username or f"user{counter}", is_active=is_active)
        db_session.add(user)
        await db_session.commit()
        return user

    return _create


@pytest_asyncio.fixture
async def token_factory(db_session, codec) -> Callable[..., Awaitable[Any]]:
    """Factory inserting refresh token rows directly, in any state.

    Returns (record, plaintext). Bypasses issuance so tests can create
    already-expired, revoked or blocked records.
    """
    from refreshvault.models import RefreshToken

    async def _create(user, **fields: Any) -> tuple[RefreshToken, str]:
        current = datetime.now(UTC)
        plaintext = codec.generate()
        encrypted, key_id = codec.encrypt_for_storage(plaintext)
        fields.setdefault("issued_at", current)
        fields.setdefault("expires_at", current + timedelta(days=7))
        record = RefreshToken(
            token_hash=codec.lookup_hash(plaintext),
            encrypted_value=encrypted,
            key_id=key_id,
            owner_user_id=user.id,
            **fields,
        )
        db_session.add(record)
        await db_session.commit()
        return record, plaintext

    return _create


@pytest.fixture
def token_service(db_session, codec, policy):
    """RefreshTokenService bound to the test session."""
    from refreshvault.services.refresh_tokens import RefreshTokenService

    return RefreshTokenService(db_session, codec=codec, policy=policy)


@pytest.fixture
def registry(db_session, codec, policy):
    """SessionRegistry bound to the test session."""
    from refreshvault.services.session_registry import SessionRegistry

    return SessionRegistry(db_session, codec, policy)


@pytest.fixture
def abuse_counter(db_session, policy):
    """AbuseCounter bound to the test session."""
    from refreshvault.services.abuse_counter import AbuseCounter

    return AbuseCounter(db_session, policy)


@pytest.fixture
def admin_key() -> str:
    """The bearer key the test app accepts on /api."""
    return TEST_ADMIN_KEY


@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with database override."""
    from refreshvault.core.database import get_db
    from refreshvault.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": f"Bearer {TEST_ADMIN_KEY}"},
    ) as client:
        yield client

    app.dependency_overrides.clear()
