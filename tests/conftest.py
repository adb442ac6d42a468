"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

# Must be set before anything calls get_settings()
os.environ.setdefault("SERVICE_ROLE_KEY", "test-service-key")
os.environ.setdefault("ENCRYPTION_KEY", "")

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

from linebridge.database import Base
import linebridge.models  # noqa: F401  registers every table on Base.metadata

SERVICE_KEY = "test-service-key"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


# Register UUID as CHAR(32) for SQLite so hex values keep TEXT affinity
@compiles(UUID, "sqlite")
def _compile_uuid_sqlite(type_, compiler, **kw):
    return "CHAR(32)"


@pytest.fixture
async def engine():
    """In-memory SQLite engine shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    """Session factory for code that owns its transactions (gateway, worker, reaper)."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    """In-memory SQLite database session for tests."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    with patch("linebridge.utils.redis.get_redis", new_callable=AsyncMock) as mock:
        redis_mock = AsyncMock()
        redis_mock.set = AsyncMock(return_value=True)
        redis_mock.get = AsyncMock(return_value=None)
        redis_mock.ping = AsyncMock(return_value=True)
        mock.return_value = redis_mock
        yield redis_mock


@pytest.fixture
def mock_dispatcher():
    """MessageDispatcher double that reports a successful send."""
    dispatcher = MagicMock()
    dispatcher.send_message = AsyncMock(return_value={
        "message_id": "wamid.TEST123",
        "success": True,
        "error": None,
    })
    return dispatcher


@pytest.fixture
def make_integration(db):
    """Factory that inserts an Integration row with sensible defaults."""
    from linebridge.models.integration import Integration

    async def _make(**overrides) -> Integration:
        token_fields = {
            "access_token": overrides.pop("access_token", "access-old"),
            "refresh_token": overrides.pop("refresh_token", "refresh-old"),
            "client_secret": overrides.pop("client_secret", "secret-1"),
        }
        defaults = {
            "workspace_id": uuid.UUID("22222222-2222-2222-2222-222222222222"),
            "domain": "acme.bitrix24.com",
            "member_id": "m1",
            "client_endpoint": "https://acme.bitrix24.com/rest/",
            "client_id": "app.client",
            "token_expires_at": datetime.now(timezone.utc) + timedelta(hours=1),
            "is_active": True,
            "instance_id": "wa-default",
        }
        defaults.update(overrides)
        integration = Integration(**defaults)
        for key, value in token_fields.items():
            setattr(integration, key, value)
        db.add(integration)
        await db.commit()
        return integration

    return _make


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {SERVICE_KEY}"}
