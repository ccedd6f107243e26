"""Pytest configuration and fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest
from cryptography.fernet import Fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Create a temporary directory for the application database
_test_tmp_dir = tempfile.mkdtemp(prefix="storagesync_test_")

# Set config BEFORE importing storagesync modules
os.environ["STORAGESYNC_DATABASE_URL"] = f"sqlite+aiosqlite:///{Path(_test_tmp_dir) / 'app.db'}"
os.environ["STORAGESYNC_ENCRYPTION_KEY"] = Fernet.generate_key().decode()
os.environ["STORAGESYNC_SYNC_ENABLED"] = "false"

from storagesync.core.security import TokenCipher
from storagesync.db import get_db
from storagesync.db.base import Base
from storagesync.db.models import ConnectionStatus, StorageConnection
from storagesync.providers.base import StorageProvider, TokenResponse
from storagesync.providers.registry import ProviderRegistry
from storagesync.services.audit import AuditLogger
from storagesync.services.cache import CacheService
from storagesync.services.folder_manager import FolderManager
from storagesync.services.rate_limiter import RateLimiter
from storagesync.services.sync import SyncService
from storagesync.services.token_manager import TokenManager


class FakeClock:
    """Controllable UTC clock for the rate limiter."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 3, 1, 10, 15, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
async def test_engine(tmp_path):
    """Create a per-test SQLite database file with all tables."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test_storagesync.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def cipher():
    return TokenCipher(Fernet.generate_key())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rate_limiter(clock):
    return RateLimiter(clock=clock)


@pytest.fixture
def cache():
    return CacheService(default_ttl=60)


@pytest.fixture
def audit(session_factory):
    return AuditLogger(session_factory)


@pytest.fixture
def fake_provider():
    """A StorageProvider whose operations are AsyncMocks."""
    provider = MagicMock(spec=StorageProvider)
    provider.provider_id = "google-drive"
    provider.refresh_access_token = AsyncMock(
        return_value=TokenResponse(
            access_token="new-access",
            refresh_token=None,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
        )
    )
    provider.create_folder = AsyncMock()
    provider.list_folders = AsyncMock(return_value=[])
    provider.get_changes = AsyncMock()
    return provider


@pytest.fixture
def registry(fake_provider):
    """Registry whose google-drive and dropbox factories return the fake provider."""
    registry = ProviderRegistry()
    registry.created_with = []

    def factory(access_token, refresh_token=None):
        registry.created_with.append((access_token, refresh_token))
        return fake_provider

    registry.register("google-drive", factory)
    registry.register("dropbox", factory)
    return registry


@pytest.fixture
def token_manager(session_factory, registry, rate_limiter, cipher, audit, cache):
    return TokenManager(
        session_factory,
        registry=registry,
        rate_limiter=rate_limiter,
        cipher=cipher,
        audit=audit,
        cache=cache,
    )


@pytest.fixture
def folder_manager(session_factory, token_manager, rate_limiter):
    return FolderManager(
        session_factory,
        token_manager=token_manager,
        rate_limiter=rate_limiter,
    )


@pytest.fixture
def sync_service(session_factory, token_manager, folder_manager, rate_limiter, cache, audit):
    return SyncService(
        session_factory,
        token_manager=token_manager,
        folder_manager=folder_manager,
        rate_limiter=rate_limiter,
        cache=cache,
        audit=audit,
    )


@pytest.fixture
def add_connection(session_factory, cipher):
    """Insert a StorageConnection with encrypted tokens."""

    async def _add(
        user_id: int = 1,
        provider: str = "google-drive",
        access_token: str = "access",
        refresh_token: str | None = "refresh",
        expires_in: timedelta | None = timedelta(hours=1),
        status: ConnectionStatus = ConnectionStatus.ACTIVE,
    ) -> StorageConnection:
        connection = StorageConnection(
            user_id=user_id,
            provider=provider,
            access_token=cipher.encrypt(access_token),
            refresh_token=cipher.encrypt(refresh_token) if refresh_token else None,
            expires_at=datetime.now(timezone.utc) + expires_in if expires_in is not None else None,
            status=status,
        )
        async with session_factory() as db:
            db.add(connection)
            await db.commit()
        return connection

    return _add


@pytest.fixture
async def client(session_factory, sync_service, rate_limiter, cache):
    """Create a test client with overridden database and service dependencies."""
    from storagesync.api.routes import storage
    from storagesync.main import app
    from storagesync.services.sync import get_sync_service

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sync_service] = lambda: sync_service
    app.dependency_overrides[storage.get_rate_limiter] = lambda: rate_limiter
    app.dependency_overrides[storage.get_cache] = lambda: cache

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as test_client:
        yield test_client

    # Clean up override
    app.dependency_overrides.clear()


def pytest_sessionfinish(session, exitstatus):
    """Clean up temp directories after test session."""
    import shutil

    if Path(_test_tmp_dir).exists():
        shutil.rmtree(_test_tmp_dir, ignore_errors=True)
