"""Shared pytest fixtures.

Database tests run against in-memory SQLite (aiosqlite) with a StaticPool so
every session opened from ``session_factory`` sees the same database, the
way the orchestrator opens one short session per step in production.
"""

import os
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from republisher.clients.google_oauth import GoogleOAuthClient
from republisher.config import get_daily_video_limit
from republisher.database import create_test_engine
from republisher.models import Base
from republisher.services.publish_orchestrator import PublishOrchestrator
from republisher.services.token_service import TokenService
from republisher.utils.alerts import reset_alert_throttle
from republisher.utils.encryption import EncryptionService
from tests.support.fakes import FakeMediaEngine


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch):
    """Keep process-wide caches and outbound alerts out of every test."""
    monkeypatch.delenv("DISCORD_WEBHOOK_URL", raising=False)
    get_daily_video_limit.cache_clear()
    reset_alert_throttle()
    yield
    get_daily_video_limit.cache_clear()
    reset_alert_throttle()


@pytest.fixture
def valid_encryption_key() -> str:
    """A fresh 32-byte AES key as 64 hex characters."""
    return os.urandom(32).hex()


@pytest.fixture
def encryption_env(valid_encryption_key: str, monkeypatch: pytest.MonkeyPatch):
    """Set ENCRYPTION_KEY and reset the EncryptionService singleton around the test."""
    EncryptionService.reset_instance()
    monkeypatch.setenv("ENCRYPTION_KEY", valid_encryption_key)
    yield valid_encryption_key
    EncryptionService.reset_instance()


@pytest_asyncio.fixture
async def async_engine():
    """In-memory SQLite engine with all tables created."""
    engine, _ = create_test_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory bound to the test engine (expire_on_commit=False)."""
    return async_sessionmaker(bind=async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def async_session(session_factory):
    """A single session for tests that drive the database directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def oauth_client() -> AsyncMock:
    """GoogleOAuthClient double; configure refresh_access_token per test."""
    return AsyncMock(spec=GoogleOAuthClient)


@pytest.fixture
def fake_media_engine() -> FakeMediaEngine:
    return FakeMediaEngine()


@pytest.fixture
def download_root(tmp_path: Path) -> Path:
    return tmp_path / "downloads"


@pytest.fixture
def make_orchestrator(session_factory, oauth_client, download_root, encryption_env):
    """Build a PublishOrchestrator around the test database and doubles."""

    def _make(
        media_engine: FakeMediaEngine,
        daily_limit: int = 2,
        lease_seconds: int = 7200,
    ) -> PublishOrchestrator:
        return PublishOrchestrator(
            session_factory=session_factory,
            token_service=TokenService(session_factory, oauth_client),
            media_engine=media_engine,
            daily_limit=daily_limit,
            download_root=download_root,
            privacy_status="public",
            lease_seconds=lease_seconds,
        )

    return _make
