"""
Pytest configuration and fixtures.

Provides:
- In-memory SQLite database with all tables
- Fake platform providers/adapters and a recording notifier
- Factories for platform configurations and webhooks
"""
# Settings are read at import time, so the environment comes first
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("ENCRYPTION_KEY", "4f" * 32)
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only")

import json
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from msgrelay.models.base import Base
from msgrelay.models.delivery import DeliveryAttempt  # noqa: F401
from msgrelay.models.job import DispatchJob  # noqa: F401
from msgrelay.models.platform import PlatformConfig
from msgrelay.models.webhook import Webhook, WebhookDelivery  # noqa: F401
from msgrelay.platforms.registry import PlatformRegistry
from msgrelay.services import crypto
from tests.support import TENANT_A, TEST_ENCRYPTION_KEY, FakeProvider, RecordingNotifier

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(autouse=True)
def encryption_key():
    crypto.initialize_encryption_key(TEST_ENCRYPTION_KEY)
    yield TEST_ENCRYPTION_KEY


@pytest.fixture
async def async_engine():
    """Create async test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider("telegram")


@pytest.fixture
def registry(provider):
    registry = PlatformRegistry()
    registry.register(provider)
    return registry


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_platform(db_session):
    """Factory creating a PlatformConfig with encrypted credentials."""

    async def _make(
        tenant_id: str = TENANT_A,
        platform: str = "telegram",
        credentials: dict | None = None,
        is_active: bool = True,
        credentials_encrypted: str | None = None,
    ) -> PlatformConfig:
        config = PlatformConfig(
            tenant_id=tenant_id,
            platform=platform,
            name=f"{platform} bot",
            credentials_encrypted=credentials_encrypted or crypto.encrypt(
                json.dumps(credentials or {"token": "bot-token-123"})
            ),
            webhook_token="hook-token-xyz",
            is_active=is_active,
        )
        db_session.add(config)
        await db_session.commit()
        await db_session.refresh(config)
        return config

    return _make


@pytest.fixture
def make_webhook(db_session):
    """Factory creating a Webhook subscription."""

    async def _make(
        tenant_id: str = TENANT_A,
        url: str = "https://hooks.example.com/msgrelay",
        events: list[str] | None = None,
        secret: str = "whsec_test",
        is_active: bool = True,
    ) -> Webhook:
        webhook = Webhook(
            tenant_id=tenant_id,
            name="test hook",
            url=url,
            events=events if events is not None else ["message.sent", "message.failed"],
            secret=secret,
            is_active=is_active,
        )
        db_session.add(webhook)
        await db_session.commit()
        await db_session.refresh(webhook)
        return webhook

    return _make
