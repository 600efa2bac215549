import os
import uuid
from typing import AsyncGenerator

# Settings are read once at import time; pin the test environment first
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["PAYMENT_GATEWAY"] = "fake"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from libs.common.config import get_settings

get_settings.cache_clear()

from libs.db.base import Base
from libs.db.session import get_async_db
from services.store_service import models as _store_models  # noqa: F401
from services.store_service.payment_gateway import (
    FakeGateway,
    get_gateway,
    reset_gateway,
    set_gateway,
)
from services.store_service.services.notifications import (
    NotificationClient,
    get_notifier,
    set_notifier,
)


class RecordingNotifier(NotificationClient):
    """Notifier that remembers what it was asked to send."""

    def __init__(self, fail: bool = False):
        super().__init__(base_url="http://notifications.test")
        self.fail = fail
        self.sent: list[dict] = []

    async def send(self, kind, order_id, *, to_email=None, template_data=None):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append(
            {
                "kind": kind,
                "order_id": order_id,
                "to_email": to_email,
                "template_data": template_data or {},
            }
        )
        return True


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh in-memory database per test.

    StaticPool keeps every session on the one connection that holds the data.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session bound to the per-test engine.
    """
    session_factory = async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    """Fake payment gateway installed as the active gateway."""
    fake = FakeGateway(webhook_secret="whsec_test_secret")
    set_gateway(fake)
    yield fake
    reset_gateway()


@pytest.fixture
def notifier():
    recorder = RecordingNotifier()
    set_notifier(recorder)
    yield recorder
    set_notifier(None)


@pytest_asyncio.fixture
async def client(db_session, gateway, notifier) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client for the store app, sharing the test's database session.
    """
    from services.store_service.app.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_async_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def member_id() -> str:
    return f"user-{uuid.uuid4().hex[:8]}"
