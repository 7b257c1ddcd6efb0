"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks all external services.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_platform")
os.environ.setdefault("STRIPE_CONNECT_WEBHOOK_SECRET", "whsec_test_connect")

import hashlib
import hmac
import time
import uuid

import pytest
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy import select
from sqlalchemy.pool import StaticPool

from payhook.database import Base
import payhook.models  # noqa: F401 - register every table on Base.metadata
from payhook.handlers.common import HandlerContext
from payhook.models.domain_event import DomainEvent
from payhook.services.event_bus import EventBus
from payhook.services.job_queue import (
    LISTENER_TOPICS,
    WEBHOOK_TOPICS,
    JobQueue,
    RetryPolicy,
)
from payhook.services.webhook_store import WebhookStore

PLATFORM_SECRET = "whsec_test_platform"
CONNECT_SECRET = "whsec_test_connect"


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture
async def session_factory():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def mock_redis():
    """Mock for async Redis - prevents real Redis calls in tests."""
    redis_mock = AsyncMock()
    redis_mock.set = AsyncMock(return_value=True)
    redis_mock.ping = AsyncMock(return_value=True)
    redis_mock.lpush = AsyncMock(return_value=1)
    redis_mock.ltrim = AsyncMock(return_value=True)
    redis_mock.brpop = AsyncMock(return_value=None)
    with patch("payhook.utils.redis.get_redis", new_callable=AsyncMock, return_value=redis_mock):
        yield redis_mock


@pytest.fixture
def store(session_factory):
    return WebhookStore(session_factory)


@pytest.fixture
def queue(session_factory):
    """Webhook topics: 4 attempts, base-5 minute backoff. Listener topics: 3 attempts."""
    webhook_policy = RetryPolicy(max_attempts=4, backoff_base=5, backoff_unit_seconds=60)
    listener_policy = RetryPolicy(max_attempts=3, backoff_base=2, backoff_unit_seconds=1)
    policies = {topic: webhook_policy for topic in WEBHOOK_TOPICS}
    policies.update({topic: listener_policy for topic in LISTENER_TOPICS})
    return JobQueue(session_factory, policies=policies, default_policy=listener_policy, lease_seconds=60)


@pytest.fixture
def bus(session_factory, queue):
    return EventBus(session_factory, queue=queue, environment="test")


@pytest.fixture
def make_event():
    """Build a Stripe event envelope around a data object."""
    def _make(event_type: str, obj: dict, event_id: str = None, account: str = None, created: int = None):
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": created if created is not None else int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }
        if account:
            event["account"] = account
        return event
    return _make


@pytest.fixture
def sign():
    """Stripe-style signature header: t=<ts>,v1=hmac_sha256(secret, "<ts>.<payload>")."""
    def _sign(payload, secret: str = PLATFORM_SECRET, timestamp: int = None) -> str:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        ts = timestamp if timestamp is not None else int(time.time())
        digest = hmac.new(
            secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256,
        ).hexdigest()
        return f"t={ts},v1={digest}"
    return _sign


@pytest.fixture
def ctx(session_factory, bus):
    """Handler context without a Stripe gateway."""
    return HandlerContext(session_factory, bus, gateway=None)


@pytest.fixture
def published(session_factory):
    """Domain events persisted so far, oldest first, optionally filtered by type."""
    async def _published(event_type: str = None):
        query = select(DomainEvent).order_by(DomainEvent.created_at)
        if event_type:
            query = query.where(DomainEvent.event_type == event_type)
        async with session_factory() as db:
            return list((await db.execute(query)).scalars().all())
    return _published
