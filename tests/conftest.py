"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async)
- Mock outbound HTTP (httpx)
- Test data factories
"""
# משתני סביבה לפני ייבוא האפליקציה: Settings נטען בזמן import
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-api-key")

import pytest
from datetime import datetime
from typing import Any, AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import Response

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from relay.core.clock import utcnow
from relay.core.config import IncomingSourceConfig, settings
from relay.core.signatures import generate_secret
from relay.db.database import Base, get_db, set_session_factory
from relay.db.models.webhook_endpoint import WebhookEndpoint
from relay.db.models.webhook_delivery import WebhookDelivery, WebhookDeliveryStatus
from relay.domain.services import incoming_handlers
from relay.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ADMIN_API_KEY = "test-admin-api-key"
STRIPE_SECRET = "whsec_test_stripe_secret"
META_SECRET = "meta_test_app_secret"

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
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


@pytest.fixture(scope="function")
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, session_maker):
    """Create test client with database override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    # ה-middleware של idempotency פותח sessions משלו: על אותו engine
    set_session_factory(session_maker)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    set_session_factory(None)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-API-Key": ADMIN_API_KEY}


@pytest.fixture(autouse=True)
def set_admin_api_key():
    """מגדיר ADMIN_API_KEY לבדיקות: גם אם קיים .env מקומי"""
    with patch.object(settings, "ADMIN_API_KEY", ADMIN_API_KEY):
        yield


# ============================================================================
# Inbound sources and handlers
# ============================================================================

@pytest.fixture
def incoming_sources() -> dict[str, IncomingSourceConfig]:
    """Two configured sources: Stripe-style timestamped and Meta-style sha256"""
    sources = {
        "stripe": IncomingSourceConfig(
            secret=STRIPE_SECRET,
            scheme="timestamped",
            signature_header="Stripe-Signature",
        ),
        "meta": IncomingSourceConfig(
            secret=META_SECRET,
            scheme="sha256",
            signature_header="X-Hub-Signature-256",
            event_id_field="entry_id",
            event_type_field="object",
        ),
    }
    with patch.object(settings, "INCOMING_WEBHOOK_SOURCES", sources):
        yield sources


@pytest.fixture
def enqueued_events():
    """מחליף את שליחת האירועים ל-Celery ברשימה בזיכרון"""
    calls: list[tuple[str, str]] = []

    def _enqueue(source: str, event_id: str) -> None:
        calls.append((source, event_id))

    with patch("relay.domain.services.incoming_gateway._default_enqueue", _enqueue):
        yield calls


@pytest.fixture(autouse=True)
def reset_incoming_handlers():
    """Handlers registered by a test don't leak into the next one"""
    saved = dict(incoming_handlers._handlers)
    yield
    incoming_handlers._handlers.clear()
    incoming_handlers._handlers.update(saved)


# ============================================================================
# Mock External Services
# ============================================================================

def make_http_response(status_code: int = 200, text: str = "ok") -> MagicMock:
    response = MagicMock(spec=Response)
    response.status_code = status_code
    response.text = text
    return response


@pytest.fixture
def mock_webhook_http():
    """Mock outbound webhook POSTs (httpx.AsyncClient)"""
    with patch("httpx.AsyncClient") as mock_client:
        mock_instance = AsyncMock()
        mock_instance.post = AsyncMock(return_value=make_http_response(200, "ok"))
        mock_instance.__aenter__ = AsyncMock(return_value=mock_instance)
        mock_instance.__aexit__ = AsyncMock(return_value=None)

        mock_client.return_value = mock_instance

        yield mock_instance


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def endpoint_factory(db_session: AsyncSession):
    """Factory for creating test webhook endpoints"""
    async def _create_endpoint(
        owner_id: str = "owner-1",
        url: str = "https://hooks.example.com/relay",
        subscribed_events: list[str] | None = None,
        subscribe_all: bool = False,
        enabled: bool = True,
        max_in_flight: int | None = None,
        secret: str | None = None,
    ) -> WebhookEndpoint:
        endpoint = WebhookEndpoint(
            owner_id=owner_id,
            url=url,
            secret=secret or generate_secret(),
            subscribed_events=subscribed_events if subscribed_events is not None else ["invoice.paid"],
            subscribe_all=subscribe_all,
            enabled=enabled,
            max_in_flight=max_in_flight,
        )
        db_session.add(endpoint)
        await db_session.commit()
        await db_session.refresh(endpoint)
        return endpoint

    return _create_endpoint


@pytest.fixture
def webhook_delivery_factory(db_session: AsyncSession):
    """Factory for creating test deliveries directly in a given state"""
    counter = {"n": 0}

    async def _create_delivery(
        endpoint_id: int,
        event_id: str | None = None,
        event_type: str = "invoice.paid",
        payload: dict[str, Any] | None = None,
        status: WebhookDeliveryStatus = WebhookDeliveryStatus.PENDING,
        attempts: int = 0,
        next_attempt_at: datetime | None = None,
    ) -> WebhookDelivery:
        counter["n"] += 1
        delivery = WebhookDelivery(
            endpoint_id=endpoint_id,
            event_id=event_id or f"evt_{counter['n']}",
            event_type=event_type,
            payload=payload if payload is not None else {"invoice_id": "in_1", "amount": 4200},
            status=status,
            attempts=attempts,
            next_attempt_at=next_attempt_at if next_attempt_at is not None else utcnow(),
        )
        db_session.add(delivery)
        await db_session.commit()
        await db_session.refresh(delivery)
        return delivery

    return _create_delivery
