"""
Shared fixtures: in-memory SQLite database, a fixed test cipher, and a
token service wired to a fake Google Ads client.
"""

import os
import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

os.environ.setdefault("ENVIRONMENT", "development")

from adsync.config import Settings  # noqa: E402
from adsync.crypto import Cipher, set_cipher  # noqa: E402
from adsync.database import Base  # noqa: E402
from adsync.google_ads_client import GoogleAdsClient  # noqa: E402
from adsync.models import User  # noqa: E402
from adsync.services.access_guard import (  # noqa: E402
    PendingStateStore,
    RevokedTokenRegistry,
    SlidingWindowRateLimiter,
)
from adsync.services.security_events import SecurityEventLog  # noqa: E402
from adsync.services.token_service import TokenService  # noqa: E402
from adsync.utils import utcnow  # noqa: E402

TEST_KEY = "0123456789abcdef" * 4
OTHER_KEY = "fedcba9876543210" * 4


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def cipher():
    c = Cipher(TEST_KEY)
    set_cipher(c)
    yield c
    set_cipher(None)


@pytest.fixture
def settings():
    return Settings(
        environment="development",
        encryption_key=TEST_KEY,
        google_ads_client_id="client-id.apps.googleusercontent.com",
        google_ads_client_secret="client-secret",
        google_ads_developer_token="dev-token",
        google_ads_login_customer_id="",
        app_url="https://app.example.com",
    )


@pytest.fixture
async def db_session():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
async def user(db_session):
    u = User(email=f"user-{uuid.uuid4().hex[:8]}@example.com", name="Test User", is_active=True)
    db_session.add(u)
    await db_session.commit()
    return u


@pytest.fixture
def fake_client(settings):
    """GoogleAdsClient double; each test sets the return values it needs."""
    client = MagicMock(spec=GoogleAdsClient)
    client.settings = settings
    client.exchange_code = AsyncMock()
    client.refresh_access_token = AsyncMock()
    client.revoke = AsyncMock()
    client.list_accessible_customers = AsyncMock(return_value=["customers/1234567890"])
    client.list_accessible_customers_sdk = AsyncMock(return_value=["customers/1234567890"])
    client.search = AsyncMock(return_value=[])
    client.get_customer_details = AsyncMock(return_value=None)
    client.build_authorization_url = MagicMock(
        side_effect=lambda state: f"https://accounts.google.com/o/oauth2/v2/auth?state={state}"
    )
    return client


@pytest.fixture
def clock():
    """Manually advanced monotonic clock."""
    class _Clock:
        def __init__(self):
            self.now = 1000.0

        def __call__(self):
            return self.now

        def advance(self, seconds):
            self.now += seconds

    return _Clock()


@pytest.fixture
def events():
    return SecurityEventLog()


@pytest.fixture
def token_service(db_session, fake_client, settings, clock, events):
    return TokenService(
        db_session,
        client=fake_client,
        settings=settings,
        revoked=RevokedTokenRegistry(),
        rate_limiter=SlidingWindowRateLimiter(limit=5, window_seconds=60, clock=clock),
        states=PendingStateStore(clock=clock),
        events=events,
    )


@pytest.fixture
async def connected_account(token_service, user):
    """Account with a valid (unexpired) token pair."""
    return await token_service.store_tokens(
        user.id,
        "1234567890",
        "ya29.valid-access-token",
        "1//valid-refresh-token",
        utcnow() + timedelta(hours=1),
    )
