"""
Pytest configuration and shared fixtures for ClockWork tests.
"""
import os

# Settings are read at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET"] = "test-secret-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fake"
os.environ["STRIPE_PRICE_STARTER"] = "price_starter"
os.environ["STRIPE_PRICE_PROFESSIONAL"] = "price_professional"
os.environ["STRIPE_PRICE_SCALE"] = "price_scale"
os.environ["BREVO_API_KEY"] = ""
os.environ["ENABLE_BILLING"] = "false"
os.environ["APP_URL"] = "https://app.clockwork.test"

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from clockwork.main import app
from clockwork.models import Account, Dependent
from clockwork.models.account import SubscriptionStatus
from clockwork.utils.database import Base, get_db
from clockwork.utils.email_brevo import email_service
from clockwork.utils.security import create_access_token


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test"""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    """Brevo is never called; every template send succeeds"""
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(email_service, "send_template_email", mock)
    return mock


@pytest_asyncio.fixture
async def make_account(db):
    async def _make(email="coach@example.com", tier_id="starter", category="specialist", **fields):
        account = Account(
            email=email,
            name=fields.pop("name", "Casey Coach"),
            category=category,
            tier_id=tier_id,
            active_dependent_count=0,
            subscription_status=fields.pop("subscription_status", SubscriptionStatus.ACTIVE.value),
            **fields,
        )
        db.add(account)
        await db.commit()
        await db.refresh(account)
        return account
    return _make


@pytest_asyncio.fixture
async def account(make_account):
    return await make_account()


@pytest_asyncio.fixture
async def add_dependents(db):
    """Insert active dependents directly and resync the stored count"""
    from clockwork.services.usage_tracker import usage_tracker

    async def _add(account, count, **fields):
        created = []
        for i in range(count):
            dependent = Dependent(account_id=account.id, name=f"Client {i + 1}", **fields)
            db.add(dependent)
            created.append(dependent)
        await db.flush()
        await usage_tracker.recompute_dependent_count(db, account)
        await db.commit()
        return created
    return _add


@pytest_asyncio.fixture
async def client(session_factory):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers(account):
    return {"Authorization": f"Bearer {create_access_token(str(account.id))}"}
