"""API test configuration."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from api.dependencies import get_current_user, get_db, require_admin
from api.main import create_app
from cryptography.fernet import Fernet
from fluentdesk.config import reset_settings_cache
from fluentdesk.models import Base, PromoCode, User
from fluentdesk.services.encryption import reset_fernet
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("SKIP_MIGRATION_CHECK", "true")
    monkeypatch.setenv("RATE_LIMIT_PER_HOUR", "0")
    monkeypatch.setenv("ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("SMTP_ENABLED", "false")
    monkeypatch.setenv("PAYMENT_TEST_MODE", "false")
    monkeypatch.setenv("PADDLE_WEBHOOK_SECRET", "pdl_ntfset_test_secret")
    monkeypatch.setenv("SITE_URL", "https://app.fluentdesk.test")
    reset_settings_cache()
    reset_fernet()
    yield
    reset_settings_cache()
    reset_fernet()


def make_user(
    user_id: str = "student-1",
    *,
    role: str = "student",
    email: str | None = None,
    display_name: str | None = "Test Student",
    email_notifications: bool = True,
) -> User:
    return User(
        id=user_id,
        email=email or f"{user_id}@fluentdesk.test",
        display_name=display_name,
        role=role,
        is_active=True,
        email_notifications=email_notifications,
        created_at=datetime.now(UTC),
    )


def make_promo_code(code: str = "WELCOME20", **overrides) -> PromoCode:
    now = datetime.now(UTC)
    values = {
        "code": code,
        "description": "Welcome discount",
        "discount_percentage": 20,
        "valid_from": None,
        "valid_until": None,
        "usage_limit": None,
        "usage_count": 0,
        "applicable_plans": [],
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    return PromoCode(**values)


@pytest.fixture
def student():
    return make_user()


@pytest.fixture
def admin_user():
    return make_user("admin-1", role="admin", display_name="Test Admin")


@pytest.fixture
def app(student, admin_user):
    a = create_app()
    a.dependency_overrides[get_current_user] = lambda: student
    a.dependency_overrides[require_admin] = lambda: admin_user
    return a


@pytest.fixture
def mock_db():
    """Creates a mock AsyncSession with common patterns pre-configured."""
    session = AsyncMock()
    # AsyncSession.add() is synchronous; use MagicMock to avoid un-awaited coroutine warnings.
    session.add = MagicMock()
    empty_result = MagicMock()
    empty_result.scalars.return_value.all.return_value = []
    empty_result.scalars.return_value.first.return_value = None
    empty_result.scalar.return_value = 0
    empty_result.all.return_value = []
    empty_result.rowcount = 0
    session.execute.return_value = empty_result
    session.get.return_value = None
    return session


@pytest.fixture
async def client(app, mock_db):
    async def _override_db():
        yield mock_db

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
async def unauthenticated_client(mock_db):
    """Client with NO auth override -- tests that endpoints require auth."""
    a = create_app()

    async def _override_db():
        yield mock_db

    a.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=a)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# --- In-memory SQLite for engine-level tests ---


@pytest.fixture
async def db_engine():
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
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_client(app, session_factory):
    """Client whose requests run against the in-memory database."""

    async def _override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
