"""Shared fixtures for marketplace backend tests.

Uses SQLite (aiosqlite) by default, so no PostgreSQL is required.
Set TEST_DATABASE_URL to override (e.g. for CI with real PostgreSQL).
"""

import os
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite://")

# Ensure settings can be loaded without .env
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")

from marketplace.database import Base  # noqa: E402

API = "/api/v1"

# ---------------------------------------------------------------------------
# Engine: SQLite in-memory with StaticPool (shared across connections)
# ---------------------------------------------------------------------------

_engine_kwargs = {}
if TEST_DATABASE_URL.startswith("sqlite"):
    _engine_kwargs = {
        "connect_args": {"check_same_thread": False},
        "poolclass": StaticPool,
    }

_engine = create_async_engine(TEST_DATABASE_URL, echo=False, **_engine_kwargs)
_TestSession = async_sessionmaker(
    bind=_engine, class_=AsyncSession, expire_on_commit=False,
)


# ---------------------------------------------------------------------------
# Session-scoped: create / drop tables
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture(scope="session", autouse=True)
async def _setup_tables():
    import marketplace.models  # noqa: F401  populate Base.metadata

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await _engine.dispose()


# ---------------------------------------------------------------------------
# Reset rate-limiter counters before every test
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _reset_rate_limits():
    """Clear in-memory rate-limit counters so tests never block each other."""
    from marketplace.core.rate_limit import limiter

    storage = getattr(limiter, "_storage", None)
    if storage is not None and hasattr(storage, "reset"):
        storage.reset()


# ---------------------------------------------------------------------------
# Per-test session with rollback
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def db_session():
    async with _TestSession() as session:
        yield session
        await session.rollback()


# ---------------------------------------------------------------------------
# HTTP test client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture()
async def client(db_session: AsyncSession):
    from marketplace.database import get_db
    from marketplace.main import app

    async def _override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@pytest.fixture()
def make_user(db_session: AsyncSession):
    """Factory creating a user directly in the test session.

    Returns a context dict with keys: user, id, email, username, headers.
    """
    from marketplace.core.security import create_access_token
    from marketplace.models.user import User

    async def _make_user(
        prefix: str = "user",
        *,
        role: str = "user",
        dow_verified: bool = False,
    ) -> dict:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            username=f"{prefix}_{suffix}",
            email=f"{prefix}-{suffix}@base.test",
            avatar_url=f"https://cdn.base.test/{prefix}.png",
            role=role,
            dow_verified_at=datetime.now(timezone.utc) if dow_verified else None,
        )
        db_session.add(user)
        await db_session.flush()
        await db_session.refresh(user)

        token = create_access_token({"sub": str(user.id)})
        return {
            "user": user,
            "id": str(user.id),
            "email": user.email,
            "username": user.username,
            "headers": {"Authorization": f"Bearer {token}"},
        }

    return _make_user


@pytest_asyncio.fixture()
async def sponsor(make_user):
    """A DoD-verified sponsor."""
    return await make_user("sponsor", dow_verified=True)


@pytest_asyncio.fixture()
async def family_member(make_user):
    return await make_user("family")


@pytest_asyncio.fixture()
async def admin(make_user):
    return await make_user("admin", role="admin")


@pytest_asyncio.fixture()
async def pending_request(client: AsyncClient, sponsor, family_member):
    """A pending request from ``family_member`` to ``sponsor``; returns the 201 body."""
    resp = await client.post(
        f"{API}/sponsor/request",
        headers=family_member["headers"],
        json={"email": family_member["email"], "sponsorUsername": sponsor["username"]},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()
