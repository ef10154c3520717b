"""Pytest configuration and fixtures for shipping tests.

Each test gets its own SQLite file database (aiosqlite), created from the
ORM metadata.  API tests talk to the FastAPI app in-process through
httpx's ASGITransport with `get_db` pointed at that database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./shipping_test.db")
os.environ.setdefault("DEBUG", "false")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.auth.jwt import create_access_token  # noqa: E402
from app.auth.permissions import resolve_permissions  # noqa: E402
from app.config import settings  # noqa: E402
from app.database import Base, get_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models.system import System  # noqa: E402
from app.models.user import User, UserRole  # noqa: E402
from app.utils import allocation_lock  # noqa: E402


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """Create a fresh SQLite database with every table."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shipping.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database dependency."""

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def fresh_allocation_locks():
    """asyncio locks bind to the loop that first waits on them."""
    allocation_lock._local_locks.clear()
    yield
    allocation_lock._local_locks.clear()


@pytest.fixture
def lazy_shapes(monkeypatch):
    monkeypatch.setattr(settings, "shape_assignment", "lazy")


@pytest.fixture(autouse=True)
def utc_server(monkeypatch):
    monkeypatch.setattr(settings, "location", "")
    monkeypatch.setattr(settings, "server_timezone", None)


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def users(session_factory) -> dict[str, User]:
    """One active user per role, keyed by role name."""
    made: dict[str, User] = {}
    async with session_factory() as session:
        for role in UserRole:
            user = User(
                email=f"{role.value}@example.com",
                full_name=f"{role.value.title()} User",
                role=role,
                is_active=True,
            )
            session.add(user)
            made[role.value] = user
        await session.commit()
    return made


def token_for(user: User) -> str:
    return create_access_token(
        user_id=user.id,
        role=user.role.value,
        permissions=resolve_permissions(user.role.value, user.custom_permissions),
    )


def headers_for(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


@pytest.fixture
def auth_headers(users) -> dict:
    """Supervisor: read, write, delete and system registration."""
    return headers_for(users["supervisor"])


@pytest.fixture
def admin_headers(users) -> dict:
    return headers_for(users["administrator"])


@pytest.fixture
def operator_headers(users) -> dict:
    return headers_for(users["operator"])


@pytest.fixture
def viewer_headers(users) -> dict:
    return headers_for(users["viewer"])


@pytest_asyncio.fixture
async def make_systems(session_factory):
    """Register systems directly: make_systems("ST1", "ST2", doa="D-1")."""

    async def _make(*service_tags: str, doa: str | None = None, **fields) -> list[str]:
        async with session_factory() as session:
            for tag in service_tags:
                session.add(System(service_tag=tag, doa_number=doa, **fields))
            await session.commit()
        return list(service_tags)

    return _make


# ── Test Markers ─────────────────────────────────────────────────

def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "api: API endpoint tests")
    config.addinivalue_line("markers", "auth: Authentication tests")
