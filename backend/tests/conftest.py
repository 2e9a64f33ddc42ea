"""Pytest configuration and fixtures for portal_uploads tests."""
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from portal_uploads.models import Base, OAuthAccount, Portal, User
from portal_uploads.services.provisioning.idempotency import InMemoryIdempotencyStore
from portal_uploads.services.provisioning.locks import InMemoryLockStore
from portal_uploads.services.provisioning.manager import StorageAccountManager


@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def lock_store():
    return InMemoryLockStore()


@pytest.fixture
def idempotency_store():
    return InMemoryIdempotencyStore()


@pytest.fixture
def manager(session_factory, lock_store, idempotency_store):
    """Manager with short lock waits so contended tests stay fast."""
    return StorageAccountManager(
        session_factory,
        lock_store,
        idempotency_store,
        lock_retry_attempts=60,
        lock_retry_delay=0.005,
    )


@pytest.fixture
def make_user(session_factory):
    """Insert a user with OAuth accounts given as (provider, provider_account_id) pairs."""
    async def _make_user(user_id="user-1", accounts=(("google", "g-1"),), email="owner@example.com", name="Owner"):
        async with session_factory() as db:
            db.add(User(id=user_id, email=email, name=name))
            for provider, external_id in accounts:
                db.add(OAuthAccount(user_id=user_id, provider=provider, provider_account_id=external_id))
            await db.commit()
        return user_id
    return _make_user


@pytest.fixture
def make_portal(session_factory):
    async def _make_portal(portal_id="portal-1", **fields):
        async with session_factory() as db:
            if await db.get(User, "portal-owner") is None:
                db.add(User(id="portal-owner", email="portal@example.com", name="Portal Owner"))
            db.add(Portal(id=portal_id, user_id="portal-owner", name="Client files", **fields))
            await db.commit()
        return portal_id
    return _make_portal


@pytest.fixture
def storage_dir(tmp_path, monkeypatch):
    from portal_uploads.services.file_storage import file_storage
    path = tmp_path / "storage"
    monkeypatch.setattr(file_storage, "base_path", path)
    return path


@pytest_asyncio.fixture
async def client(session_factory, manager, storage_dir):
    """httpx client against the FastAPI app with the test database and manager wired in."""
    from portal_uploads.database import get_db
    from portal_uploads.main import app
    from portal_uploads.services.provisioning import get_storage_manager

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_storage_manager] = lambda: manager
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
