"""Pytest configuration and fixtures for the upload service tests."""

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from trainai.db.base import Base
from trainai.db.session import get_db
from trainai.services.auth_service import AuthService
from trainai.services.storage_service import get_object_store
from trainai.services.upload_service import UploadService
from trainai.storage.local import LocalObjectStore

OWNER_ID = "user-1"
OTHER_OWNER_ID = "user-2"


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """File-backed SQLite session store, one per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'uploads.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(tmp_path):
    return LocalObjectStore(tmp_path / "objects", "http://testserver/storage")


@pytest.fixture
def uploads(db, store):
    return UploadService(db, store)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {AuthService.mint_access(OWNER_ID)}"}


@pytest.fixture
def other_auth_headers():
    return {"Authorization": f"Bearer {AuthService.mint_access(OTHER_OWNER_ID)}"}


@pytest.fixture
def override_store(store):
    """Object store served to the app; tests may replace it before requests run."""
    holder = {"store": store}
    app.dependency_overrides[get_object_store] = lambda: holder["store"]
    yield holder
    app.dependency_overrides.pop(get_object_store, None)


@pytest_asyncio.fixture
async def client(session_factory, override_store):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c

    app.dependency_overrides.pop(get_db, None)
