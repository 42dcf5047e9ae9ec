"""
Shared fixtures.

Every test gets its own SQLite database file; services are built with a
session factory bound to it and with in-memory gateway / completion fakes.
"""
import os

# Settings and the module-level engine are created at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("BACKEND_URL", "https://replyflow.test")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from replyflow.db import models  # noqa: F401
from replyflow.db.database import Base, get_db
from tests.factories import TENANT_ID
from tests.fakes import FakeCompletion, FakeGateway


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'replyflow.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def completion():
    return FakeCompletion(routes={"cost": "pricing", "price": "pricing"})


@pytest_asyncio.fixture
async def app(session_factory, gateway, completion):
    from replyflow.main import configure_services, create_app

    app = create_app(use_lifespan=False)
    configure_services(app, gateway, completion, session_factory=session_factory)

    async def _get_db():
        async with session_factory() as session:
            yield session
            await session.commit()

    app.dependency_overrides[get_db] = _get_db
    yield app
    await app.state.orchestrator.shutdown()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Tenant-ID": TENANT_ID},
    ) as client:
        yield client
