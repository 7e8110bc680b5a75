"""
Shared fixtures.

Every test that touches the database gets its own file-backed SQLite
database (aiosqlite), so conditional UPDATEs and ON CONFLICT upserts run with
real SQL semantics and separate sessions really compete for rows.
"""
import os

# Set test environment before shipdesk.core.config is imported
os.environ["ENVIRONMENT"] = "development"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from shipdesk.core.database import Base
import shipdesk.models  # noqa: F401
from shipdesk.services.easyship_client import EasyshipClient
from shipdesk.services.email_provider import MockEmailSender

from tests.helpers import make_config


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shipdesk.db'}", poolclass=NullPool)
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


@pytest.fixture
def mock_db():
    """AsyncSession stand-in for tests that never reach SQL."""
    session = AsyncMock(spec=AsyncSession)
    session.add = MagicMock()
    return session


@pytest.fixture
def shipping_config():
    return make_config()


@pytest.fixture
def easyship_client():
    """EasyshipClient double; async methods are AsyncMocks."""
    return AsyncMock(spec=EasyshipClient)


@pytest.fixture
def email_sender():
    return MockEmailSender()
