"""
Shared pytest fixtures.

Each service owns its database, so every test gets a separate SQLite file
per service schema. File databases (not :memory:) let concurrent sessions
see each other's writes like a real server would.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from services.catalog.app.schema import metadata as catalog_metadata
from services.notification.app.schema import metadata as notification_metadata
from services.order.app.schema import metadata as order_metadata
from services.seller_dashboard.app.schema import metadata as dashboard_metadata
from tests.fakes import FakeCart, FakeCatalog, InMemoryBroker, RecordingEmailSender


async def _create_database(path, metadata: MetaData):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    return engine


# ============================================================================
# DATABASE FIXTURES
# ============================================================================


@pytest_asyncio.fixture
async def order_db(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = await _create_database(tmp_path / "order.db", order_metadata)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def catalog_db(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = await _create_database(tmp_path / "catalog.db", catalog_metadata)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def notification_db(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = await _create_database(tmp_path / "notification.db", notification_metadata)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def dashboard_db(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    engine = await _create_database(tmp_path / "dashboard.db", dashboard_metadata)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


# ============================================================================
# COLLABORATOR FIXTURES
# ============================================================================


@pytest.fixture
def cart() -> FakeCart:
    return FakeCart()


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog()


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def address() -> dict:
    return {
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "KA",
        "pincode": "560001",
        "country": "IN",
    }
