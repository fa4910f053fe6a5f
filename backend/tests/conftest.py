"""Pytest configuration and fixtures for billing tests.

Provides an in-memory SQLite database, a transactional session, an HTTP
client wired to that session, and deal/invoice factories.
"""

import os

# Point the app at SQLite before billing.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing.database import Base, get_db
from billing.main import app
from billing.models import Deal, DealStatus


def pytest_configure(config):
    config.addinivalue_line("markers", "unit: pure-function tests with no database")
    config.addinivalue_line("markers", "api: HTTP endpoint tests")


# ── Test Database Setup ──────────────────────────────────────────

@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory database with all billing tables."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for one test; nothing is committed."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with overridden database dependency."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ── Test Data Fixtures ───────────────────────────────────────────

def make_deal(**overrides) -> Deal:
    """Local-currency deal billed from January 2024, first month covered."""
    fields = {
        "project_id": "proj-1",
        "currency": "COP",
        "recurring_amount_original": Decimal("4000000"),
        "implementation_fee_original": Decimal("8000000"),
        "exchange_rate": Decimal("4000"),
        "start_date": date(2024, 1, 15),
        "first_period_covered": True,
        "status": DealStatus.ACTIVE,
    }
    fields.update(overrides)
    return Deal(**fields)


@pytest_asyncio.fixture
async def test_deal(db_session: AsyncSession) -> Deal:
    deal = make_deal()
    db_session.add(deal)
    await db_session.flush()
    return deal
