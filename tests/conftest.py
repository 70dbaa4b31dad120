"""Pytest fixtures for reconciler tests."""

from __future__ import annotations

from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from payment_reconciler.database import create_schema, get_engine, make_session_factory
from payment_reconciler.engine import ReconciliationEngine
from payment_reconciler.engine_config import EngineConfig, SignatureConfig
from payment_reconciler.services import IdempotencyLedger
from tests.factories import (
    WEBHOOK_SECRET,
    FakeChargeLookup,
    MarketplaceData,
    RecordingDispatcher,
)


# File-backed SQLite so separate sessions really are separate connections
@pytest.fixture
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine with the schema applied."""
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'reconciler.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(db_engine)


@pytest.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """A session for direct service tests. Rolled back afterwards."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def data(session_factory) -> MarketplaceData:
    return MarketplaceData(session_factory)


@pytest.fixture
def ledger(session_factory) -> IdempotencyLedger:
    return IdempotencyLedger(session_factory)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def charge_lookup() -> FakeChargeLookup:
    return FakeChargeLookup()


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig(
        environment="test",
        signature=SignatureConfig(webhook_secret=WEBHOOK_SECRET),
    )


@pytest.fixture
def reconciler(session_factory, engine_config, dispatcher, charge_lookup) -> ReconciliationEngine:
    """Engine wired to the test database and fake adapters."""
    return ReconciliationEngine(
        session_factory,
        engine_config,
        dispatcher=dispatcher,
        charge_lookup=charge_lookup,
    )
