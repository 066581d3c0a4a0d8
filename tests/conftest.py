"""Pytest configuration and fixtures for async testing."""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from recovery.models import Base, Member
from recovery.services.recovery_coordinator import RecoveryCoordinator
from tests.utils.factories import MemberFactory
from tests.utils.fakes import FakeGateway, FakeNotifier


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """
    File-backed SQLite engine, one per test.

    NullPool gives every session its own connection so that concurrent
    workers can be simulated with separate sessions.
    """
    test_engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'recovery_test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def member(db_session: AsyncSession) -> Member:
    """Active member with Stripe customer and subscription references."""
    member = Member(**MemberFactory.create())
    db_session.add(member)
    await db_session.commit()
    return member


@pytest.fixture(scope="function")
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture(scope="function")
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture(scope="function")
def coordinator(db_session: AsyncSession, gateway: FakeGateway, notifier: FakeNotifier) -> RecoveryCoordinator:
    return RecoveryCoordinator(db_session, gateway, notifier)
