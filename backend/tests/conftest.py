import asyncio
from collections.abc import AsyncIterator, Generator
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookingcoupons.core import metrics
from bookingcoupons.db.base import Base
from bookingcoupons.db.session import build_engine, build_session_factory
from bookingcoupons import models  # noqa: F401


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    # A file database gives every concurrent session its own connection, and lets
    # separate engines share one database.
    return f"sqlite+aiosqlite:///{tmp_path / 'coupons.db'}"


@pytest.fixture
async def session_factory(database_url: str) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield build_session_factory(engine)
    finally:
        await engine.dispose()


@pytest.fixture
def sync_session_factory(database_url: str) -> Generator[async_sessionmaker[AsyncSession], None, None]:
    """Session factory for TestClient-based tests, which drive their own event loop."""
    engine = build_engine(database_url)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        # Drop pooled connections so the app loop opens its own.
        await engine.dispose()

    asyncio.run(init_models())
    yield build_session_factory(engine)
    asyncio.run(engine.dispose())
