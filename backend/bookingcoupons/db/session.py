from collections.abc import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bookingcoupons.core.config import settings


def _begin_immediate_transactions(target: AsyncEngine) -> None:
    """Start every SQLite transaction holding the database write lock.

    The driver's own deferred BEGIN lets two connections count usage before either
    inserts. FOR UPDATE compiles to nothing on SQLite, so the ledger's count and
    insert are only serialized across engines and processes by BEGIN IMMEDIATE.
    """

    @event.listens_for(target.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # Seconds a connection waits on another writer before "database is locked".
        connect_args = {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_seconds}
        target = create_async_engine(database_url, future=True, connect_args=connect_args)
        _begin_immediate_transactions(target)
        return target
    return create_async_engine(database_url, future=True, pool_pre_ping=True)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, autoflush=False, class_=AsyncSession)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Request-scoped session for the coupon admin routes.

    Ledger operations never use it; they open short transactions of their own.
    """
    async with SessionLocal() as session:
        yield session
