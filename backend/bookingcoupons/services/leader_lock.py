"""Single-leader execution for background loops.

Every API replica starts the same background tasks. On Postgres only the
replica holding a session-level advisory lock runs the loop; the others keep
polling for the lock so a new leader takes over when the old one exits. Other
backends have no cross-process lock and run the loop directly. The lock
connection comes from a one-connection engine of its own, not the request pool.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from bookingcoupons.core.config import settings

logger = logging.getLogger(__name__)

_BIGINT_MAX = 2**63 - 1


def _is_postgres(engine: AsyncEngine) -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def _lock_id(name: str) -> int:
    digest = hashlib.blake2b(str(name or "").encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=False) % _BIGINT_MAX


def _leader_engine(engine: AsyncEngine) -> AsyncEngine:
    """Single-connection engine on the same database for holding the advisory lock.

    The lock is session-scoped, so its connection stays checked out while the loop
    runs and must not come out of the request pool.
    """
    return create_async_engine(engine.url, future=True, pool_size=1, max_overflow=0, pool_pre_ping=True)


@asynccontextmanager
async def _advisory_lock(conn: AsyncConnection, lock_id: int) -> AsyncIterator[bool]:
    acquired = bool((await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id})).scalar())
    try:
        yield acquired
    finally:
        if acquired:
            with suppress(Exception):
                await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})


async def _pause(stop: asyncio.Event, seconds: int) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


async def run_as_leader(
    *,
    name: str,
    engine: AsyncEngine,
    stop: asyncio.Event,
    work: Callable[[asyncio.Event], Awaitable[None]],
    retry_seconds: int | None = None,
) -> None:
    if not _is_postgres(engine):
        await work(stop)
        return

    lock_id = _lock_id(name)
    retry = max(5, int(retry_seconds or settings.coupon_sweeper_leader_retry_seconds))
    leader_engine = _leader_engine(engine)
    try:
        while not stop.is_set():
            try:
                async with leader_engine.connect() as conn, _advisory_lock(conn, lock_id) as acquired:
                    if acquired:
                        logger.info("leader_lock_acquired", extra={"lock_name": name})
                        await work(stop)
                        return
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.warning("leader_lock_failed", extra={"lock_name": name, "error": str(exc)})
            await _pause(stop, retry)
    finally:
        await leader_engine.dispose()
