"""Background loop that flips expired coupon reservations to ``released``.

Reads already treat expired reservations as released; the sweep only keeps the
table tidy and the usage report exact.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI
from sqlalchemy.ext.asyncio import AsyncEngine

from bookingcoupons.core.config import settings
from bookingcoupons.services import leader_lock
from bookingcoupons.services.redemption_ledger import RedemptionLedger

logger = logging.getLogger(__name__)


async def run_once(ledger: RedemptionLedger) -> int:
    return await ledger.sweep_expired(limit=settings.coupon_reservation_sweep_batch_limit)


async def _loop(ledger: RedemptionLedger, stop: asyncio.Event) -> None:
    interval = max(5, int(settings.coupon_reservation_sweep_interval_seconds or 60))
    while not stop.is_set():
        try:
            await run_once(ledger)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("coupon_reservation_sweep_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI, *, ledger: RedemptionLedger, engine: AsyncEngine) -> None:
    if not settings.coupon_reservation_sweep_enabled:
        return
    if getattr(app.state, "coupon_sweeper_task", None) is not None:
        return

    stop = asyncio.Event()

    async def work(stop_event: asyncio.Event) -> None:
        await _loop(ledger, stop_event)

    task = asyncio.create_task(
        leader_lock.run_as_leader(name="coupon_reservation_sweeper", engine=engine, stop=stop, work=work)
    )
    app.state.coupon_sweeper_stop = stop
    app.state.coupon_sweeper_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "coupon_sweeper_stop", None)
    task = getattr(app.state, "coupon_sweeper_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.coupon_sweeper_stop = None
    app.state.coupon_sweeper_task = None
