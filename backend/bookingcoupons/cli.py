import argparse
import asyncio
import json
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bookingcoupons import models  # noqa: F401
from bookingcoupons.core.config import settings
from bookingcoupons.db.base import Base
from bookingcoupons.db.session import SessionLocal, build_engine, build_session_factory, engine
from bookingcoupons.services.errors import CouponError
from bookingcoupons.services.redemption_ledger import RedemptionLedger


async def init_db(target: AsyncEngine = engine) -> None:
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("Database tables created")


async def sweep_reservations(session_factory: async_sessionmaker[AsyncSession] = SessionLocal, *, limit: int) -> int:
    swept = await RedemptionLedger(session_factory).sweep_expired(limit=limit)
    print(f"Released {swept} expired reservation(s)")
    return swept


async def show_usage(
    session_factory: async_sessionmaker[AsyncSession] = SessionLocal,
    *,
    tenant_id: uuid.UUID,
    coupon_id: uuid.UUID,
) -> dict[str, Any]:
    usage = await RedemptionLedger(session_factory).usage(coupon_id, tenant_id=tenant_id)
    report = {
        "coupon_id": str(usage.coupon_id),
        "confirmed": usage.confirmed,
        "reserved": usage.reserved,
        "total_usage_limit": usage.total_usage_limit,
        "remaining": usage.remaining,
        "per_customer": usage.per_customer,
    }
    print(json.dumps(report, indent=2))
    return report


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Coupon engine maintenance")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL for this command")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("init-db", help="Create database tables")

    sweep = subparsers.add_parser("sweep-reservations", help="Release expired coupon reservations")
    sweep.add_argument(
        "--limit",
        type=int,
        default=settings.coupon_reservation_sweep_batch_limit,
        help="Maximum reservations to release",
    )

    usage = subparsers.add_parser("usage", help="Show redemption usage for a coupon")
    usage.add_argument("--tenant", required=True, type=uuid.UUID, help="Tenant id")
    usage.add_argument("--coupon", required=True, type=uuid.UUID, help="Coupon id")
    return parser


async def _with_engine(database_url: str | None, action: Callable[[AsyncEngine], Awaitable[Any]]) -> Any:
    if not database_url:
        return await action(engine)
    target = build_engine(database_url)
    try:
        return await action(target)
    finally:
        await target.dispose()


def _run_cli_command(args: argparse.Namespace) -> bool:
    database_url = getattr(args, "database_url", None)

    if args.command == "init-db":
        asyncio.run(_with_engine(database_url, init_db))
        return True

    if args.command == "sweep-reservations":
        asyncio.run(
            _with_engine(
                database_url,
                lambda target: sweep_reservations(build_session_factory(target), limit=args.limit),
            )
        )
        return True

    if args.command == "usage":
        try:
            asyncio.run(
                _with_engine(
                    database_url,
                    lambda target: show_usage(
                        build_session_factory(target), tenant_id=args.tenant, coupon_id=args.coupon
                    ),
                )
            )
        except CouponError as exc:
            raise SystemExit(exc.detail) from exc
        return True

    return False


def main():
    parser = _build_parser()
    args = parser.parse_args()
    if not _run_cli_command(args):
        parser.print_help()


if __name__ == "__main__":
    main()
