"""Usage accounting for coupons.

Every redemption attempt is a row in ``coupon_redemptions`` that moves through
``reserved -> confirmed`` or ``reserved/confirmed -> released``. A row counts
toward the coupon's limits while it is confirmed, or reserved and not yet past
``expires_at``. Nothing outside this module reads or writes those rows.

``reserve`` checks capacity and inserts the reservation in one transaction while
holding both an in-process lock for the coupon and a ``SELECT ... FOR UPDATE``
lock on the coupon row. The first serializes callers inside one worker on any
backend; the second serializes workers sharing a Postgres database. SQLite
engines from ``build_engine`` open every transaction with ``BEGIN IMMEDIATE``, so
workers sharing a SQLite file queue on its write lock instead. ``confirm``
takes the same locks so a reservation cannot be confirmed after a concurrent
``reserve`` has already treated it as expired.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TypeVar, Union
from uuid import UUID

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookingcoupons.core import metrics
from bookingcoupons.core.clock import as_utc, utcnow
from bookingcoupons.core.config import settings
from bookingcoupons.models.coupons import Coupon, CouponRedemption, RedemptionState
from bookingcoupons.services.errors import (
    AlreadyExpiredError,
    BookingMismatchError,
    LimitExceededError,
    LimitKind,
    NotFoundError,
    TransientLedgerError,
    ValidationError,
)
from bookingcoupons.services.pricing import quantize_money, to_decimal

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_SQLSTATES = {"40001", "40P01", "55P03"}
_TRANSIENT_MESSAGES = ("database is locked", "could not serialize", "deadlock detected")


@dataclass(frozen=True)
class ReservationToken:
    id: UUID
    coupon_id: UUID
    tenant_id: UUID
    customer_id: str
    expires_at: datetime


@dataclass(frozen=True)
class RedemptionRecord:
    id: UUID
    coupon_id: UUID
    tenant_id: UUID
    customer_id: str
    booking_id: UUID | None
    amount_discounted: Decimal
    state: RedemptionState
    created_at: datetime | None
    expires_at: datetime
    confirmed_at: datetime | None = None
    released_at: datetime | None = None
    release_reason: str | None = None

    @classmethod
    def from_row(cls, row: CouponRedemption) -> "RedemptionRecord":
        return cls(
            id=row.id,
            coupon_id=row.coupon_id,
            tenant_id=row.tenant_id,
            customer_id=row.customer_id,
            booking_id=row.booking_id,
            amount_discounted=to_decimal(row.amount_discounted),
            state=row.state,
            created_at=as_utc(row.created_at),
            expires_at=as_utc(row.expires_at),
            confirmed_at=as_utc(row.confirmed_at),
            released_at=as_utc(row.released_at),
            release_reason=row.release_reason,
        )


@dataclass(frozen=True)
class CouponUsage:
    coupon_id: UUID
    confirmed: int
    reserved: int
    total_usage_limit: int | None
    per_customer: dict[str, int] = field(default_factory=dict)

    @property
    def remaining(self) -> int | None:
        if self.total_usage_limit is None:
            return None
        return max(0, self.total_usage_limit - self.confirmed - self.reserved)


TokenRef = Union[ReservationToken, UUID]


def _token_id(token: TokenRef) -> UUID:
    return token.id if isinstance(token, ReservationToken) else token


def _is_transient(exc: DBAPIError) -> bool:
    if exc.connection_invalidated:
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    message = str(orig or exc).lower()
    return any(fragment in message for fragment in _TRANSIENT_MESSAGES)


def _counted(now: datetime):
    return or_(
        CouponRedemption.state == RedemptionState.confirmed,
        and_(CouponRedemption.state == RedemptionState.reserved, CouponRedemption.expires_at > now),
    )


async def _count_active(session: AsyncSession, *, coupon_id: UUID, now: datetime) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(CouponRedemption)
                .where(CouponRedemption.coupon_id == coupon_id, _counted(now))
            )
        ).scalar_one()
    )


async def _count_customer_active(session: AsyncSession, *, coupon_id: UUID, customer_id: str, now: datetime) -> int:
    return int(
        (
            await session.execute(
                select(func.count())
                .select_from(CouponRedemption)
                .where(
                    CouponRedemption.coupon_id == coupon_id,
                    CouponRedemption.customer_id == customer_id,
                    _counted(now),
                )
            )
        ).scalar_one()
    )


async def _lock_coupon(session: AsyncSession, coupon_id: UUID):
    result = await session.execute(
        select(Coupon.id, Coupon.tenant_id, Coupon.total_usage_limit, Coupon.per_customer_usage_limit)
        .where(Coupon.id == coupon_id)
        .with_for_update()
    )
    return result.first()


class RedemptionLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        reservation_ttl: timedelta | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self.reservation_ttl = reservation_ttl or timedelta(minutes=settings.coupon_reservation_ttl_minutes)
        self.max_retries = max(0, settings.coupon_ledger_max_retries if max_retries is None else max_retries)
        if retry_backoff_seconds is None:
            retry_backoff_seconds = settings.coupon_ledger_retry_backoff_ms / 1000
        self.retry_backoff_seconds = max(0.0, retry_backoff_seconds)
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def _lock_for(self, coupon_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(coupon_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[coupon_id] = lock
        return lock

    async def _transaction(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self._session_factory() as session:
            async with session.begin():
                return await work(session)

    async def _run(self, operation: str, coupon_id: UUID | None, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        last_error: DBAPIError | None = None
        for attempt in range(1, self.max_retries + 2):
            try:
                if coupon_id is None:
                    return await self._transaction(work)
                lock = self._lock_for(coupon_id)
                async with lock:
                    return await self._transaction(work)
            except DBAPIError as exc:
                if not _is_transient(exc):
                    raise
                last_error = exc
                metrics.record_ledger_retry()
                logger.warning(
                    "coupon_ledger_retry",
                    extra={"operation": operation, "attempt": attempt, "coupon_id": str(coupon_id), "error": str(exc)},
                )
            if attempt <= self.max_retries:
                await asyncio.sleep(self.retry_backoff_seconds * attempt)
        raise TransientLedgerError("Coupon ledger is busy, please try again") from last_error

    async def _coupon_id_for(self, token: TokenRef) -> UUID:
        if isinstance(token, ReservationToken):
            return token.coupon_id
        async with self._session_factory() as session:
            coupon_id = (
                await session.execute(select(CouponRedemption.coupon_id).where(CouponRedemption.id == token))
            ).scalar_one_or_none()
        if coupon_id is None:
            raise NotFoundError("Reservation not found")
        return coupon_id

    async def reserve(
        self,
        coupon_id: UUID,
        tenant_id: UUID,
        customer_id: str,
        *,
        amount_discounted: Decimal | int | str = Decimal("0"),
    ) -> ReservationToken:
        customer = str(customer_id or "").strip()
        if not customer:
            raise ValidationError("Customer is required to reserve a coupon")
        amount = quantize_money(to_decimal(amount_discounted))

        async def work(session: AsyncSession) -> ReservationToken:
            now = self._now()
            coupon = await _lock_coupon(session, coupon_id)
            if coupon is None or coupon.tenant_id != tenant_id:
                raise NotFoundError("Coupon not found")

            if coupon.total_usage_limit is not None:
                used = await _count_active(session, coupon_id=coupon_id, now=now)
                if used >= int(coupon.total_usage_limit):
                    raise LimitExceededError(LimitKind.global_)
            if coupon.per_customer_usage_limit is not None:
                used_by_customer = await _count_customer_active(
                    session, coupon_id=coupon_id, customer_id=customer, now=now
                )
                if used_by_customer >= int(coupon.per_customer_usage_limit):
                    raise LimitExceededError(LimitKind.per_customer)

            record = CouponRedemption(
                id=uuid.uuid4(),
                coupon_id=coupon_id,
                tenant_id=tenant_id,
                customer_id=customer,
                amount_discounted=amount,
                state=RedemptionState.reserved,
                created_at=now,
                expires_at=now + self.reservation_ttl,
            )
            session.add(record)
            return ReservationToken(
                id=record.id,
                coupon_id=coupon_id,
                tenant_id=tenant_id,
                customer_id=customer,
                expires_at=record.expires_at,
            )

        try:
            token = await self._run("reserve", coupon_id, work)
        except LimitExceededError as exc:
            metrics.record_limit_exceeded(exc.kind.value)
            logger.info(
                "coupon_limit_exceeded",
                extra={"coupon_id": str(coupon_id), "customer_id": customer, "limit": exc.kind.value},
            )
            raise
        metrics.record_reservation()
        logger.info(
            "coupon_reserved",
            extra={"coupon_id": str(coupon_id), "reservation_id": str(token.id), "customer_id": customer},
        )
        return token

    async def confirm(
        self,
        token: TokenRef,
        booking_id: UUID,
        *,
        amount_discounted: Decimal | int | str | None = None,
        tenant_id: UUID | None = None,
    ) -> RedemptionRecord:
        reservation_id = _token_id(token)
        coupon_id = await self._coupon_id_for(token)

        async def work(session: AsyncSession) -> RedemptionRecord:
            now = self._now()
            await _lock_coupon(session, coupon_id)
            record = await session.get(CouponRedemption, reservation_id, with_for_update=True)
            if record is None or record.coupon_id != coupon_id:
                raise NotFoundError("Reservation not found")
            if tenant_id is not None and record.tenant_id != tenant_id:
                raise NotFoundError("Reservation not found")
            if record.state == RedemptionState.confirmed:
                if record.booking_id != booking_id:
                    raise BookingMismatchError("Reservation is already confirmed for another booking")
                return RedemptionRecord.from_row(record)
            if record.state == RedemptionState.released:
                raise AlreadyExpiredError("Reservation was released; apply the coupon again")
            if as_utc(record.expires_at) <= now:
                raise AlreadyExpiredError("Reservation expired; apply the coupon again")

            record.state = RedemptionState.confirmed
            record.booking_id = booking_id
            record.confirmed_at = now
            if amount_discounted is not None:
                record.amount_discounted = quantize_money(to_decimal(amount_discounted))
            return RedemptionRecord.from_row(record)

        result = await self._run("confirm", coupon_id, work)
        metrics.record_confirmation()
        logger.info(
            "coupon_confirmed",
            extra={"coupon_id": str(coupon_id), "reservation_id": str(reservation_id), "booking_id": str(booking_id)},
        )
        return result

    async def release(
        self, token: TokenRef, *, reason: str | None = None, tenant_id: UUID | None = None
    ) -> RedemptionRecord:
        reservation_id = _token_id(token)
        coupon_id = await self._coupon_id_for(token)

        async def work(session: AsyncSession) -> RedemptionRecord:
            return await self.release_in_session(session, reservation_id, reason=reason, tenant_id=tenant_id)

        return await self._run("release", coupon_id, work)

    async def release_in_session(
        self,
        session: AsyncSession,
        token: TokenRef,
        *,
        reason: str | None = None,
        tenant_id: UUID | None = None,
    ) -> RedemptionRecord:
        """Release inside a transaction owned by the caller; nothing is committed here."""
        reservation_id = _token_id(token)
        record = await session.get(CouponRedemption, reservation_id, with_for_update=True)
        if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
            raise NotFoundError("Reservation not found")
        if record.state == RedemptionState.released:
            return RedemptionRecord.from_row(record)

        previous = record.state
        record.state = RedemptionState.released
        record.released_at = self._now()
        record.release_reason = (reason or "")[:255] or None
        await session.flush()
        metrics.record_release()
        logger.info(
            "coupon_released",
            extra={
                "coupon_id": str(record.coupon_id),
                "reservation_id": str(record.id),
                "previous_state": previous.value,
                "reason": record.release_reason,
            },
        )
        return RedemptionRecord.from_row(record)

    async def records_for_booking(
        self,
        session: AsyncSession,
        *,
        booking_id: UUID,
        tenant_id: UUID,
        reservations: Iterable[TokenRef] = (),
    ) -> list[RedemptionRecord]:
        """Unreleased rows confirmed for the booking, plus the given reservations.

        Reserved rows carry no booking id until they are confirmed, so callers pass
        the tokens of reservations they hold for the booking.
        """
        matches = CouponRedemption.booking_id == booking_id
        reservation_ids = {_token_id(token) for token in reservations}
        if reservation_ids:
            matches = or_(matches, CouponRedemption.id.in_(reservation_ids))
        result = await session.execute(
            select(CouponRedemption)
            .where(
                matches,
                CouponRedemption.tenant_id == tenant_id,
                CouponRedemption.state != RedemptionState.released,
            )
            .order_by(CouponRedemption.created_at)
        )
        return [RedemptionRecord.from_row(row) for row in result.scalars().all()]

    async def get(self, token: TokenRef, *, tenant_id: UUID | None = None) -> RedemptionRecord:
        """Current view of a redemption; expired reservations read as released."""
        async with self._session_factory() as session:
            record = await session.get(CouponRedemption, _token_id(token))
            if record is None or (tenant_id is not None and record.tenant_id != tenant_id):
                raise NotFoundError("Reservation not found")
            snapshot = RedemptionRecord.from_row(record)
        if snapshot.state == RedemptionState.reserved and snapshot.expires_at <= self._now():
            return replace(snapshot, state=RedemptionState.released, release_reason="expired")
        return snapshot

    async def sweep_expired(self, *, limit: int | None = None) -> int:
        batch = max(1, int(limit or settings.coupon_reservation_sweep_batch_limit))

        async def work(session: AsyncSession) -> int:
            now = self._now()
            ids = (
                await session.execute(
                    select(CouponRedemption.id)
                    .where(CouponRedemption.state == RedemptionState.reserved, CouponRedemption.expires_at <= now)
                    .order_by(CouponRedemption.expires_at)
                    .limit(batch)
                )
            ).scalars().all()
            if not ids:
                return 0
            result = await session.execute(
                update(CouponRedemption)
                .where(CouponRedemption.id.in_(ids), CouponRedemption.state == RedemptionState.reserved)
                .values(state=RedemptionState.released, released_at=now, release_reason="expired")
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

        swept = await self._run("sweep", None, work)
        if swept:
            logger.info("coupon_reservations_swept", extra={"count": swept})
        return swept

    async def usage(self, coupon_id: UUID, *, tenant_id: UUID) -> CouponUsage:
        async with self._session_factory() as session:
            coupon = await session.get(Coupon, coupon_id)
            if coupon is None or coupon.tenant_id != tenant_id:
                raise NotFoundError("Coupon not found")
            now = self._now()
            reserved = int(
                (
                    await session.execute(
                        select(func.count())
                        .select_from(CouponRedemption)
                        .where(
                            CouponRedemption.coupon_id == coupon_id,
                            CouponRedemption.state == RedemptionState.reserved,
                            CouponRedemption.expires_at > now,
                        )
                    )
                ).scalar_one()
            )
            rows = (
                await session.execute(
                    select(CouponRedemption.customer_id, func.count())
                    .where(
                        CouponRedemption.coupon_id == coupon_id,
                        CouponRedemption.state == RedemptionState.confirmed,
                    )
                    .group_by(CouponRedemption.customer_id)
                )
            ).all()
            per_customer = {str(customer): int(count) for customer, count in rows}
            return CouponUsage(
                coupon_id=coupon_id,
                confirmed=sum(per_customer.values()),
                reserved=reserved,
                total_usage_limit=coupon.total_usage_limit,
                per_customer=per_customer,
            )
