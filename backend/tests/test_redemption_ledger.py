import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from bookingcoupons.core import metrics
from bookingcoupons.core.config import settings
from bookingcoupons.db.session import build_engine, build_session_factory
from bookingcoupons.models.coupons import Coupon, CouponDiscountType, RedemptionState
from bookingcoupons.schemas.coupons import CouponCreate
from bookingcoupons.services import coupon_registry
from bookingcoupons.services.collaborators import InMemoryServiceCatalog
from bookingcoupons.services.errors import (
    AlreadyExpiredError,
    BookingMismatchError,
    LimitExceededError,
    LimitKind,
    NotFoundError,
    TransientLedgerError,
    ValidationError,
)
from bookingcoupons.services.redemption_ledger import RedemptionLedger


TENANT = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
OTHER_TENANT = uuid.UUID("00000000-0000-0000-0000-0000000000b2")
T0 = datetime(2026, 4, 1, 10, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


async def create_coupon(session_factory, *, code: str = "LIMITED", **overrides):
    data = {
        "code": code,
        "name": code.title(),
        "discount_type": CouponDiscountType.fixed_amount,
        "discount_value": Decimal("10"),
    }
    data.update(overrides)
    async with session_factory() as session:
        return await coupon_registry.create_coupon(
            session,
            CouponCreate(**data),
            tenant_id=TENANT,
            catalog=InMemoryServiceCatalog(allow_any=True),
        )


def make_ledger(session_factory, clock: FakeClock | None = None, **kwargs) -> RedemptionLedger:
    kwargs.setdefault("reservation_ttl", timedelta(minutes=5))
    kwargs.setdefault("retry_backoff_seconds", 0)
    if clock is not None:
        kwargs["clock"] = clock
    return RedemptionLedger(session_factory, **kwargs)


@pytest.mark.anyio
async def test_concurrent_reserves_never_exceed_global_limit(session_factory) -> None:
    limit = 5
    attempts = 25
    coupon = await create_coupon(session_factory, total_usage_limit=limit)
    ledger = make_ledger(session_factory)

    results = await asyncio.gather(
        *(ledger.reserve(coupon.id, TENANT, f"customer-{i}") for i in range(attempts)),
        return_exceptions=True,
    )

    tokens = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(tokens) == limit
    assert len(failures) == attempts - limit
    assert all(isinstance(f, LimitExceededError) and f.kind == LimitKind.global_ for f in failures)
    assert len({t.id for t in tokens}) == limit

    usage = await ledger.usage(coupon.id, tenant_id=TENANT)
    assert usage.reserved == limit
    assert usage.remaining == 0

    snap = metrics.snapshot()
    assert snap["coupon_reservations"] == limit
    assert snap["coupon_limit_exceeded_global"] == attempts - limit


@pytest.mark.anyio
async def test_two_simultaneous_reserves_on_single_use_coupon(session_factory) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory)

    first, second = await asyncio.gather(
        ledger.reserve(coupon.id, TENANT, "alice"),
        ledger.reserve(coupon.id, TENANT, "bob"),
        return_exceptions=True,
    )

    outcomes = [first, second]
    tokens = [o for o in outcomes if not isinstance(o, BaseException)]
    errors = [o for o in outcomes if isinstance(o, LimitExceededError)]
    assert len(tokens) == 1
    assert len(errors) == 1
    assert errors[0].kind == LimitKind.global_
    assert errors[0].code == "coupon_limit_global"


@pytest.mark.anyio
async def test_concurrent_reserves_respect_per_customer_limit(session_factory) -> None:
    coupon = await create_coupon(session_factory, per_customer_usage_limit=1, total_usage_limit=10)
    ledger = make_ledger(session_factory)

    results = await asyncio.gather(
        ledger.reserve(coupon.id, TENANT, "alice"),
        ledger.reserve(coupon.id, TENANT, "alice"),
        ledger.reserve(coupon.id, TENANT, "bob"),
        return_exceptions=True,
    )

    alice = [r for r in results[:2] if not isinstance(r, BaseException)]
    rejected = [r for r in results[:2] if isinstance(r, LimitExceededError)]
    assert len(alice) == 1
    assert len(rejected) == 1
    assert rejected[0].kind == LimitKind.per_customer
    assert not isinstance(results[2], BaseException)


async def reserve_from_separate_workers(database_url: str, coupon_id: uuid.UUID, customers: list[str]) -> list:
    """One engine and one ledger per caller, all sharing the same database file."""
    engines = [build_engine(database_url) for _ in customers]
    try:
        ledgers = [make_ledger(build_session_factory(engine), max_retries=10) for engine in engines]
        return await asyncio.gather(
            *(ledger.reserve(coupon_id, TENANT, customer) for ledger, customer in zip(ledgers, customers)),
            return_exceptions=True,
        )
    finally:
        for engine in engines:
            await engine.dispose()


@pytest.mark.anyio
async def test_separate_workers_never_exceed_global_limit(session_factory, database_url) -> None:
    limit = 3
    attempts = 12
    coupon = await create_coupon(session_factory, total_usage_limit=limit)

    results = await reserve_from_separate_workers(database_url, coupon.id, [f"customer-{i}" for i in range(attempts)])

    tokens = [r for r in results if not isinstance(r, BaseException)]
    failures = [r for r in results if isinstance(r, BaseException)]
    assert len(tokens) == limit
    assert len(failures) == attempts - limit
    assert all(isinstance(f, LimitExceededError) and f.kind == LimitKind.global_ for f in failures)

    usage = await make_ledger(session_factory).usage(coupon.id, tenant_id=TENANT)
    assert usage.reserved == limit
    assert usage.remaining == 0


@pytest.mark.anyio
async def test_separate_workers_respect_per_customer_limit(session_factory, database_url) -> None:
    coupon = await create_coupon(session_factory, per_customer_usage_limit=2, total_usage_limit=50)

    results = await reserve_from_separate_workers(database_url, coupon.id, ["alice"] * 6 + ["bob"] * 2)

    alice, bob = results[:6], results[6:]
    assert len([r for r in alice if not isinstance(r, BaseException)]) == 2
    rejected = [r for r in alice if isinstance(r, BaseException)]
    assert len(rejected) == 4
    assert all(isinstance(r, LimitExceededError) and r.kind == LimitKind.per_customer for r in rejected)
    assert not any(isinstance(r, BaseException) for r in bob)

    usage = await make_ledger(session_factory).usage(coupon.id, tenant_id=TENANT)
    assert usage.reserved == 4


@pytest.mark.anyio
async def test_sqlite_transaction_holds_write_lock_from_first_read(
    session_factory, database_url, monkeypatch: pytest.MonkeyPatch
) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    monkeypatch.setattr(settings, "sqlite_busy_timeout_seconds", 0.1)
    other = build_engine(database_url)
    try:
        async with session_factory() as session:
            assert await session.get(Coupon, coupon.id) is not None
            with pytest.raises(OperationalError, match="database is locked"):
                async with other.begin() as conn:
                    await conn.execute(text("SELECT 1"))
        async with other.begin() as conn:
            assert (await conn.execute(text("SELECT 1"))).scalar_one() == 1
    finally:
        await other.dispose()


@pytest.mark.anyio
async def test_release_returns_slot_for_next_reservation(session_factory) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    with pytest.raises(LimitExceededError):
        await ledger.reserve(coupon.id, TENANT, "bob")

    released = await ledger.release(token, reason="checkout abandoned")
    assert released.state == RedemptionState.released
    assert released.release_reason == "checkout abandoned"

    again = await ledger.release(token)
    assert again.state == RedemptionState.released
    assert again.release_reason == "checkout abandoned"
    assert metrics.snapshot()["coupon_releases"] == 1

    replacement = await ledger.reserve(coupon.id, TENANT, "bob")
    assert replacement.customer_id == "bob"


@pytest.mark.anyio
async def test_confirm_is_idempotent_for_same_booking(session_factory) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=3)
    ledger = make_ledger(session_factory)
    booking_id = uuid.uuid4()

    token = await ledger.reserve(coupon.id, TENANT, "alice", amount_discounted=Decimal("10"))
    confirmed = await ledger.confirm(token, booking_id, amount_discounted=Decimal("9.995"))
    assert confirmed.state == RedemptionState.confirmed
    assert confirmed.booking_id == booking_id
    assert confirmed.confirmed_at is not None
    assert confirmed.amount_discounted == Decimal("10.00")

    # Lookups by bare id behave the same as by token.
    repeat = await ledger.confirm(token.id, booking_id)
    assert repeat.id == confirmed.id
    assert repeat.state == RedemptionState.confirmed

    with pytest.raises(BookingMismatchError):
        await ledger.confirm(token, uuid.uuid4())

    usage = await ledger.usage(coupon.id, tenant_id=TENANT)
    assert usage.confirmed == 1
    assert usage.reserved == 0
    assert usage.per_customer == {"alice": 1}
    assert usage.remaining == 2


@pytest.mark.anyio
async def test_confirm_after_ttl_fails_and_frees_capacity(session_factory) -> None:
    clock = FakeClock(T0)
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory, clock)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    assert token.expires_at == T0 + timedelta(minutes=5)

    clock.advance(minutes=5)
    with pytest.raises(AlreadyExpiredError) as excinfo:
        await ledger.confirm(token, uuid.uuid4())
    assert excinfo.value.code == "reservation_expired"

    view = await ledger.get(token, tenant_id=TENANT)
    assert view.state == RedemptionState.released
    assert view.release_reason == "expired"

    # The expired reservation no longer counts, even before any sweep.
    fresh = await ledger.reserve(coupon.id, TENANT, "bob")
    assert fresh.customer_id == "bob"


@pytest.mark.anyio
async def test_confirm_just_before_expiry_succeeds(session_factory) -> None:
    clock = FakeClock(T0)
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory, clock)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    clock.advance(minutes=4, seconds=59)
    confirmed = await ledger.confirm(token, uuid.uuid4())
    assert confirmed.state == RedemptionState.confirmed

    # Confirmed redemptions never expire.
    clock.advance(days=30)
    with pytest.raises(LimitExceededError):
        await ledger.reserve(coupon.id, TENANT, "bob")


@pytest.mark.anyio
async def test_confirm_released_reservation_fails(session_factory) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    await ledger.release(token)
    with pytest.raises(AlreadyExpiredError, match="released"):
        await ledger.confirm(token, uuid.uuid4())


@pytest.mark.anyio
async def test_released_confirmation_frees_slot(session_factory) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    await ledger.confirm(token, uuid.uuid4())
    released = await ledger.release(token, reason="refund")
    assert released.state == RedemptionState.released

    await ledger.reserve(coupon.id, TENANT, "bob")


@pytest.mark.anyio
async def test_sweep_marks_only_expired_reservations(session_factory) -> None:
    clock = FakeClock(T0)
    coupon = await create_coupon(session_factory, total_usage_limit=10)
    ledger = make_ledger(session_factory, clock)

    stale = [await ledger.reserve(coupon.id, TENANT, f"stale-{i}") for i in range(3)]
    confirmed = await ledger.reserve(coupon.id, TENANT, "buyer")
    await ledger.confirm(confirmed, uuid.uuid4())

    clock.advance(minutes=10)
    live = await ledger.reserve(coupon.id, TENANT, "live")

    assert await ledger.sweep_expired(limit=2) == 2
    assert await ledger.sweep_expired() == 1
    assert await ledger.sweep_expired() == 0

    for token in stale:
        record = await ledger.get(token)
        assert record.state == RedemptionState.released
        assert record.release_reason == "expired"
    assert (await ledger.get(live)).state == RedemptionState.reserved
    assert (await ledger.get(confirmed)).state == RedemptionState.confirmed

    usage = await ledger.usage(coupon.id, tenant_id=TENANT)
    assert usage.confirmed == 1
    assert usage.reserved == 1
    assert usage.remaining == 8


@pytest.mark.anyio
async def test_unlimited_coupon_accepts_any_number_of_reservations(session_factory) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory)

    tokens = await asyncio.gather(*(ledger.reserve(coupon.id, TENANT, "alice") for _ in range(10)))
    assert len({t.id for t in tokens}) == 10

    usage = await ledger.usage(coupon.id, tenant_id=TENANT)
    assert usage.reserved == 10
    assert usage.remaining is None


@pytest.mark.anyio
async def test_tenant_boundaries_are_enforced(session_factory) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory)

    with pytest.raises(NotFoundError):
        await ledger.reserve(coupon.id, OTHER_TENANT, "alice")
    with pytest.raises(NotFoundError):
        await ledger.reserve(uuid.uuid4(), TENANT, "alice")

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    with pytest.raises(NotFoundError):
        await ledger.confirm(token, uuid.uuid4(), tenant_id=OTHER_TENANT)
    with pytest.raises(NotFoundError):
        await ledger.release(token, tenant_id=OTHER_TENANT)
    with pytest.raises(NotFoundError):
        await ledger.get(token, tenant_id=OTHER_TENANT)
    with pytest.raises(NotFoundError):
        await ledger.usage(coupon.id, tenant_id=OTHER_TENANT)
    with pytest.raises(NotFoundError):
        await ledger.confirm(uuid.uuid4(), uuid.uuid4())


@pytest.mark.anyio
async def test_blank_customer_is_rejected(session_factory) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory)
    with pytest.raises(ValidationError):
        await ledger.reserve(coupon.id, TENANT, "   ")


def _locked() -> OperationalError:
    return OperationalError("SELECT 1", {}, Exception("database is locked"))


@pytest.mark.anyio
async def test_transient_errors_are_retried(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    coupon = await create_coupon(session_factory, total_usage_limit=1)
    ledger = make_ledger(session_factory, max_retries=3)
    original = ledger._transaction
    calls = {"count": 0}

    async def flaky(work):
        calls["count"] += 1
        if calls["count"] <= 2:
            raise _locked()
        return await original(work)

    monkeypatch.setattr(ledger, "_transaction", flaky)

    token = await ledger.reserve(coupon.id, TENANT, "alice")
    assert token.customer_id == "alice"
    assert calls["count"] == 3
    assert metrics.snapshot()["coupon_ledger_retries"] == 2


@pytest.mark.anyio
async def test_retries_are_bounded(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory, max_retries=1)
    calls = {"count": 0}

    async def always_locked(work):
        calls["count"] += 1
        raise _locked()

    monkeypatch.setattr(ledger, "_transaction", always_locked)

    with pytest.raises(TransientLedgerError) as excinfo:
        await ledger.reserve(coupon.id, TENANT, "alice")
    assert calls["count"] == 2
    assert isinstance(excinfo.value.__cause__, OperationalError)
    assert excinfo.value.status_code == 503


@pytest.mark.anyio
async def test_non_transient_database_errors_propagate(session_factory, monkeypatch: pytest.MonkeyPatch) -> None:
    coupon = await create_coupon(session_factory)
    ledger = make_ledger(session_factory, max_retries=3)
    calls = {"count": 0}

    async def broken(work):
        calls["count"] += 1
        raise OperationalError("SELECT 1", {}, Exception("disk I/O error"))

    monkeypatch.setattr(ledger, "_transaction", broken)

    with pytest.raises(OperationalError):
        await ledger.reserve(coupon.id, TENANT, "alice")
    assert calls["count"] == 1
