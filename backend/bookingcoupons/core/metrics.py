from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_reservation() -> None:
    _inc("coupon_reservations")


def record_limit_exceeded(kind: str) -> None:
    _inc(f"coupon_limit_exceeded_{kind}")


def record_confirmation() -> None:
    _inc("coupon_confirmations")


def record_release() -> None:
    _inc("coupon_releases")


def record_ledger_retry() -> None:
    _inc("coupon_ledger_retries")


def record_ineligible(reason: str) -> None:
    _inc(f"coupon_ineligible_{reason}")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
