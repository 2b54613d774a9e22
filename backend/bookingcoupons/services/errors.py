from __future__ import annotations

import enum


class IneligibilityReason(str, enum.Enum):
    inactive = "inactive"
    expired = "expired"
    not_yet_started = "not_yet_started"
    below_minimum = "below_minimum"
    no_eligible_services = "no_eligible_services"
    tenant_inactive = "tenant_inactive"


class LimitKind(str, enum.Enum):
    global_ = "global"
    per_customer = "per_customer"


INELIGIBLE_MESSAGES: dict[IneligibilityReason, str] = {
    IneligibilityReason.inactive: "This coupon is not active.",
    IneligibilityReason.expired: "This coupon has expired.",
    IneligibilityReason.not_yet_started: "This coupon is not valid yet.",
    IneligibilityReason.below_minimum: "Your order does not reach the minimum value for this coupon.",
    IneligibilityReason.no_eligible_services: "This coupon does not apply to any of the selected services.",
    IneligibilityReason.tenant_inactive: "This coupon is not available.",
}


class CouponError(Exception):
    """Base class for coupon engine errors; carries an HTTP status and a machine code."""

    status_code = 400
    code = "coupon_error"

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class ValidationError(CouponError):
    code = "validation_error"


class NotFoundError(CouponError):
    status_code = 404
    code = "not_found"


class IneligibleError(CouponError):
    def __init__(self, reason: IneligibilityReason) -> None:
        super().__init__(INELIGIBLE_MESSAGES[reason])
        self.reason = reason
        self.code = f"coupon_{reason.value}"


class LimitExceededError(CouponError):
    status_code = 409

    def __init__(self, kind: LimitKind) -> None:
        super().__init__("This coupon is no longer available.")
        self.kind = kind
        self.code = f"coupon_limit_{kind.value}"


class AlreadyExpiredError(CouponError):
    status_code = 410
    code = "reservation_expired"


class BookingMismatchError(CouponError):
    status_code = 409
    code = "booking_mismatch"


class TransientLedgerError(CouponError):
    status_code = 503
    code = "ledger_busy"
