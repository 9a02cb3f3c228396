"""Coupons - pricing rules, administration and usage recording."""

from enrollcore.coupons.engine import (
    calculate_discount,
    generate_coupon_code,
    normalize_code,
    validate_coupon,
)
from enrollcore.coupons.ledger import CouponUsageLedger
from enrollcore.coupons.models import (
    CouponApplication,
    CouponChanges,
    CouponCheck,
    CouponDraft,
    CouponQuote,
    CouponStats,
    TopCoupon,
)
from enrollcore.coupons.service import CouponService

__all__ = [
    "CouponApplication",
    "CouponChanges",
    "CouponCheck",
    "CouponDraft",
    "CouponQuote",
    "CouponService",
    "CouponStats",
    "CouponUsageLedger",
    "TopCoupon",
    "calculate_discount",
    "generate_coupon_code",
    "normalize_code",
    "validate_coupon",
]
