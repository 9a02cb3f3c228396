"""Data models for coupon validation, application and reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from enrollcore.store.models import Coupon


@dataclass
class CouponDraft:
    """Terms for a new coupon.

    ``code`` may be left empty when the draft is a template for bulk creation.
    """

    discount_type: str
    discount_value: Decimal
    code: str = ""
    description: str | None = None
    min_amount: Decimal = Decimal("0")
    max_discount: Decimal | None = None
    usage_limit: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True


@dataclass
class CouponChanges:
    """Partial coupon update. None means leave unchanged."""

    code: str | None = None
    description: str | None = None
    discount_type: str | None = None
    discount_value: Decimal | None = None
    min_amount: Decimal | None = None
    max_discount: Decimal | None = None
    usage_limit: int | None = None
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None


@dataclass
class CouponCheck:
    """Outcome of validating a coupon's terms against an amount."""

    is_valid: bool
    error: str | None = None


@dataclass
class CouponQuote:
    """Read-only preview of what a coupon would do for a user and amount.

    Attributes:
        is_valid: Whether the coupon can be applied.
        discount_amount: Discount that would be granted (0 when invalid).
        final_amount: Amount after discount (the original when invalid).
        error: First failing check, when invalid.
        coupon: The coupon, when the code resolved.
    """

    is_valid: bool
    discount_amount: Decimal
    final_amount: Decimal
    error: str | None = None
    coupon: Coupon | None = None


@dataclass
class CouponApplication:
    """Result of recording a coupon use."""

    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    coupon: Coupon
    usage_id: str


@dataclass
class TopCoupon:
    """Usage summary for one coupon code."""

    code: str
    usage_count: int
    total_discount: Decimal


@dataclass
class CouponStats:
    """Aggregated coupon statistics."""

    total_coupons: int
    active_coupons: int
    total_usage: int
    total_discount_given: Decimal
    top_coupons: list[TopCoupon] = field(default_factory=list)
