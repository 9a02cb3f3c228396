"""Coupon pricing and validation rules.

Pure functions over coupon terms; nothing here touches the store.
"""

from __future__ import annotations

import re
import secrets
import string
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Protocol

from enrollcore.clock import naive_utc, utcnow
from enrollcore.coupons.models import CouponCheck
from enrollcore.exceptions import ValidationError

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_PATTERN = re.compile(r"^[A-Z0-9_-]{3,50}$")
CENT = Decimal("0.01")
ZERO = Decimal("0.00")

PERCENTAGE = "percentage"
FIXED = "fixed"


class CouponTerms(Protocol):
    """The coupon attributes pricing and validation read."""

    discount_type: str
    discount_value: Any
    min_amount: Any
    max_discount: Any
    usage_limit: int | None
    used_count: int
    valid_from: datetime
    valid_until: datetime | None
    is_active: bool


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Convert a number to Decimal, rejecting non-numeric and non-finite values.

    Args:
        value: int, float, str or Decimal.
        field: Field name for the error message.

    Raises:
        ValidationError: If the value is not a finite number.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        result = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field} must be a number") from e
    if not result.is_finite():
        raise ValidationError(f"{field} must be a finite number")
    return result


def quantize(value: Decimal) -> Decimal:
    """Round to cents, half up."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def format_amount(value: Any) -> str:
    """Render an amount without trailing zero cents (500.00 -> 500, 99.50 -> 99.50)."""
    amount = quantize(to_money(value))
    if amount == amount.to_integral_value():
        return str(amount.to_integral_value())
    return str(amount)


def calculate_discount(coupon: CouponTerms, amount: Any) -> Decimal:
    """Discount a coupon grants on an amount.

    Percentage coupons take ``amount * value / 100``; fixed coupons take
    ``value``. The result is capped by ``max_discount`` when set and never
    exceeds ``amount``.

    Args:
        coupon: Coupon terms.
        amount: Amount being discounted.

    Returns:
        The discount, rounded to cents.
    """
    amount = to_money(amount)
    if amount <= 0:
        return ZERO

    value = to_money(coupon.discount_value, "discount_value")
    if coupon.discount_type == PERCENTAGE:
        discount = amount * value / 100
    elif coupon.discount_type == FIXED:
        discount = value
    else:
        raise ValidationError(f"Unknown discount type: {coupon.discount_type}")

    if coupon.max_discount is not None:
        cap = to_money(coupon.max_discount, "max_discount")
        if discount > cap:
            discount = cap

    return quantize(min(discount, amount))


def is_date_valid(coupon: CouponTerms, now: datetime | None = None) -> bool:
    """Whether ``now`` falls in ``[valid_from, valid_until]``."""
    moment = naive_utc(now) if now is not None else utcnow()
    if moment < naive_utc(coupon.valid_from):
        return False
    return coupon.valid_until is None or moment <= naive_utc(coupon.valid_until)


def is_usage_limit_valid(coupon: CouponTerms) -> bool:
    """Whether the coupon has uses left."""
    if coupon.usage_limit is None:
        return True
    return coupon.used_count < coupon.usage_limit


def meets_minimum_amount(coupon: CouponTerms, amount: Any) -> bool:
    return to_money(amount) >= to_money(coupon.min_amount, "min_amount")


def validate_coupon(coupon: CouponTerms, amount: Any, now: datetime | None = None) -> CouponCheck:
    """Validate a coupon for an amount.

    Checks run in a fixed order and only the first failure is reported:
    active flag, date window, usage limit, minimum amount.

    Args:
        coupon: Coupon terms.
        amount: Amount the coupon would apply to.
        now: Evaluation time (defaults to the current UTC time).

    Returns:
        CouponCheck with is_valid and the first error message.
    """
    if not coupon.is_active:
        return CouponCheck(is_valid=False, error="Coupon is not active")

    if not is_date_valid(coupon, now):
        return CouponCheck(is_valid=False, error="Coupon has expired or is not yet valid")

    if not is_usage_limit_valid(coupon):
        return CouponCheck(is_valid=False, error="Coupon usage limit exceeded")

    if not meets_minimum_amount(coupon, amount):
        return CouponCheck(
            is_valid=False,
            error=f"Minimum amount of {format_amount(coupon.min_amount)} required",
        )

    return CouponCheck(is_valid=True)


def generate_coupon_code(prefix: str | None = None, length: int = 8) -> str:
    """Random coupon code of ``length`` characters from [A-Z0-9].

    Args:
        prefix: Optional prefix, joined with an underscore.
        length: Number of random characters.
    """
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))
    if prefix:
        return f"{prefix.upper()}_{body}"
    return body


def normalize_code(code: str) -> str:
    """Upper-case a coupon code and check its format.

    Raises:
        ValidationError: If the code is not 3-50 characters of [A-Z0-9_-].
    """
    normalized = code.strip().upper()
    if not CODE_PATTERN.match(normalized):
        raise ValidationError(
            "Coupon code must be 3-50 characters of uppercase letters, "
            "numbers, hyphens, and underscores"
        )
    return normalized
