"""CouponUsageLedger - records coupon applications exactly once."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollcore.coupons.engine import calculate_discount, quantize, to_money, validate_coupon
from enrollcore.coupons.models import CouponApplication
from enrollcore.exceptions import (
    CouponAlreadyUsedError,
    CouponInvalidError,
    NotFoundError,
    ValidationError,
)
from enrollcore.store.database import is_unique_violation
from enrollcore.store.models import Coupon, CouponUsage
from enrollcore.store.store import RecordStore

logger = logging.getLogger(__name__)


class CouponUsageLedger:
    """Applies coupons with a usage row and a bounded counter increment.

    Both writes happen in one transaction. The per-user uniqueness rule is
    enforced by the store's unique indexes on ``coupon_usage`` and the usage
    limit by a conditional ``UPDATE``, so concurrent callers cannot
    over-apply a coupon.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._db = store.db

    def apply_coupon(
        self,
        code: str,
        user_id: str,
        course_id: str | None,
        original_amount: Any,
        enrollment_id: str | None = None,
        session: Session | None = None,
    ) -> CouponApplication:
        """Validate and record one use of a coupon.

        Args:
            code: Coupon code (case-insensitive).
            user_id: User applying the coupon.
            course_id: Course the coupon applies to, or None for a global use.
            original_amount: Amount before discount.
            enrollment_id: Enrollment the use belongs to, if any.
            session: Caller's open transaction. When given, the writes join
                it and the caller commits; otherwise the ledger runs its own
                transaction and retries transient conflicts.

        Returns:
            CouponApplication with the amounts and the updated coupon.

        Raises:
            NotFoundError: If no coupon has the code.
            CouponInvalidError: If the coupon fails validation or its limit
                was reached concurrently.
            CouponAlreadyUsedError: If the user already used it for the course.
        """
        amount = to_money(original_amount, "original_amount")
        if amount < 0:
            raise ValidationError("original_amount must not be negative")

        def work(s: Session) -> CouponApplication:
            return self._apply(s, code, user_id, course_id, amount, enrollment_id)

        if session is not None:
            return work(session)
        return self._db.run_in_transaction(work, operation="apply_coupon")

    def _apply(
        self,
        session: Session,
        code: str,
        user_id: str,
        course_id: str | None,
        amount: Any,
        enrollment_id: str | None,
    ) -> CouponApplication:
        coupon = session.execute(
            select(Coupon).where(Coupon.code == code.strip().upper())
        ).scalar_one_or_none()
        if coupon is None:
            raise NotFoundError("Invalid coupon code")

        check = validate_coupon(coupon, amount)
        if not check.is_valid:
            raise CouponInvalidError(check.error or "Invalid coupon")

        discount = calculate_discount(coupon, amount)
        final = quantize(amount - discount)

        usage = CouponUsage(
            coupon_id=coupon.id,
            user_id=user_id,
            course_id=course_id,
            enrollment_id=enrollment_id,
            original_amount=quantize(amount),
            discount_amount=discount,
            final_amount=final,
        )
        session.add(usage)
        try:
            session.flush()
        except IntegrityError as e:
            if is_unique_violation(e):
                raise CouponAlreadyUsedError("Coupon already used for this course") from e
            raise

        result = session.execute(
            update(Coupon)
            .where(
                Coupon.id == coupon.id,
                Coupon.is_active.is_(True),
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise CouponInvalidError("Coupon usage limit exceeded")

        session.refresh(coupon)
        logger.info(
            "Coupon %s applied by %s (course=%s, discount=%s, uses=%d)",
            coupon.code,
            user_id,
            course_id,
            discount,
            coupon.used_count,
        )
        return CouponApplication(
            original_amount=quantize(amount),
            discount_amount=discount,
            final_amount=final,
            coupon=coupon,
            usage_id=usage.id,
        )
