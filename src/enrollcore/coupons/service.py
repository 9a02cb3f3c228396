"""CouponService - coupon administration, code generation and reporting."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import case, delete, func, not_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollcore.auth import Actor, Capability, require, require_owner_or
from enrollcore.clock import naive_utc, utcnow
from enrollcore.coupons.engine import (
    calculate_discount,
    generate_coupon_code,
    normalize_code,
    quantize,
    to_money,
    validate_coupon,
)
from enrollcore.coupons.models import (
    CouponChanges,
    CouponDraft,
    CouponQuote,
    CouponStats,
    TopCoupon,
)
from enrollcore.exceptions import (
    CodeGenerationExhaustedError,
    CouponCodeExistsError,
    CouponInUseError,
    NotFoundError,
    ValidationError,
)
from enrollcore.paging import Page, page_offset
from enrollcore.store.database import is_unique_violation
from enrollcore.store.models import Coupon, CouponUsage, DiscountType
from enrollcore.store.store import RecordStore

logger = logging.getLogger(__name__)

TOP_COUPON_COUNT = 10


def check_terms(
    discount_type: str,
    discount_value: Any,
    min_amount: Any,
    max_discount: Any,
    usage_limit: int | None,
    valid_from: datetime | None,
    valid_until: datetime | None,
) -> None:
    """Reject coupon terms that could never price correctly.

    Raises:
        ValidationError: On the first bad field.
    """
    try:
        kind = DiscountType(discount_type)
    except ValueError as e:
        raise ValidationError(f"Invalid discount type: {discount_type}") from e

    value = to_money(discount_value, "discount_value")
    if value <= 0:
        raise ValidationError("discount_value must be positive")
    if kind == DiscountType.PERCENTAGE and value > 100:
        raise ValidationError("Percentage discount cannot exceed 100")
    if to_money(min_amount, "min_amount") < 0:
        raise ValidationError("min_amount must not be negative")
    if max_discount is not None and to_money(max_discount, "max_discount") < 0:
        raise ValidationError("max_discount must not be negative")
    if usage_limit is not None and usage_limit < 1:
        raise ValidationError("usage_limit must be at least 1")
    if valid_from is not None and valid_until is not None:
        if naive_utc(valid_until) <= naive_utc(valid_from):
            raise ValidationError("valid_until must be after valid_from")


def _flush_codes(session: Session) -> None:
    try:
        session.flush()
    except IntegrityError as e:
        if is_unique_violation(e):
            raise CouponCodeExistsError("Coupon code already exists") from e
        raise


class CouponService:
    """Coupon administration.

    Mentors may create coupons; admins (or a coupon's creator) may change
    or remove them. Usage is recorded by CouponUsageLedger, never here.
    """

    def __init__(self, store: RecordStore, code_attempts: int = 10, code_length: int = 8) -> None:
        """Initialize the service.

        Args:
            store: Record store.
            code_attempts: Attempts generate_unique_code makes before giving up.
            code_length: Default random part length of generated codes.
        """
        self._store = store
        self._db = store.db
        self.code_attempts = code_attempts
        self.code_length = code_length

    # --- CRUD ---

    def create_coupon(self, draft: CouponDraft, actor: Actor) -> Coupon:
        """Create a coupon.

        Args:
            draft: Coupon terms. The code is upper-cased.
            actor: Caller; needs the coupon.create capability.

        Returns:
            The created Coupon.

        Raises:
            AuthorizationError: If the actor may not create coupons.
            ValidationError: If the terms are malformed.
            CouponCodeExistsError: If the code is taken.
        """
        require(actor, Capability.COUPON_CREATE, "Not authorized to create coupons")
        coupon = self._build(draft, normalize_code(draft.code), actor.user_id)

        with self._db.transaction("create_coupon") as session:
            session.add(coupon)
            _flush_codes(session)
            session.refresh(coupon)

        logger.info("Coupon %s created by %s", coupon.code, actor.user_id)
        return coupon

    def get_coupon(self, coupon_id: str) -> Coupon:
        """Get coupon by ID.

        Raises:
            NotFoundError: If the coupon doesn't exist
        """
        session = self._db.get_session()
        try:
            coupon = session.get(Coupon, coupon_id)
            if coupon is None:
                raise NotFoundError("Coupon not found")
            return coupon
        finally:
            session.close()

    def get_coupon_by_code(self, code: str) -> Coupon:
        """Get coupon by code (case-insensitive).

        Raises:
            NotFoundError: If no coupon has the code
        """
        session = self._db.get_session()
        try:
            stmt = select(Coupon).where(Coupon.code == code.strip().upper())
            coupon = session.execute(stmt).scalar_one_or_none()
            if coupon is None:
                raise NotFoundError("Coupon not found")
            return coupon
        finally:
            session.close()

    def list_coupons(
        self,
        is_active: bool | None = None,
        discount_type: str | None = None,
        created_by: str | None = None,
        valid_only: bool = False,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Coupon]:
        """List coupons, newest first.

        Args:
            is_active: Filter by active flag.
            discount_type: Filter by discount type.
            created_by: Filter by creator.
            valid_only: Only coupons usable right now (active, in window, uses left).
            search: Substring match on code or description.
            limit: Maximum rows.
            offset: Rows to skip.
        """
        stmt = select(Coupon)
        if is_active is not None:
            stmt = stmt.where(Coupon.is_active == is_active)
        if discount_type is not None:
            stmt = stmt.where(Coupon.discount_type == discount_type)
        if created_by is not None:
            stmt = stmt.where(Coupon.created_by == created_by)
        if valid_only:
            now = utcnow()
            stmt = stmt.where(
                Coupon.is_active.is_(True),
                Coupon.valid_from <= now,
                or_(Coupon.valid_until.is_(None), Coupon.valid_until >= now),
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
        if search:
            pattern = f"%{search}%"
            stmt = stmt.where(
                or_(Coupon.code.ilike(pattern), Coupon.description.ilike(pattern))
            )
        stmt = stmt.order_by(Coupon.created_at.desc()).limit(limit).offset(offset)

        session = self._db.get_session()
        try:
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    def update_coupon(self, coupon_id: str, changes: CouponChanges, actor: Actor) -> Coupon:
        """Update coupon fields. Only provided fields are updated.

        ``used_count`` and ``created_by`` cannot be changed.

        Raises:
            NotFoundError: If the coupon doesn't exist.
            AuthorizationError: Unless the actor is an admin or the creator.
            ValidationError: If the resulting terms are malformed.
            CouponCodeExistsError: If a new code is taken.
        """
        with self._db.transaction("update_coupon") as session:
            coupon = session.get(Coupon, coupon_id)
            if coupon is None:
                raise NotFoundError("Coupon not found")
            require_owner_or(
                actor,
                (coupon.created_by,),
                Capability.COUPON_MANAGE,
                "Not authorized to update this coupon",
            )

            if changes.code is not None:
                coupon.code = normalize_code(changes.code)
            if changes.description is not None:
                coupon.description = changes.description
            if changes.discount_type is not None:
                coupon.discount_type = changes.discount_type
            if changes.discount_value is not None:
                coupon.discount_value = to_money(changes.discount_value, "discount_value")
            if changes.min_amount is not None:
                coupon.min_amount = to_money(changes.min_amount, "min_amount")
            if changes.max_discount is not None:
                coupon.max_discount = to_money(changes.max_discount, "max_discount")
            if changes.usage_limit is not None:
                if changes.usage_limit < coupon.used_count:
                    raise ValidationError("usage_limit cannot be below the current usage count")
                coupon.usage_limit = changes.usage_limit
            if changes.valid_from is not None:
                coupon.valid_from = naive_utc(changes.valid_from)
            if changes.valid_until is not None:
                coupon.valid_until = naive_utc(changes.valid_until)
            if changes.is_active is not None:
                coupon.is_active = changes.is_active

            check_terms(
                coupon.discount_type,
                coupon.discount_value,
                coupon.min_amount,
                coupon.max_discount,
                coupon.usage_limit,
                coupon.valid_from,
                coupon.valid_until,
            )
            _flush_codes(session)
            session.refresh(coupon)
        return coupon

    def delete_coupon(self, coupon_id: str, actor: Actor) -> None:
        """Delete a coupon that has never been used.

        Raises:
            NotFoundError: If the coupon doesn't exist.
            AuthorizationError: Unless the actor is an admin or the creator.
            CouponInUseError: If the coupon has recorded usage.
        """
        coupon = self.get_coupon(coupon_id)
        require_owner_or(
            actor,
            (coupon.created_by,),
            Capability.COUPON_MANAGE,
            "Not authorized to delete this coupon",
        )

        with self._db.transaction("delete_coupon") as session:
            result = session.execute(
                delete(Coupon)
                .where(Coupon.id == coupon_id, Coupon.used_count == 0)
                .execution_options(synchronize_session=False)
            )
            deleted = result.rowcount

        if deleted != 1:
            raise CouponInUseError("Cannot delete coupon that has been used")
        logger.info("Coupon %s deleted by %s", coupon.code, actor.user_id)

    def toggle_coupon_status(self, coupon_id: str, actor: Actor) -> Coupon:
        """Flip a coupon's active flag.

        Raises:
            NotFoundError: If the coupon doesn't exist.
            AuthorizationError: Unless the actor is an admin or the creator.
        """
        coupon = self.get_coupon(coupon_id)
        require_owner_or(
            actor,
            (coupon.created_by,),
            Capability.COUPON_MANAGE,
            "Not authorized to update this coupon",
        )

        with self._db.transaction("toggle_coupon_status") as session:
            session.execute(
                update(Coupon)
                .where(Coupon.id == coupon_id)
                .values(is_active=not_(Coupon.is_active), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            coupon = session.get(Coupon, coupon_id)
            if coupon is None:
                raise NotFoundError("Coupon not found")
            session.refresh(coupon)
        return coupon

    # --- Code generation ---

    def generate_unique_code(self, prefix: str | None = None, length: int | None = None) -> str:
        """Generate a code no existing coupon uses.

        Raises:
            CodeGenerationExhaustedError: If every attempt collided.
        """
        length = length if length is not None else self.code_length
        if length < 1:
            raise ValidationError("length must be positive")

        session = self._db.get_session()
        try:
            for _ in range(self.code_attempts):
                code = generate_coupon_code(prefix, length)
                taken = session.execute(
                    select(Coupon.id).where(Coupon.code == code)
                ).scalar_one_or_none()
                if taken is None:
                    return code
        finally:
            session.close()

        logger.warning("No free coupon code after %d attempts", self.code_attempts)
        raise CodeGenerationExhaustedError("Failed to generate unique coupon code")

    def bulk_create_coupons(
        self, template: CouponDraft, codes: list[str], actor: Actor
    ) -> list[Coupon]:
        """Create one coupon per code from shared terms, all or nothing.

        Raises:
            ValidationError: If the list is empty or repeats a code.
            CouponCodeExistsError: If any code is already taken.
        """
        require(actor, Capability.COUPON_CREATE, "Not authorized to create coupons")
        if not codes:
            raise ValidationError("At least one code is required")

        normalized = [normalize_code(c) for c in codes]
        seen: set[str] = set()
        repeated: set[str] = set()
        for code in normalized:
            if code in seen:
                repeated.add(code)
            seen.add(code)
        if repeated:
            raise ValidationError(f"Duplicate codes in request: {', '.join(sorted(repeated))}")

        coupons = [self._build(template, code, actor.user_id) for code in normalized]

        with self._db.transaction("bulk_create_coupons") as session:
            existing = (
                session.execute(select(Coupon.code).where(Coupon.code.in_(normalized)))
                .scalars()
                .all()
            )
            if existing:
                raise CouponCodeExistsError(
                    f"Coupon codes already exist: {', '.join(sorted(existing))}"
                )
            session.add_all(coupons)
            _flush_codes(session)
            for coupon in coupons:
                session.refresh(coupon)

        logger.info("Bulk-created %d coupons for %s", len(coupons), actor.user_id)
        return coupons

    # --- Validation preview ---

    def validate_code(
        self,
        code: str,
        amount: Any,
        user_id: str,
        course_id: str | None = None,
    ) -> CouponQuote:
        """Preview what a coupon would do, without recording anything.

        Args:
            code: Coupon code (case-insensitive).
            amount: Amount the coupon would apply to.
            user_id: User who would apply it.
            course_id: Course it would apply to, if any.

        Returns:
            CouponQuote. Invalid quotes carry a zero discount and the
            original amount.
        """
        amount = to_money(amount)
        if amount < 0:
            raise ValidationError("amount must not be negative")

        session = self._db.get_session()
        try:
            coupon = session.execute(
                select(Coupon).where(Coupon.code == code.strip().upper())
            ).scalar_one_or_none()
            if coupon is None:
                return self._rejected(amount, "Invalid coupon code")

            check = validate_coupon(coupon, amount)
            if not check.is_valid:
                return self._rejected(amount, check.error, coupon)

            same_scope = (
                CouponUsage.course_id == course_id
                if course_id is not None
                else CouponUsage.course_id.is_(None)
            )
            used = session.execute(
                select(CouponUsage.id).where(
                    CouponUsage.coupon_id == coupon.id,
                    CouponUsage.user_id == user_id,
                    same_scope,
                )
            ).first()
            if used is not None:
                return self._rejected(amount, "Coupon already used for this course", coupon)

            discount = calculate_discount(coupon, amount)
            return CouponQuote(
                is_valid=True,
                discount_amount=discount,
                final_amount=quantize(amount - discount),
                coupon=coupon,
            )
        finally:
            session.close()

    # --- Reporting ---

    def get_coupon_stats(
        self,
        created_by: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> CouponStats:
        """Aggregate coupon counts and usage.

        Coupon counts filter on ``created_at``; usage filters on ``used_at``.
        """
        coupon_filters = []
        usage_filters = []
        if created_by is not None:
            coupon_filters.append(Coupon.created_by == created_by)
            usage_filters.append(Coupon.created_by == created_by)
        if date_from is not None:
            coupon_filters.append(Coupon.created_at >= naive_utc(date_from))
            usage_filters.append(CouponUsage.used_at >= naive_utc(date_from))
        if date_to is not None:
            coupon_filters.append(Coupon.created_at <= naive_utc(date_to))
            usage_filters.append(CouponUsage.used_at <= naive_utc(date_to))

        session = self._db.get_session()
        try:
            total_coupons, active_coupons = session.execute(
                select(
                    func.count(Coupon.id),
                    func.coalesce(func.sum(case((Coupon.is_active.is_(True), 1), else_=0)), 0),
                ).where(*coupon_filters)
            ).one()

            total_usage, total_discount = session.execute(
                select(
                    func.count(CouponUsage.id),
                    func.coalesce(func.sum(CouponUsage.discount_amount), 0),
                )
                .join(Coupon, Coupon.id == CouponUsage.coupon_id)
                .where(*usage_filters)
            ).one()

            usage_count = func.count(CouponUsage.id).label("usage_count")
            top_rows = session.execute(
                select(
                    Coupon.code,
                    usage_count,
                    func.coalesce(func.sum(CouponUsage.discount_amount), 0),
                )
                .join(Coupon, Coupon.id == CouponUsage.coupon_id)
                .where(*usage_filters)
                .group_by(Coupon.code)
                .order_by(usage_count.desc(), Coupon.code)
                .limit(TOP_COUPON_COUNT)
            ).all()
        finally:
            session.close()

        return CouponStats(
            total_coupons=total_coupons,
            active_coupons=int(active_coupons),
            total_usage=total_usage,
            total_discount_given=quantize(to_money(total_discount)),
            top_coupons=[
                TopCoupon(
                    code=code,
                    usage_count=count,
                    total_discount=quantize(to_money(discount)),
                )
                for code, count, discount in top_rows
            ],
        )

    def get_coupon_usage_history(
        self, coupon_id: str, page: int = 1, limit: int = 10
    ) -> Page[CouponUsage]:
        """Usage rows for a coupon, most recent first.

        Raises:
            NotFoundError: If the coupon doesn't exist
        """
        offset = page_offset(page, limit)
        session = self._db.get_session()
        try:
            if session.get(Coupon, coupon_id) is None:
                raise NotFoundError("Coupon not found")
            total = session.execute(
                select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)
            ).scalar_one()
            rows = (
                session.execute(
                    select(CouponUsage)
                    .where(CouponUsage.coupon_id == coupon_id)
                    .order_by(CouponUsage.used_at.desc())
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return Page(items=list(rows), total=total, page=page, limit=limit)
        finally:
            session.close()

    # --- Helpers ---

    @staticmethod
    def _build(draft: CouponDraft, code: str, created_by: str) -> Coupon:
        check_terms(
            draft.discount_type,
            draft.discount_value,
            draft.min_amount,
            draft.max_discount,
            draft.usage_limit,
            draft.valid_from,
            draft.valid_until,
        )
        return Coupon(
            code=code,
            discount_type=draft.discount_type,
            discount_value=to_money(draft.discount_value, "discount_value"),
            description=draft.description,
            min_amount=to_money(draft.min_amount, "min_amount"),
            max_discount=(
                to_money(draft.max_discount, "max_discount")
                if draft.max_discount is not None
                else None
            ),
            usage_limit=draft.usage_limit,
            valid_from=naive_utc(draft.valid_from) if draft.valid_from is not None else None,
            valid_until=naive_utc(draft.valid_until) if draft.valid_until is not None else None,
            is_active=draft.is_active,
            created_by=created_by,
        )

    @staticmethod
    def _rejected(amount: Decimal, error: str | None, coupon: Coupon | None = None) -> CouponQuote:
        return CouponQuote(
            is_valid=False,
            discount_amount=Decimal("0.00"),
            final_amount=quantize(amount),
            error=error,
            coupon=coupon,
        )
