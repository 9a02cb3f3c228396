"""EnrollmentLifecycle - enrollment creation, status, progress and stats."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollcore.admission.controller import CapacityAdmissionController
from enrollcore.auth import Actor, Capability, require_owner_or
from enrollcore.clock import naive_utc, utcnow
from enrollcore.coupons.engine import quantize, to_money
from enrollcore.coupons.ledger import CouponUsageLedger
from enrollcore.enrollment.models import (
    EnrollmentFilters,
    EnrollmentRequest,
    EnrollmentStats,
    MonthlyEnrollment,
    ProgressUpdate,
)
from enrollcore.exceptions import (
    AlreadyEnrolledError,
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from enrollcore.paging import Page, page_offset
from enrollcore.payments.ledger import PaymentLedger, normalize_currency
from enrollcore.payments.models import PaymentInput
from enrollcore.store.database import StaleWriteError, is_unique_violation
from enrollcore.store.models import (
    HOLDING_STATUSES,
    Course,
    CourseEnrollment,
    EnrollmentStatus,
    empty_progress,
)
from enrollcore.store.store import RecordStore

logger = logging.getLogger(__name__)

SORTABLE_FIELDS = {
    "enrollment_date": CourseEnrollment.enrollment_date,
    "created_at": CourseEnrollment.created_at,
    "updated_at": CourseEnrollment.updated_at,
    "amount_paid": CourseEnrollment.amount_paid,
    "status": CourseEnrollment.status,
}


def _require_uuid(value: str, field: str) -> str:
    try:
        uuid.UUID(value)
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f"{field} must be a UUID") from e
    return value


class EnrollmentLifecycle:
    """Creates enrollments and tracks them afterwards.

    ``enroll_student`` is one unit of work: the slot reservation, the coupon
    use and the payment intent commit together or not at all.
    """

    def __init__(
        self,
        store: RecordStore,
        admission: CapacityAdmissionController,
        coupons: CouponUsageLedger,
        payments: PaymentLedger,
        default_currency: str = "INR",
    ) -> None:
        self._store = store
        self._db = store.db
        self._admission = admission
        self._coupons = coupons
        self._payments = payments
        self.default_currency = normalize_currency(default_currency)

    # --- Creation ---

    def enroll_student(self, request: EnrollmentRequest) -> CourseEnrollment:
        """Enroll a student in a course.

        Args:
            request: Enrollment details.

        Returns:
            The committed active CourseEnrollment.

        Raises:
            ValidationError: If the request is malformed.
            AlreadyEnrolledError: If the student already holds an enrollment.
            CapacityExceededError: If the course is full.
            NotFoundError: If the course or coupon doesn't exist.
            CouponInvalidError: If the coupon can't be applied.
            CouponAlreadyUsedError: If the student already used the coupon here.
            ExternalServiceError: If store conflicts persisted past the retry budget.
        """
        _require_uuid(request.course_id, "course_id")
        _require_uuid(request.student_id, "student_id")
        amount = to_money(request.amount_paid, "amount_paid")
        if amount < 0:
            raise ValidationError("amount_paid must not be negative")
        currency = normalize_currency(request.currency or self.default_currency)

        def work(session: Session) -> CourseEnrollment:
            token = self._admission.reserve(session, request.course_id, request.student_id)
            enrollment = session.get(CourseEnrollment, token.enrollment_id)
            if enrollment is None:
                raise NotFoundError("Enrollment not found")

            price = quantize(amount)
            discount = Decimal("0.00")
            coupon_code = None
            if request.coupon_code:
                application = self._coupons.apply_coupon(
                    request.coupon_code,
                    request.student_id,
                    request.course_id,
                    price,
                    enrollment_id=enrollment.id,
                    session=session,
                )
                price = application.final_amount
                discount = application.discount_amount
                coupon_code = application.coupon.code

            enrollment.amount_paid = price
            enrollment.currency = currency
            enrollment.coupon_code = coupon_code
            enrollment.payment_method = request.payment_method
            enrollment.transaction_id = request.transaction_id
            enrollment.subscription_id = request.subscription_id
            enrollment.enrollment_source = request.enrollment_source
            enrollment.referral_code = request.referral_code
            if request.access_expires_at is not None:
                enrollment.access_expires_at = naive_utc(request.access_expires_at)
            enrollment.enrollment_date = utcnow()

            if price > 0 or request.gateway:
                self._payments.create_payment(
                    PaymentInput(
                        student_id=request.student_id,
                        amount=price,
                        gateway=request.gateway or self._payments.gateway_name,
                        currency=currency,
                        enrollment_id=enrollment.id,
                        subscription_id=request.subscription_id,
                        payment_method=request.payment_method,
                        coupon_code=coupon_code,
                        discount_amount=discount,
                    ),
                    session=session,
                )
            session.flush()
            return enrollment

        enrollment = self._db.run_in_transaction(work, operation="enroll_student")
        logger.info(
            "Enrolled student %s in course %s (enrollment %s, paid %s %s)",
            enrollment.student_id,
            enrollment.course_id,
            enrollment.id,
            enrollment.amount_paid,
            enrollment.currency,
        )
        return enrollment

    # --- Queries ---

    def get_enrollment(self, enrollment_id: str) -> CourseEnrollment:
        """Get enrollment by ID.

        Raises:
            NotFoundError: If the enrollment doesn't exist
        """
        session = self._db.get_session()
        try:
            enrollment = session.get(CourseEnrollment, enrollment_id)
            if enrollment is None:
                raise NotFoundError("Enrollment not found")
            return enrollment
        finally:
            session.close()

    def list_student_enrollments(
        self,
        student_id: str,
        filters: EnrollmentFilters | None = None,
        sort_by: str = "enrollment_date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> Page[CourseEnrollment]:
        """List a student's enrollments."""
        return self._list(
            CourseEnrollment.student_id == student_id, filters, sort_by, sort_order, page, limit
        )

    def list_course_enrollments(
        self,
        course_id: str,
        actor: Actor,
        filters: EnrollmentFilters | None = None,
        sort_by: str = "enrollment_date",
        sort_order: str = "desc",
        page: int = 1,
        limit: int = 10,
    ) -> Page[CourseEnrollment]:
        """List a course's enrollments.

        Raises:
            NotFoundError: If the course doesn't exist.
            AuthorizationError: Unless the actor is the course's mentor or an admin.
        """
        course = self._store.get_course(course_id)
        require_owner_or(
            actor,
            (course.mentor_id,),
            Capability.ENROLLMENT_STATUS_MANAGE,
            "Not authorized to view course enrollments",
        )
        return self._list(
            CourseEnrollment.course_id == course_id, filters, sort_by, sort_order, page, limit
        )

    def _list(
        self,
        scope: Any,
        filters: EnrollmentFilters | None,
        sort_by: str,
        sort_order: str,
        page: int,
        limit: int,
    ) -> Page[CourseEnrollment]:
        offset = page_offset(page, limit)
        column = SORTABLE_FIELDS.get(sort_by)
        if column is None:
            raise ValidationError(f"Cannot sort by {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValidationError("sort_order must be 'asc' or 'desc'")

        conditions = [scope]
        if filters is not None:
            if filters.status is not None:
                conditions.append(CourseEnrollment.status == filters.status)
            if filters.course_id is not None:
                conditions.append(CourseEnrollment.course_id == filters.course_id)
            if filters.enrollment_source is not None:
                conditions.append(CourseEnrollment.enrollment_source == filters.enrollment_source)
            if filters.date_from is not None:
                conditions.append(CourseEnrollment.enrollment_date >= naive_utc(filters.date_from))
            if filters.date_to is not None:
                conditions.append(CourseEnrollment.enrollment_date <= naive_utc(filters.date_to))

        order = column.asc() if sort_order == "asc" else column.desc()
        session = self._db.get_session()
        try:
            total = session.execute(
                select(func.count(CourseEnrollment.id)).where(*conditions)
            ).scalar_one()
            rows = (
                session.execute(
                    select(CourseEnrollment)
                    .where(*conditions)
                    .order_by(order, CourseEnrollment.id)
                    .limit(limit)
                    .offset(offset)
                )
                .scalars()
                .all()
            )
            return Page(items=list(rows), total=total, page=page, limit=limit)
        finally:
            session.close()

    # --- Updates ---

    def update_enrollment_status(
        self, enrollment_id: str, new_status: str, actor: Actor
    ) -> CourseEnrollment:
        """Move an enrollment to completed, cancelled or expired.

        Any of the three may be set from any status. The course's enrollment
        count follows the rows holding a seat: cancelling a holding
        enrollment frees its seat, and moving a cancelled one back to
        completed or expired takes a seat again. The status swap and the
        counter write commit together.

        Args:
            enrollment_id: The enrollment.
            new_status: Target status.
            actor: The enrolled student, the course's mentor, or an admin.

        Raises:
            ValidationError: If the status is unknown.
            InvalidTransitionError: If the target is ``active``.
            NotFoundError: If the enrollment doesn't exist.
            AuthorizationError: If the actor is none of the above.
            AlreadyEnrolledError: If the student holds another enrollment
                in the course that the new status would collide with.
            CapacityExceededError: If a cancelled enrollment would take a
                seat in a full course.
            ExternalServiceError: If the store failed or stayed contended.
        """
        try:
            status = EnrollmentStatus(new_status)
        except ValueError as e:
            raise ValidationError(f"Invalid enrollment status: {new_status}") from e
        if status == EnrollmentStatus.ACTIVE:
            raise InvalidTransitionError("Enrollments cannot be reactivated")

        def work(session: Session) -> tuple[CourseEnrollment, str]:
            enrollment = session.get(CourseEnrollment, enrollment_id)
            if enrollment is None:
                raise NotFoundError("Enrollment not found")
            course = session.get(Course, enrollment.course_id)
            require_owner_or(
                actor,
                (enrollment.student_id, course.mentor_id if course is not None else None),
                Capability.ENROLLMENT_STATUS_MANAGE,
                "Unauthorized to update this enrollment",
            )

            previous = enrollment.status
            try:
                result = session.execute(
                    update(CourseEnrollment)
                    .where(
                        CourseEnrollment.id == enrollment_id,
                        CourseEnrollment.status == previous,
                    )
                    .values(status=status.value, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
            except IntegrityError as e:
                if is_unique_violation(e):
                    raise AlreadyEnrolledError(
                        "Student is already enrolled in this course"
                    ) from e
                raise
            if result.rowcount != 1:
                raise StaleWriteError(f"Enrollment {enrollment_id} changed concurrently")

            was_holding = previous in HOLDING_STATUSES
            if was_holding and status.value not in HOLDING_STATUSES:
                self._admission.free_slot(session, enrollment.course_id)
            elif not was_holding and status.value in HOLDING_STATUSES:
                self._admission.take_slot(session, enrollment.course_id)

            session.refresh(enrollment)
            return enrollment, previous

        enrollment, previous = self._db.run_in_transaction(
            work, operation="update_enrollment_status"
        )
        logger.info(
            "Enrollment %s: %s -> %s by %s", enrollment_id, previous, status.value, actor.user_id
        )
        return enrollment

    def update_enrollment_progress(
        self, enrollment_id: str, actor_id: str, progress: ProgressUpdate
    ) -> CourseEnrollment:
        """Record a student's progress.

        Raises:
            ValidationError: If a supplied value is out of range.
            NotFoundError: If the enrollment doesn't exist or isn't the actor's.
        """
        if progress.completion_percentage is not None and not (
            0 <= progress.completion_percentage <= 100
        ):
            raise ValidationError("completion_percentage must be between 0 and 100")
        if progress.total_sessions is not None and progress.total_sessions < 0:
            raise ValidationError("total_sessions must not be negative")
        if progress.time_spent is not None and progress.time_spent < 0:
            raise ValidationError("time_spent must not be negative")

        def work(session: Session) -> CourseEnrollment:
            enrollment = session.execute(
                select(CourseEnrollment).where(
                    CourseEnrollment.id == enrollment_id,
                    CourseEnrollment.student_id == actor_id,
                )
            ).scalar_one_or_none()
            if enrollment is None:
                raise NotFoundError("Enrollment not found or unauthorized")

            merged = {**empty_progress(), **(enrollment.progress or {})}
            if progress.completed_sessions is not None:
                merged["completedSessions"] = list(dict.fromkeys(progress.completed_sessions))
            if progress.total_sessions is not None:
                merged["totalSessions"] = progress.total_sessions
            if progress.completion_percentage is not None:
                merged["completionPercentage"] = progress.completion_percentage
            if progress.last_session_completed is not None:
                merged["lastSessionCompleted"] = progress.last_session_completed
            merged["timeSpent"] = (merged.get("timeSpent") or 0) + (progress.time_spent or 0)

            now = utcnow()
            result = session.execute(
                update(CourseEnrollment)
                .where(
                    CourseEnrollment.id == enrollment_id,
                    CourseEnrollment.updated_at == enrollment.updated_at,
                )
                .values(progress=merged, last_accessed_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise StaleWriteError(f"Enrollment {enrollment_id} changed concurrently")
            session.refresh(enrollment)
            return enrollment

        return self._db.run_in_transaction(work, operation="update_enrollment_progress")

    # --- Stats ---

    def get_enrollment_stats(
        self,
        actor: Actor,
        course_id: str | None = None,
        mentor_id: str | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
    ) -> EnrollmentStats:
        """Aggregate enrollment counts, revenue and completion.

        Admins may query anything; a mentor may query their own courses.

        Raises:
            AuthorizationError: If the actor may not see the requested scope.
        """
        if not actor.can(Capability.STATS_VIEW):
            owns = mentor_id is not None and mentor_id == actor.user_id
            if course_id is not None:
                course = self._store.get_course(course_id)
                owns = course.mentor_id == actor.user_id and mentor_id in (None, actor.user_id)
            if not owns:
                raise AuthorizationError("Not authorized to view enrollment statistics")

        stmt = select(
            CourseEnrollment.status,
            CourseEnrollment.amount_paid,
            CourseEnrollment.progress,
            CourseEnrollment.enrollment_date,
        )
        if mentor_id is not None:
            stmt = stmt.join(Course, Course.id == CourseEnrollment.course_id).where(
                Course.mentor_id == mentor_id
            )
        if course_id is not None:
            stmt = stmt.where(CourseEnrollment.course_id == course_id)
        if date_from is not None:
            stmt = stmt.where(CourseEnrollment.enrollment_date >= naive_utc(date_from))
        if date_to is not None:
            stmt = stmt.where(CourseEnrollment.enrollment_date <= naive_utc(date_to))

        session = self._db.get_session()
        try:
            rows = session.execute(stmt).all()
        finally:
            session.close()

        active = completed = 0
        revenue = Decimal("0")
        completion_total = 0.0
        with_progress = 0
        months: dict[str, list[Any]] = defaultdict(lambda: [0, Decimal("0")])
        for status, amount_paid, progress, enrolled_at in rows:
            if status == EnrollmentStatus.ACTIVE:
                active += 1
            elif status == EnrollmentStatus.COMPLETED:
                completed += 1
            paid = to_money(amount_paid or 0)
            revenue += paid
            percentage = (progress or {}).get("completionPercentage")
            if percentage is not None:
                completion_total += float(percentage)
                with_progress += 1
            bucket = months[enrolled_at.strftime("%Y-%m")]
            bucket[0] += 1
            bucket[1] += paid

        return EnrollmentStats(
            total_enrollments=len(rows),
            active_enrollments=active,
            completed_enrollments=completed,
            total_revenue=quantize(revenue),
            average_completion_rate=completion_total / with_progress if with_progress else 0.0,
            enrollments_by_month=[
                MonthlyEnrollment(month=month, count=count, revenue=quantize(total))
                for month, (count, total) in sorted(months.items())
            ],
        )
