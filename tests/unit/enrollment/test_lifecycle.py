"""Unit tests for EnrollmentLifecycle."""

import uuid
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from enrollcore.admission import CapacityAdmissionController
from enrollcore.auth import Actor
from enrollcore.coupons import CouponDraft, CouponService, CouponUsageLedger
from enrollcore.enrollment import (
    EnrollmentFilters,
    EnrollmentLifecycle,
    EnrollmentRequest,
    ProgressUpdate,
)
from enrollcore.exceptions import (
    AlreadyEnrolledError,
    AuthorizationError,
    CapacityExceededError,
    CouponAlreadyUsedError,
    CouponInvalidError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from enrollcore.payments import PaymentLedger
from enrollcore.store import (
    CouponUsage,
    Course,
    CourseEnrollment,
    EnrollmentStatus,
    Payment,
    RecordStore,
)


@pytest.fixture
def admission(store: RecordStore) -> CapacityAdmissionController:
    return CapacityAdmissionController(store)


@pytest.fixture
def payments(store: RecordStore) -> PaymentLedger:
    return PaymentLedger(store)


@pytest.fixture
def lifecycle(
    store: RecordStore, admission: CapacityAdmissionController, payments: PaymentLedger
) -> EnrollmentLifecycle:
    return EnrollmentLifecycle(store, admission, CouponUsageLedger(store), payments)


@pytest.fixture
def coupons(store: RecordStore) -> CouponService:
    return CouponService(store)


@pytest.fixture
def course(store: RecordStore, mentor: Actor) -> Course:
    return store.register_course("Python 101", mentor_id=mentor.user_id, max_students=10)


def count(store: RecordStore, model, *conditions) -> int:
    with store.db.transaction() as session:
        return session.execute(select(func.count()).select_from(model).where(*conditions)).scalar_one()


@pytest.mark.unit
class TestEnrollStudent:
    """Tests for enroll_student."""

    def test_free_enrollment(
        self, store: RecordStore, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """A free enrollment is active, paid 0 and records no payment."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )

        assert enrollment.status == EnrollmentStatus.ACTIVE.value
        assert enrollment.amount_paid == Decimal("0.00")
        assert enrollment.currency == "INR"
        assert enrollment.enrollment_source == "direct"
        assert enrollment.progress["completedSessions"] == []
        assert count(store, Payment) == 0
        assert store.get_course(course.id).enrollment["currentEnrollment"] == 1

    def test_paid_enrollment_records_pending_payment(
        self, store: RecordStore, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """A priced enrollment records a pending payment intent."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(
                course_id=course.id,
                student_id=student.user_id,
                amount_paid=Decimal("499"),
                currency="usd",
                payment_method="card",
            )
        )

        assert enrollment.amount_paid == Decimal("499.00")
        assert enrollment.currency == "USD"
        with store.db.transaction() as session:
            payment = session.execute(select(Payment)).scalar_one()
            assert payment.enrollment_id == enrollment.id
            assert payment.status == "pending"
            assert payment.amount == Decimal("499.00")
            assert payment.gateway == "manual"

    def test_coupon_applied(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        coupons: CouponService,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """A coupon discounts the price and is recorded against the enrollment."""
        coupons.create_coupon(
            CouponDraft(code="HALF", discount_type="percentage", discount_value=Decimal("50")),
            admin,
        )

        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(
                course_id=course.id,
                student_id=student.user_id,
                amount_paid=Decimal("1000"),
                coupon_code="half",
            )
        )

        assert enrollment.amount_paid == Decimal("500.00")
        assert enrollment.coupon_code == "HALF"
        assert coupons.get_coupon_by_code("HALF").used_count == 1
        with store.db.transaction() as session:
            usage = session.execute(select(CouponUsage)).scalar_one()
            assert usage.enrollment_id == enrollment.id
            payment = session.execute(select(Payment)).scalar_one()
            assert payment.discount_amount == Decimal("500.00")
            assert payment.coupon_code == "HALF"

    def test_full_discount_skips_payment(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        coupons: CouponService,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """Nothing to pay means no payment intent."""
        coupons.create_coupon(
            CouponDraft(code="FREE", discount_type="percentage", discount_value=Decimal("100")),
            admin,
        )
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(
                course_id=course.id,
                student_id=student.user_id,
                amount_paid=Decimal("200"),
                coupon_code="FREE",
            )
        )

        assert enrollment.amount_paid == Decimal("0.00")
        assert count(store, Payment) == 0

    def test_invalid_coupon_rolls_back_admission(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        coupons: CouponService,
        admission: CapacityAdmissionController,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """A coupon failure leaves no enrollment and no consumed slot."""
        coupons.create_coupon(
            CouponDraft(
                code="BIGSPEND",
                discount_type="fixed",
                discount_value=Decimal("10"),
                min_amount=Decimal("500"),
            ),
            admin,
        )

        with pytest.raises(CouponInvalidError, match="Minimum amount of 500 required"):
            lifecycle.enroll_student(
                EnrollmentRequest(
                    course_id=course.id,
                    student_id=student.user_id,
                    amount_paid=Decimal("100"),
                    coupon_code="BIGSPEND",
                )
            )

        assert count(store, CourseEnrollment) == 0
        assert admission.get_course_capacity(course.id).current_enrollment == 0

    def test_unknown_coupon(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Unknown coupon codes raise NotFoundError."""
        with pytest.raises(NotFoundError, match="Invalid coupon code"):
            lifecycle.enroll_student(
                EnrollmentRequest(
                    course_id=course.id, student_id=student.user_id, coupon_code="NOPE"
                )
            )

    def test_full_course_keeps_coupon_unused(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        coupons: CouponService,
        admin: Actor,
    ) -> None:
        """A capacity failure records no coupon use."""
        course = store.register_course("Tiny", max_students=1)
        coupons.create_coupon(
            CouponDraft(code="TINY10", discount_type="fixed", discount_value=Decimal("10")),
            admin,
        )
        lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=str(uuid.uuid4()))
        )

        with pytest.raises(CapacityExceededError):
            lifecycle.enroll_student(
                EnrollmentRequest(
                    course_id=course.id,
                    student_id=str(uuid.uuid4()),
                    amount_paid=Decimal("100"),
                    coupon_code="TINY10",
                )
            )
        assert coupons.get_coupon_by_code("TINY10").used_count == 0

    def test_duplicate_enrollment(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Enrolling twice raises AlreadyEnrolledError."""
        request = EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        lifecycle.enroll_student(request)

        with pytest.raises(AlreadyEnrolledError):
            lifecycle.enroll_student(request)

    def test_coupon_reuse_on_reenroll(
        self,
        lifecycle: EnrollmentLifecycle,
        coupons: CouponService,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """A cancelled-then-renewed enrollment cannot reuse the course coupon."""
        coupons.create_coupon(
            CouponDraft(code="ONCE", discount_type="fixed", discount_value=Decimal("10")), admin
        )
        first = lifecycle.enroll_student(
            EnrollmentRequest(
                course_id=course.id,
                student_id=student.user_id,
                amount_paid=Decimal("100"),
                coupon_code="ONCE",
            )
        )
        lifecycle.update_enrollment_status(first.id, "cancelled", student)

        with pytest.raises(CouponAlreadyUsedError):
            lifecycle.enroll_student(
                EnrollmentRequest(
                    course_id=course.id,
                    student_id=student.user_id,
                    amount_paid=Decimal("100"),
                    coupon_code="ONCE",
                )
            )

    @pytest.mark.parametrize("field", ["course_id", "student_id"])
    def test_ids_must_be_uuids(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor, field: str
    ) -> None:
        """Malformed IDs are rejected before any write."""
        values = {"course_id": course.id, "student_id": student.user_id, field: "not-a-uuid"}
        with pytest.raises(ValidationError, match=f"{field} must be a UUID"):
            lifecycle.enroll_student(EnrollmentRequest(**values))

    def test_negative_amount(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Negative prices are rejected."""
        with pytest.raises(ValidationError):
            lifecycle.enroll_student(
                EnrollmentRequest(
                    course_id=course.id, student_id=student.user_id, amount_paid=Decimal("-1")
                )
            )

    def test_missing_course(self, lifecycle: EnrollmentLifecycle, student: Actor) -> None:
        """Unknown courses raise NotFoundError."""
        with pytest.raises(NotFoundError):
            lifecycle.enroll_student(
                EnrollmentRequest(course_id=str(uuid.uuid4()), student_id=student.user_id)
            )


@pytest.mark.unit
class TestListEnrollments:
    """Tests for the listing operations."""

    def test_student_listing_filters_and_pages(
        self, store: RecordStore, lifecycle: EnrollmentLifecycle, student: Actor
    ) -> None:
        """A student's enrollments page and filter by status."""
        courses = [store.register_course(f"Course {i}") for i in range(3)]
        enrollments = [
            lifecycle.enroll_student(EnrollmentRequest(course_id=c.id, student_id=student.user_id))
            for c in courses
        ]
        lifecycle.update_enrollment_status(enrollments[0].id, "completed", student)

        page = lifecycle.list_student_enrollments(student.user_id, limit=2)
        assert page.total == 3
        assert len(page.items) == 2
        assert page.total_pages == 2

        completed = lifecycle.list_student_enrollments(
            student.user_id, filters=EnrollmentFilters(status="completed")
        )
        assert [e.id for e in completed.items] == [enrollments[0].id]

    def test_bad_sort_field(self, lifecycle: EnrollmentLifecycle, student: Actor) -> None:
        """Only known columns can be sorted on."""
        with pytest.raises(ValidationError, match="Cannot sort by"):
            lifecycle.list_student_enrollments(student.user_id, sort_by="password")

    def test_bad_page(self, lifecycle: EnrollmentLifecycle, student: Actor) -> None:
        """Pages start at 1."""
        with pytest.raises(ValidationError):
            lifecycle.list_student_enrollments(student.user_id, page=0)

    def test_course_listing_for_mentor(
        self,
        lifecycle: EnrollmentLifecycle,
        course: Course,
        mentor: Actor,
        student: Actor,
    ) -> None:
        """The course's mentor sees its enrollments."""
        lifecycle.enroll_student(EnrollmentRequest(course_id=course.id, student_id=student.user_id))

        page = lifecycle.list_course_enrollments(course.id, mentor)
        assert page.total == 1

    def test_course_listing_forbidden_for_students(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Other users cannot list a course's enrollments."""
        with pytest.raises(AuthorizationError, match="Not authorized to view course enrollments"):
            lifecycle.list_course_enrollments(course.id, student)


@pytest.mark.unit
class TestUpdateEnrollmentStatus:
    """Tests for update_enrollment_status."""

    def test_student_can_cancel(
        self,
        lifecycle: EnrollmentLifecycle,
        admission: CapacityAdmissionController,
        course: Course,
        student: Actor,
    ) -> None:
        """Students may cancel; the seat is given back."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )

        updated = lifecycle.update_enrollment_status(enrollment.id, "cancelled", student)

        assert updated.status == "cancelled"
        assert admission.get_course_capacity(course.id).current_enrollment == 0

    @pytest.mark.parametrize("dedicated_record", [False, True])
    def test_cancelled_seat_goes_to_next_student(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        admission: CapacityAdmissionController,
        mentor: Actor,
        student: Actor,
        dedicated_record: bool,
    ) -> None:
        """A full course admits someone else once its only student cancels."""
        course = store.register_course("Solo", mentor_id=mentor.user_id, max_students=1)
        if dedicated_record:
            admission.set_course_capacity(course.id, 1)
        first = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(first.id, "cancelled", student)

        other = str(uuid.uuid4())
        second = lifecycle.enroll_student(EnrollmentRequest(course_id=course.id, student_id=other))

        assert second.status == "active"
        snapshot = admission.get_course_capacity(course.id)
        assert snapshot.current_enrollment == 1
        assert snapshot.is_full

    def test_completing_keeps_the_seat(
        self,
        lifecycle: EnrollmentLifecycle,
        admission: CapacityAdmissionController,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """Moves between seat-holding statuses leave the count alone."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(enrollment.id, "completed", admin)
        lifecycle.update_enrollment_status(enrollment.id, "expired", admin)

        assert admission.get_course_capacity(course.id).current_enrollment == 1

    def test_uncancel_takes_a_seat(
        self,
        lifecycle: EnrollmentLifecycle,
        admission: CapacityAdmissionController,
        course: Course,
        admin: Actor,
        student: Actor,
    ) -> None:
        """Completing a cancelled enrollment counts it again."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(enrollment.id, "cancelled", admin)
        lifecycle.update_enrollment_status(enrollment.id, "completed", admin)

        assert admission.get_course_capacity(course.id).current_enrollment == 1

    def test_uncancel_into_full_course(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        admission: CapacityAdmissionController,
        mentor: Actor,
        admin: Actor,
        student: Actor,
    ) -> None:
        """A cancelled enrollment cannot take a seat someone else now holds."""
        course = store.register_course("Solo", mentor_id=mentor.user_id, max_students=1)
        first = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(first.id, "cancelled", admin)
        lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=str(uuid.uuid4()))
        )

        with pytest.raises(CapacityExceededError):
            lifecycle.update_enrollment_status(first.id, "completed", admin)

        assert lifecycle.get_enrollment(first.id).status == "cancelled"
        assert admission.get_course_capacity(course.id).current_enrollment == 1

    def test_mentor_can_complete(
        self, lifecycle: EnrollmentLifecycle, course: Course, mentor: Actor, student: Actor
    ) -> None:
        """The course's mentor may change the status."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        assert lifecycle.update_enrollment_status(enrollment.id, "completed", mentor).status == (
            "completed"
        )

    def test_stranger_forbidden(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Other students cannot touch an enrollment."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        stranger = Actor.of(str(uuid.uuid4()), "student")

        with pytest.raises(AuthorizationError, match="Unauthorized to update this enrollment"):
            lifecycle.update_enrollment_status(enrollment.id, "cancelled", stranger)

    def test_reactivation_rejected(
        self, lifecycle: EnrollmentLifecycle, course: Course, admin: Actor, student: Actor
    ) -> None:
        """Enrollments never go back to active."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(enrollment.id, "cancelled", admin)

        with pytest.raises(InvalidTransitionError, match="cannot be reactivated"):
            lifecycle.update_enrollment_status(enrollment.id, "active", admin)

    def test_unknown_status(
        self, lifecycle: EnrollmentLifecycle, course: Course, admin: Actor, student: Actor
    ) -> None:
        """Unknown statuses are rejected."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        with pytest.raises(ValidationError, match="Invalid enrollment status"):
            lifecycle.update_enrollment_status(enrollment.id, "paused", admin)

    def test_missing_enrollment(self, lifecycle: EnrollmentLifecycle, admin: Actor) -> None:
        """Unknown enrollments raise NotFoundError."""
        with pytest.raises(NotFoundError):
            lifecycle.update_enrollment_status(str(uuid.uuid4()), "completed", admin)

    def test_uncancel_collision(
        self, lifecycle: EnrollmentLifecycle, course: Course, admin: Actor, student: Actor
    ) -> None:
        """An old cancelled row cannot be completed while a newer one holds the slot."""
        first = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_status(first.id, "cancelled", admin)
        lifecycle.enroll_student(EnrollmentRequest(course_id=course.id, student_id=student.user_id))

        with pytest.raises(AlreadyEnrolledError):
            lifecycle.update_enrollment_status(first.id, "completed", admin)


@pytest.mark.unit
class TestUpdateEnrollmentProgress:
    """Tests for update_enrollment_progress."""

    def test_merges_and_accumulates(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Supplied fields replace; time_spent accumulates."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )

        lifecycle.update_enrollment_progress(
            enrollment.id,
            student.user_id,
            ProgressUpdate(
                completed_sessions=["s1"],
                total_sessions=10,
                completion_percentage=10,
                last_session_completed="s1",
                time_spent=30,
            ),
        )
        updated = lifecycle.update_enrollment_progress(
            enrollment.id, student.user_id, ProgressUpdate(time_spent=15)
        )

        assert updated.progress["completedSessions"] == ["s1"]
        assert updated.progress["totalSessions"] == 10
        assert updated.progress["completionPercentage"] == 10
        assert updated.progress["lastSessionCompleted"] == "s1"
        assert updated.progress["timeSpent"] == 45
        assert updated.last_accessed_at is not None

    def test_completed_sessions_are_distinct(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Repeated session IDs are stored once, in first-seen order."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        updated = lifecycle.update_enrollment_progress(
            enrollment.id,
            student.user_id,
            ProgressUpdate(completed_sessions=["s2", "s1", "s2", "s3", "s1"]),
        )
        assert updated.progress["completedSessions"] == ["s2", "s1", "s3"]

    def test_zero_is_a_value(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Zero replaces a stored value instead of being ignored."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        lifecycle.update_enrollment_progress(
            enrollment.id, student.user_id, ProgressUpdate(completion_percentage=40)
        )
        updated = lifecycle.update_enrollment_progress(
            enrollment.id, student.user_id, ProgressUpdate(completion_percentage=0)
        )
        assert updated.progress["completionPercentage"] == 0

    def test_other_student_rejected(
        self, lifecycle: EnrollmentLifecycle, course: Course, student: Actor
    ) -> None:
        """Only the enrolled student may report progress."""
        enrollment = lifecycle.enroll_student(
            EnrollmentRequest(course_id=course.id, student_id=student.user_id)
        )
        with pytest.raises(NotFoundError, match="not found or unauthorized"):
            lifecycle.update_enrollment_progress(
                enrollment.id, str(uuid.uuid4()), ProgressUpdate(time_spent=1)
            )

    def test_percentage_out_of_range(
        self, lifecycle: EnrollmentLifecycle, student: Actor
    ) -> None:
        """Percentages must be within 0..100."""
        with pytest.raises(ValidationError):
            lifecycle.update_enrollment_progress(
                str(uuid.uuid4()), student.user_id, ProgressUpdate(completion_percentage=101)
            )


@pytest.mark.unit
class TestEnrollmentStats:
    """Tests for get_enrollment_stats."""

    def test_admin_stats(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        course: Course,
        admin: Actor,
    ) -> None:
        """Totals, revenue, completion and monthly buckets."""
        students = [str(uuid.uuid4()) for _ in range(3)]
        enrollments = [
            lifecycle.enroll_student(
                EnrollmentRequest(course_id=course.id, student_id=s, amount_paid=Decimal("100"))
            )
            for s in students
        ]
        lifecycle.update_enrollment_status(enrollments[0].id, "completed", admin)
        lifecycle.update_enrollment_progress(
            enrollments[1].id, students[1], ProgressUpdate(completion_percentage=60)
        )

        stats = lifecycle.get_enrollment_stats(admin)

        assert stats.total_enrollments == 3
        assert stats.active_enrollments == 2
        assert stats.completed_enrollments == 1
        assert stats.total_revenue == Decimal("300.00")
        assert stats.average_completion_rate == pytest.approx(20.0)
        assert len(stats.enrollments_by_month) == 1
        assert stats.enrollments_by_month[0].count == 3
        assert stats.enrollments_by_month[0].revenue == Decimal("300.00")

    def test_mentor_scoped_to_own_courses(
        self,
        store: RecordStore,
        lifecycle: EnrollmentLifecycle,
        course: Course,
        mentor: Actor,
    ) -> None:
        """Mentors see stats for their own courses only."""
        other = store.register_course("Someone else's", mentor_id=str(uuid.uuid4()))
        lifecycle.enroll_student(EnrollmentRequest(course_id=course.id, student_id=str(uuid.uuid4())))
        lifecycle.enroll_student(EnrollmentRequest(course_id=other.id, student_id=str(uuid.uuid4())))

        stats = lifecycle.get_enrollment_stats(mentor, mentor_id=mentor.user_id)
        assert stats.total_enrollments == 1
        assert lifecycle.get_enrollment_stats(mentor, course_id=course.id).total_enrollments == 1

        with pytest.raises(AuthorizationError):
            lifecycle.get_enrollment_stats(mentor, course_id=other.id)
        with pytest.raises(AuthorizationError):
            lifecycle.get_enrollment_stats(mentor)

    def test_empty_stats(self, lifecycle: EnrollmentLifecycle, admin: Actor) -> None:
        """No enrollments yields zeroes."""
        stats = lifecycle.get_enrollment_stats(admin)
        assert stats.total_enrollments == 0
        assert stats.total_revenue == Decimal("0.00")
        assert stats.average_completion_rate == 0.0
        assert stats.enrollments_by_month == []
