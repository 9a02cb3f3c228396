"""CapacityAdmissionController - oversell-free admission into courses."""

from __future__ import annotations

import logging

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollcore.admission.models import CapacitySnapshot, CapacitySource, ReservationToken
from enrollcore.clock import utcnow
from enrollcore.exceptions import (
    AlreadyEnrolledError,
    CapacityExceededError,
    NotFoundError,
    ValidationError,
)
from enrollcore.store.database import StaleWriteError, is_unique_violation
from enrollcore.store.models import Course, CourseCapacity, CourseEnrollment, EnrollmentStatus
from enrollcore.store.store import RecordStore

logger = logging.getLogger(__name__)


def _embedded_counters(course: Course) -> tuple[int | None, int]:
    enrollment = course.enrollment or {}
    max_students = enrollment.get("maxStudents")
    current = enrollment.get("currentEnrollment") or 0
    return (int(max_students) if max_students is not None else None), int(current)


class CapacityAdmissionController:
    """Admits students into courses without exceeding their capacity.

    A course's counters live in its ``course_capacity`` record when one
    exists, else in the course's embedded ``enrollment`` document. Admission
    never reads-then-writes a counter: the dedicated record is bumped with a
    bounded conditional ``UPDATE``, the embedded counters with a
    compare-and-set on ``courses.version``. Duplicate admissions are rejected
    by the unique index on active enrollments.
    """

    def __init__(self, store: RecordStore) -> None:
        self._store = store
        self._db = store.db

    # --- Capacity queries ---

    def get_course_capacity(self, course_id: str) -> CapacitySnapshot:
        """Get a course's capacity.

        Args:
            course_id: The course.

        Returns:
            CapacitySnapshot from the dedicated record, else the embedded counters.

        Raises:
            NotFoundError: If neither a capacity record nor the course exists.
        """
        session = self._db.get_session()
        try:
            return self._snapshot(session, course_id)
        finally:
            session.close()

    def set_course_capacity(self, course_id: str, max_students: int | None) -> CapacitySnapshot:
        """Set a course's enrollment bound, creating its capacity record if needed.

        A new record starts from the course's embedded enrollment count.

        Raises:
            NotFoundError: If the course doesn't exist.
            ValidationError: If the bound is negative or below current enrollment.
        """
        if max_students is not None and max_students < 0:
            raise ValidationError("max_students must not be negative")

        def work(session: Session) -> CapacitySnapshot:
            stmt = update(CourseCapacity).where(CourseCapacity.course_id == course_id)
            if max_students is not None:
                stmt = stmt.where(CourseCapacity.current_enrollment <= max_students)
            result = session.execute(
                stmt.values(max_students=max_students, updated_at=utcnow()).execution_options(
                    synchronize_session=False
                )
            )
            if result.rowcount != 1:
                record = session.get(CourseCapacity, course_id)
                if record is not None:
                    raise ValidationError(
                        "max_students cannot be below current enrollment "
                        f"({record.current_enrollment})"
                    )
                course = session.get(Course, course_id)
                if course is None:
                    raise NotFoundError("Course not found")
                _, current = _embedded_counters(course)
                if max_students is not None and current > max_students:
                    raise ValidationError(
                        f"max_students cannot be below current enrollment ({current})"
                    )
                session.add(
                    CourseCapacity(
                        course_id=course_id,
                        max_students=max_students,
                        current_enrollment=current,
                        waitlist_count=0,
                    )
                )
                try:
                    session.flush()
                except IntegrityError as e:
                    # Another writer created the record first
                    raise StaleWriteError(course_id) from e
            return self._snapshot(session, course_id)

        snapshot = self._db.run_in_transaction(work, operation="set_course_capacity")
        logger.info("Capacity of course %s set to %s", course_id, max_students)
        return snapshot

    # --- Admission ---

    def reserve(self, session: Session, course_id: str, student_id: str) -> ReservationToken:
        """Hold one slot inside the caller's transaction.

        Inserts the student's active enrollment row, then performs the single
        conditional counter increment. Nothing is committed here; rolling the
        caller's transaction back releases the slot.

        Args:
            session: Caller's open transaction.
            course_id: Course to admit into.
            student_id: Student being admitted.

        Returns:
            An uncommitted ReservationToken.

        Raises:
            AlreadyEnrolledError: If the student already holds an enrollment.
            CapacityExceededError: If the course is full.
            NotFoundError: If the course doesn't exist.
            StaleWriteError: If the embedded counters changed concurrently.
        """
        enrollment = CourseEnrollment(course_id=course_id, student_id=student_id)
        session.add(enrollment)
        try:
            session.flush()
        except IntegrityError as e:
            if is_unique_violation(e):
                raise AlreadyEnrolledError("Student is already enrolled in this course") from e
            raise

        source = self._increment(session, course_id)
        logger.debug("Reserved slot in %s for %s via %s", course_id, student_id, source)
        return ReservationToken(
            course_id=course_id,
            student_id=student_id,
            enrollment_id=enrollment.id,
            source=source,
        )

    def admit_student(self, course_id: str, student_id: str) -> ReservationToken:
        """Admit a student in a transaction of its own.

        Lock timeouts and lost compare-and-set races are retried; duplicate
        and capacity outcomes are not.

        Returns:
            A committed ReservationToken.

        Raises:
            AlreadyEnrolledError: If the student already holds an enrollment.
            CapacityExceededError: If the course is full.
            NotFoundError: If the course doesn't exist.
            ExternalServiceError: If conflicts persisted past the retry budget.
        """
        token = self._db.run_in_transaction(
            lambda session: self.reserve(session, course_id, student_id),
            operation="admit_student",
        )
        token.committed = True
        logger.info("Admitted student %s into course %s", student_id, course_id)
        return token

    def release(self, token: ReservationToken) -> bool:
        """Give back a committed reservation.

        Cancels the enrollment row holding the slot and decrements the
        counter (never below zero), together.

        Returns:
            True if the slot was released, False if the enrollment was no
            longer active.

        Raises:
            ValidationError: If the token was never committed.
        """
        if not token.committed:
            raise ValidationError(
                "Uncommitted reservations are released by rolling back their transaction"
            )

        def work(session: Session) -> bool:
            result = session.execute(
                update(CourseEnrollment)
                .where(
                    CourseEnrollment.id == token.enrollment_id,
                    CourseEnrollment.status == EnrollmentStatus.ACTIVE.value,
                )
                .values(status=EnrollmentStatus.CANCELLED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            self.free_slot(session, token.course_id)
            return True

        released = self._db.run_in_transaction(work, operation="release")
        if released:
            token.committed = False
            logger.info("Released slot in %s held by %s", token.course_id, token.student_id)
        return released

    def take_slot(self, session: Session, course_id: str) -> CapacitySource:
        """Count one more seat-holding enrollment inside the caller's transaction.

        Used when an existing enrollment row starts holding a seat again.

        Raises:
            CapacityExceededError: If the course is full.
            NotFoundError: If the course doesn't exist.
            StaleWriteError: If the embedded counters changed concurrently.
        """
        return self._increment(session, course_id)

    def free_slot(self, session: Session, course_id: str) -> None:
        """Count one fewer seat-holding enrollment inside the caller's transaction.

        Decrements whichever counters currently back the course, never below zero.

        Raises:
            NotFoundError: If the course doesn't exist.
            StaleWriteError: If the embedded counters changed concurrently.
        """
        self._decrement(session, course_id, self._source(session, course_id))

    # --- Counter writes ---

    @staticmethod
    def _source(session: Session, course_id: str) -> CapacitySource:
        has_record = session.execute(
            select(CourseCapacity.course_id).where(CourseCapacity.course_id == course_id)
        ).first()
        return CapacitySource.RECORD if has_record is not None else CapacitySource.EMBEDDED

    def _increment(self, session: Session, course_id: str) -> CapacitySource:
        result = session.execute(
            update(CourseCapacity)
            .where(
                CourseCapacity.course_id == course_id,
                or_(
                    CourseCapacity.max_students.is_(None),
                    CourseCapacity.current_enrollment < CourseCapacity.max_students,
                ),
            )
            .values(
                current_enrollment=CourseCapacity.current_enrollment + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return CapacitySource.RECORD

        has_record = session.execute(
            select(CourseCapacity.course_id).where(CourseCapacity.course_id == course_id)
        ).first()
        if has_record is not None:
            raise CapacityExceededError("Course enrollment capacity exceeded")

        course = session.execute(select(Course).where(Course.id == course_id)).scalar_one_or_none()
        if course is None:
            raise NotFoundError("Course not found")
        max_students, current = _embedded_counters(course)
        if max_students is not None and current >= max_students:
            raise CapacityExceededError("Course enrollment capacity exceeded")

        self._swap_embedded(session, course, max_students, current + 1)
        return CapacitySource.EMBEDDED

    def _decrement(self, session: Session, course_id: str, source: CapacitySource) -> None:
        if source == CapacitySource.RECORD:
            session.execute(
                update(CourseCapacity)
                .where(
                    CourseCapacity.course_id == course_id,
                    CourseCapacity.current_enrollment > 0,
                )
                .values(
                    current_enrollment=CourseCapacity.current_enrollment - 1,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            return

        course = session.execute(select(Course).where(Course.id == course_id)).scalar_one_or_none()
        if course is None:
            raise NotFoundError("Course not found")
        max_students, current = _embedded_counters(course)
        self._swap_embedded(session, course, max_students, max(current - 1, 0))

    @staticmethod
    def _swap_embedded(
        session: Session, course: Course, max_students: int | None, new_current: int
    ) -> None:
        result = session.execute(
            update(Course)
            .where(Course.id == course.id, Course.version == course.version)
            .values(
                enrollment={"maxStudents": max_students, "currentEnrollment": new_current},
                version=Course.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleWriteError(f"Embedded counters of course {course.id} changed concurrently")

    def _snapshot(self, session: Session, course_id: str) -> CapacitySnapshot:
        record = session.get(CourseCapacity, course_id)
        if record is not None:
            session.refresh(record)
            return CapacitySnapshot(
                course_id=course_id,
                max_students=record.max_students,
                current_enrollment=record.current_enrollment,
                waitlist_count=record.waitlist_count,
                source=CapacitySource.RECORD,
            )

        course = session.get(Course, course_id)
        if course is None:
            raise NotFoundError("Course not found")
        max_students, current = _embedded_counters(course)
        return CapacitySnapshot(
            course_id=course_id,
            max_students=max_students,
            current_enrollment=current,
            source=CapacitySource.EMBEDDED,
        )
