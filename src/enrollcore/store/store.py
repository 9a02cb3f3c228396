"""RecordStore - shared persistence handle for the engine components."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy import select

from enrollcore.exceptions import NotFoundError, ValidationError
from enrollcore.store.database import Database
from enrollcore.store.models import Course

if TYPE_CHECKING:
    from enrollcore.config import Settings

logger = logging.getLogger(__name__)


class RecordStore:
    """Owns the database and the course records the engine reads.

    Courses belong to the host application; the store only exposes what the
    engine needs (mentor ownership and embedded enrollment counters) plus
    seeding helpers.
    """

    def __init__(
        self,
        db_path: str = "enrollcore.db",
        busy_timeout: float = 30.0,
        max_attempts: int = 5,
        retry_backoff: float = 0.05,
    ) -> None:
        """Initialize the store and create tables if they don't exist.

        Args:
            db_path: Path to SQLite database file, ":memory:", or a SQLAlchemy URL.
            busy_timeout: Seconds a connection waits for a write lock.
            max_attempts: Attempt budget for retried units of work.
            retry_backoff: Base back-off between attempts.
        """
        self.db = Database(
            db_path,
            busy_timeout=busy_timeout,
            max_attempts=max_attempts,
            retry_backoff=retry_backoff,
        )
        self.db.create_tables()

    @classmethod
    def from_settings(cls, settings: Settings) -> RecordStore:
        """Create a store configured from Settings."""
        return cls(
            settings.db_path,
            busy_timeout=settings.busy_timeout,
            max_attempts=settings.max_conflict_retries,
            retry_backoff=settings.retry_backoff,
        )

    def close(self) -> None:
        """Close the database connection."""
        self.db.close()

    # --- Course Operations ---

    def register_course(
        self,
        title: str,
        mentor_id: str | None = None,
        max_students: int | None = None,
        current_enrollment: int = 0,
        course_id: str | None = None,
    ) -> Course:
        """Register a course with embedded enrollment counters.

        Args:
            title: Course title
            mentor_id: Owning mentor's user ID
            max_students: Enrollment bound; None means unlimited
            current_enrollment: Starting enrollment count
            course_id: Explicit ID (generated when omitted)

        Returns:
            The created Course

        Raises:
            ValidationError: If the counters violate the capacity bound
        """
        if max_students is not None and max_students < 0:
            raise ValidationError("max_students must not be negative")
        if current_enrollment < 0:
            raise ValidationError("current_enrollment must not be negative")
        if max_students is not None and current_enrollment > max_students:
            raise ValidationError("current_enrollment exceeds max_students")

        course = Course(
            title=title,
            id=course_id,
            mentor_id=mentor_id,
            max_students=max_students,
            current_enrollment=current_enrollment,
        )
        with self.db.transaction("register_course") as session:
            session.add(course)
        logger.info("Registered course %s (max_students=%s)", course.id, max_students)
        return course

    def get_course(self, course_id: str) -> Course:
        """Get course by ID.

        Raises:
            NotFoundError: If the course doesn't exist
        """
        session = self.db.get_session()
        try:
            course = session.get(Course, course_id)
            if course is None:
                raise NotFoundError("Course not found")
            return course
        finally:
            session.close()

    def list_courses(self, mentor_id: str | None = None) -> list[Course]:
        """List courses, optionally only those owned by a mentor."""
        session = self.db.get_session()
        try:
            stmt = select(Course)
            if mentor_id is not None:
                stmt = stmt.where(Course.mentor_id == mentor_id)
            stmt = stmt.order_by(Course.title)
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()
