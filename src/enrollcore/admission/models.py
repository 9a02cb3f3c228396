"""Data models for capacity admission."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class CapacitySource(StrEnum):
    """Where a course's enrollment counters live."""

    RECORD = "record"
    EMBEDDED = "embedded"


@dataclass
class CapacitySnapshot:
    """Point-in-time view of a course's capacity.

    Attributes:
        course_id: The course.
        max_students: Enrollment bound; None means unlimited.
        current_enrollment: Slots taken.
        waitlist_count: Students waiting (always 0 for embedded counters).
        source: Which counters were read.
    """

    course_id: str
    max_students: int | None
    current_enrollment: int
    waitlist_count: int = 0
    source: CapacitySource = CapacitySource.RECORD

    @property
    def available_spots(self) -> int | None:
        if self.max_students is None:
            return None
        return max(self.max_students - self.current_enrollment, 0)

    @property
    def is_full(self) -> bool:
        if self.max_students is None:
            return False
        return self.current_enrollment >= self.max_students


@dataclass
class ReservationToken:
    """A held enrollment slot.

    Attributes:
        course_id: The course.
        student_id: The admitted student.
        enrollment_id: The active enrollment row holding the slot.
        source: Which counters were incremented.
        committed: Whether the reserving transaction has committed.
    """

    course_id: str
    student_id: str
    enrollment_id: str
    source: CapacitySource
    committed: bool = False
