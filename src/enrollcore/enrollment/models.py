"""Data models for the enrollment lifecycle."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal


@dataclass
class EnrollmentRequest:
    """A request to enroll a student.

    Attributes:
        course_id: Course to enroll in.
        student_id: Student enrolling.
        amount_paid: Price before any coupon.
        currency: ISO 4217 code; the configured default when omitted.
        gateway: Payment gateway the payment intent is addressed to.
        coupon_code: Coupon to apply.
    """

    course_id: str
    student_id: str
    amount_paid: Decimal = Decimal("0")
    currency: str | None = None
    payment_method: str | None = None
    gateway: str | None = None
    transaction_id: str | None = None
    subscription_id: str | None = None
    coupon_code: str | None = None
    enrollment_source: str = "direct"
    referral_code: str | None = None
    access_expires_at: datetime | None = None


@dataclass
class EnrollmentFilters:
    """Filters for enrollment listings."""

    status: str | None = None
    course_id: str | None = None
    enrollment_source: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None


@dataclass
class ProgressUpdate:
    """Progress reported by a student. None leaves a field unchanged.

    ``time_spent`` is added to the running total; every other field replaces
    the stored value.
    """

    completed_sessions: list[str] | None = None
    total_sessions: int | None = None
    completion_percentage: float | None = None
    last_session_completed: str | None = None
    time_spent: int | None = None


@dataclass
class MonthlyEnrollment:
    """Enrollments and revenue for one calendar month (``YYYY-MM``)."""

    month: str
    count: int
    revenue: Decimal


@dataclass
class EnrollmentStats:
    """Aggregated enrollment statistics."""

    total_enrollments: int
    active_enrollments: int
    completed_enrollments: int
    total_revenue: Decimal
    average_completion_rate: float
    enrollments_by_month: list[MonthlyEnrollment] = field(default_factory=list)
