"""Enrollment - enrollment creation and lifecycle tracking."""

from enrollcore.enrollment.lifecycle import EnrollmentLifecycle
from enrollcore.enrollment.models import (
    EnrollmentFilters,
    EnrollmentRequest,
    EnrollmentStats,
    MonthlyEnrollment,
    ProgressUpdate,
)

__all__ = [
    "EnrollmentFilters",
    "EnrollmentLifecycle",
    "EnrollmentRequest",
    "EnrollmentStats",
    "MonthlyEnrollment",
    "ProgressUpdate",
]
