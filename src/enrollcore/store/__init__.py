"""Record Store - persistent storage for coupons, capacity, enrollments and payments."""

from enrollcore.store.database import Database, StaleWriteError, is_unique_violation
from enrollcore.store.models import (
    BillingCycle,
    Coupon,
    CouponUsage,
    Course,
    CourseCapacity,
    CourseEnrollment,
    DiscountType,
    EnrollmentStatus,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from enrollcore.store.store import RecordStore

__all__ = [
    "BillingCycle",
    "Coupon",
    "CouponUsage",
    "Course",
    "CourseCapacity",
    "CourseEnrollment",
    "Database",
    "DiscountType",
    "EnrollmentStatus",
    "Payment",
    "PaymentStatus",
    "RecordStore",
    "StaleWriteError",
    "Subscription",
    "SubscriptionStatus",
    "is_unique_violation",
]
