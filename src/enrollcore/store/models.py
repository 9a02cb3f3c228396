"""SQLAlchemy models for the Record Store."""

from __future__ import annotations

import uuid
from datetime import datetime  # noqa: TC003 - used at runtime for SQLAlchemy
from decimal import Decimal
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from enrollcore.clock import utcnow

MONEY = Numeric(12, 2, asdecimal=True)


class DiscountType(StrEnum):
    """Coupon discount type."""

    PERCENTAGE = "percentage"
    FIXED = "fixed"


class EnrollmentStatus(StrEnum):
    """Enrollment status. Everything except ACTIVE is terminal."""

    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Statuses that occupy the (course, student) uniqueness slot
HOLDING_STATUSES = (
    EnrollmentStatus.ACTIVE.value,
    EnrollmentStatus.COMPLETED.value,
    EnrollmentStatus.EXPIRED.value,
)


class PaymentStatus(StrEnum):
    """Payment status."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class SubscriptionStatus(StrEnum):
    """Subscription status."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    PAUSED = "paused"


class BillingCycle(StrEnum):
    """Subscription billing cycle."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def empty_progress() -> dict[str, Any]:
    """Initial progress document for a new enrollment."""
    return {
        "completedSessions": [],
        "totalSessions": 0,
        "completionPercentage": 0,
        "lastSessionCompleted": None,
        "timeSpent": 0,
    }


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Course(Base):
    """Course entity owned by the host application.

    Only the fields the engine reads are mapped. ``enrollment`` holds the
    embedded ``{maxStudents, currentEnrollment}`` counters used when no
    dedicated capacity record exists; ``version`` guards them.
    """

    __tablename__ = "courses"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    mentor_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    enrollment: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __init__(
        self,
        title: str,
        id: str | None = None,
        mentor_id: str | None = None,
        max_students: int | None = None,
        current_enrollment: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.id = id if id is not None else generate_uuid()
        self.title = title
        self.mentor_id = mentor_id
        self.enrollment = {"maxStudents": max_students, "currentEnrollment": current_enrollment}
        self.version = 0

    def __repr__(self) -> str:
        return f"<Course(id={self.id!r}, title={self.title!r})>"


class CourseCapacity(Base):
    """Dedicated capacity counter for a course."""

    __tablename__ = "course_capacity"
    __table_args__ = (
        CheckConstraint("current_enrollment >= 0", name="ck_capacity_non_negative"),
        CheckConstraint("waitlist_count >= 0", name="ck_waitlist_non_negative"),
        CheckConstraint(
            "max_students IS NULL OR current_enrollment <= max_students",
            name="ck_capacity_bound",
        ),
    )

    course_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    max_students: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_enrollment: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    waitlist_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<CourseCapacity(course_id={self.course_id!r}, "
            f"{self.current_enrollment}/{self.max_students})>"
        )


class Coupon(Base):
    """Discount coupon."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupon_used_non_negative"),
        CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_coupon_usage_limit",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    max_discount: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    usage_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False)
    created_by: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __init__(
        self,
        code: str,
        discount_type: str,
        discount_value: Decimal,
        id: str | None = None,
        description: str | None = None,
        min_amount: Decimal = Decimal("0"),
        max_discount: Decimal | None = None,
        usage_limit: int | None = None,
        used_count: int = 0,
        valid_from: datetime | None = None,
        valid_until: datetime | None = None,
        is_active: bool = True,
        created_by: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        now = utcnow()
        self.id = id if id is not None else generate_uuid()
        self.code = code
        self.description = description
        self.discount_type = discount_type
        self.discount_value = discount_value
        self.min_amount = min_amount
        self.max_discount = max_discount
        self.usage_limit = usage_limit
        self.used_count = used_count
        self.valid_from = valid_from if valid_from is not None else now
        self.valid_until = valid_until
        self.is_active = is_active
        self.created_by = created_by
        self.created_at = now

    @property
    def coupon_type(self) -> DiscountType:
        """Get discount_type as DiscountType enum."""
        return DiscountType(self.discount_type)

    def __repr__(self) -> str:
        return f"<Coupon(id={self.id!r}, code={self.code!r}, used={self.used_count})>"


class CouponUsage(Base):
    """Immutable record that a user applied a coupon (to a course)."""

    __tablename__ = "coupon_usage"
    __table_args__ = (
        Index(
            "uq_coupon_usage_course",
            "coupon_id",
            "user_id",
            "course_id",
            unique=True,
            sqlite_where=text("course_id IS NOT NULL"),
            postgresql_where=text("course_id IS NOT NULL"),
        ),
        Index(
            "uq_coupon_usage_global",
            "coupon_id",
            "user_id",
            unique=True,
            sqlite_where=text("course_id IS NULL"),
            postgresql_where=text("course_id IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    coupon_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("coupons.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False)
    course_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    enrollment_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    original_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    final_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    used_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<CouponUsage(coupon_id={self.coupon_id!r}, user_id={self.user_id!r}, "
            f"course_id={self.course_id!r})>"
        )


class CourseEnrollment(Base):
    """A student's enrollment in a course. Never physically deleted."""

    __tablename__ = "course_enrollments"
    __table_args__ = (
        Index(
            "uq_enrollment_holder",
            "course_id",
            "student_id",
            unique=True,
            sqlite_where=text("status IN ('active', 'completed', 'expired')"),
            postgresql_where=text("status IN ('active', 'completed', 'expired')"),
        ),
        Index("ix_enrollment_student", "student_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    student_id: Mapped[str] = mapped_column(String(36), nullable=False)
    enrollment_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    progress: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    access_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    enrollment_source: Mapped[str] = mapped_column(String(50), nullable=False)
    referral_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    coupon_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __init__(
        self,
        course_id: str,
        student_id: str,
        id: str | None = None,
        status: str | None = None,
        amount_paid: Decimal = Decimal("0"),
        currency: str = "INR",
        enrollment_source: str = "direct",
        progress: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        now = utcnow()
        self.id = id if id is not None else generate_uuid()
        self.course_id = course_id
        self.student_id = student_id
        self.status = status if status is not None else EnrollmentStatus.ACTIVE.value
        self.amount_paid = amount_paid
        self.currency = currency
        self.enrollment_source = enrollment_source
        self.progress = progress if progress is not None else empty_progress()
        self.enrollment_date = now
        self.created_at = now
        self.updated_at = now

    @property
    def enrollment_status(self) -> EnrollmentStatus:
        """Get status as EnrollmentStatus enum."""
        return EnrollmentStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<CourseEnrollment(id={self.id!r}, course_id={self.course_id!r}, "
            f"student_id={self.student_id!r}, status={self.status!r})>"
        )


class Subscription(Base):
    """Recurring access subscription to a course."""

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    student_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    course_id: Mapped[str] = mapped_column(String(36), nullable=False)
    subscription_type: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(10), nullable=False)
    current_period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    gateway_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False)
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failed_payment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __init__(
        self,
        student_id: str,
        course_id: str,
        billing_cycle: str,
        amount: Decimal,
        current_period_start: datetime,
        current_period_end: datetime,
        id: str | None = None,
        subscription_type: str = "course",
        status: str | None = None,
        currency: str = "INR",
        auto_renew: bool = True,
        failed_payment_count: int = 0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.id = id if id is not None else generate_uuid()
        self.student_id = student_id
        self.course_id = course_id
        self.billing_cycle = billing_cycle
        self.amount = amount
        self.current_period_start = current_period_start
        self.current_period_end = current_period_end
        self.subscription_type = subscription_type
        self.status = status if status is not None else SubscriptionStatus.ACTIVE.value
        self.currency = currency
        self.auto_renew = auto_renew
        self.failed_payment_count = failed_payment_count

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id!r}, status={self.status!r})>"


class Payment(Base):
    """Payment record for an enrollment or subscription."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    enrollment_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    subscription_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    student_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway: Mapped[str] = mapped_column(String(50), nullable=False)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    gateway_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    coupon_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    payment_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    refund_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __init__(
        self,
        student_id: str,
        amount: Decimal,
        gateway: str,
        id: str | None = None,
        currency: str = "INR",
        status: str | None = None,
        discount_amount: Decimal = Decimal("0"),
        refund_amount: Decimal = Decimal("0"),
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.id = id if id is not None else generate_uuid()
        self.student_id = student_id
        self.amount = amount
        self.gateway = gateway
        self.currency = currency
        self.status = status if status is not None else PaymentStatus.PENDING.value
        self.discount_amount = discount_amount
        self.refund_amount = refund_amount

    @property
    def payment_status(self) -> PaymentStatus:
        """Get status as PaymentStatus enum."""
        return PaymentStatus(self.status)

    def __repr__(self) -> str:
        return f"<Payment(id={self.id!r}, amount={self.amount}, status={self.status!r})>"
