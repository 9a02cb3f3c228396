"""Pydantic models for REST API."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

CODE_PATTERN = r"^[A-Za-z0-9_-]{3,50}$"


class APIResponse(BaseModel, Generic[T]):
    """Standard API response wrapper.

    ``kind`` tags errors with their category (validation, conflict, ...).
    """

    data: T | None = None
    error: str | None = None
    kind: str | None = None


class PageResponse(BaseModel, Generic[T]):
    """One page of a listing."""

    items: list[T]
    total: int
    page: int
    limit: int
    total_pages: int


def page_to_response(page: Any, convert: Any) -> PageResponse[Any]:
    """Convert a Page of records using ``convert`` for each item."""
    return PageResponse(
        items=[convert(item) for item in page.items],
        total=page.total,
        page=page.page,
        limit=page.limit,
        total_pages=page.total_pages,
    )


# Course models


class CourseCreate(BaseModel):
    """Request model for registering a course."""

    title: str = Field(..., min_length=1, max_length=255)
    mentor_id: str | None = None
    max_students: int | None = Field(default=None, ge=0)
    current_enrollment: int = Field(default=0, ge=0)


class CourseResponse(BaseModel):
    """Response model for a course."""

    id: str
    title: str
    mentor_id: str | None
    max_students: int | None
    current_enrollment: int
    created_at: datetime


def course_to_response(course: Any) -> CourseResponse:
    """Convert a Course model to CourseResponse."""
    enrollment = course.enrollment or {}
    return CourseResponse(
        id=course.id,
        title=course.title,
        mentor_id=course.mentor_id,
        max_students=enrollment.get("maxStudents"),
        current_enrollment=enrollment.get("currentEnrollment") or 0,
        created_at=course.created_at,
    )


class CapacityUpdate(BaseModel):
    """Request model for setting a course's enrollment bound."""

    max_students: int | None = Field(default=None, ge=0)


class CapacityResponse(BaseModel):
    """Response model for course capacity."""

    course_id: str
    max_students: int | None
    current_enrollment: int
    waitlist_count: int
    available_spots: int | None
    is_full: bool
    source: str


def capacity_to_response(snapshot: Any) -> CapacityResponse:
    """Convert a CapacitySnapshot to CapacityResponse."""
    return CapacityResponse(
        course_id=snapshot.course_id,
        max_students=snapshot.max_students,
        current_enrollment=snapshot.current_enrollment,
        waitlist_count=snapshot.waitlist_count,
        available_spots=snapshot.available_spots,
        is_full=snapshot.is_full,
        source=str(snapshot.source),
    )


# Enrollment models


class EnrollRequest(BaseModel):
    """Request model for enrolling in a course.

    ``student_id`` defaults to the caller; enrolling someone else needs admin rights.
    """

    student_id: str | None = None
    amount_paid: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    payment_method: str | None = Field(default=None, max_length=50)
    gateway: str | None = Field(default=None, max_length=50)
    transaction_id: str | None = Field(default=None, max_length=255)
    subscription_id: str | None = None
    coupon_code: str | None = Field(default=None, max_length=50)
    enrollment_source: str = Field(default="direct", max_length=50)
    referral_code: str | None = Field(default=None, max_length=50)
    access_expires_at: datetime | None = None


class EnrollmentResponse(BaseModel):
    """Response model for an enrollment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    course_id: str
    student_id: str
    status: str
    enrollment_date: datetime
    amount_paid: Decimal
    currency: str
    payment_method: str | None
    transaction_id: str | None
    subscription_id: str | None
    progress: dict[str, Any]
    access_expires_at: datetime | None
    last_accessed_at: datetime | None
    enrollment_source: str
    referral_code: str | None
    coupon_code: str | None
    created_at: datetime
    updated_at: datetime


def enrollment_to_response(enrollment: Any) -> EnrollmentResponse:
    """Convert a CourseEnrollment model to EnrollmentResponse."""
    return EnrollmentResponse.model_validate(enrollment)


class EnrollmentStatusUpdate(BaseModel):
    """Request model for changing an enrollment's status."""

    status: str


class ProgressUpdateRequest(BaseModel):
    """Request model for reporting progress."""

    completed_sessions: list[str] | None = None
    total_sessions: int | None = Field(default=None, ge=0)
    completion_percentage: float | None = Field(default=None, ge=0, le=100)
    last_session_completed: str | None = None
    time_spent: int | None = Field(default=None, ge=0)


class MonthlyEnrollmentResponse(BaseModel):
    """Enrollments for one month."""

    model_config = ConfigDict(from_attributes=True)

    month: str
    count: int
    revenue: Decimal


class EnrollmentStatsResponse(BaseModel):
    """Response model for enrollment statistics."""

    model_config = ConfigDict(from_attributes=True)

    total_enrollments: int
    active_enrollments: int
    completed_enrollments: int
    total_revenue: Decimal
    average_completion_rate: float
    enrollments_by_month: list[MonthlyEnrollmentResponse]


# Coupon models


class CouponCreate(BaseModel):
    """Request model for creating a coupon."""

    code: str = Field(..., pattern=CODE_PATTERN)
    description: str | None = None
    discount_type: str = Field(..., pattern=r"^(percentage|fixed)$")
    discount_value: Decimal = Field(..., gt=0)
    min_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True


class CouponBulkCreate(BaseModel):
    """Request model for creating many coupons with shared terms."""

    codes: list[str] = Field(..., min_length=1, max_length=500)
    description: str | None = None
    discount_type: str = Field(..., pattern=r"^(percentage|fixed)$")
    discount_value: Decimal = Field(..., gt=0)
    min_amount: Decimal = Field(default=Decimal("0"), ge=0)
    max_discount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool = True


class CouponUpdate(BaseModel):
    """Request model for updating a coupon (partial update)."""

    code: str | None = Field(default=None, pattern=CODE_PATTERN)
    description: str | None = None
    discount_type: str | None = Field(default=None, pattern=r"^(percentage|fixed)$")
    discount_value: Decimal | None = Field(default=None, gt=0)
    min_amount: Decimal | None = Field(default=None, ge=0)
    max_discount: Decimal | None = Field(default=None, ge=0)
    usage_limit: int | None = Field(default=None, ge=1)
    valid_from: datetime | None = None
    valid_until: datetime | None = None
    is_active: bool | None = None


class CouponResponse(BaseModel):
    """Response model for a coupon."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    code: str
    description: str | None
    discount_type: str
    discount_value: Decimal
    min_amount: Decimal
    max_discount: Decimal | None
    usage_limit: int | None
    used_count: int
    valid_from: datetime
    valid_until: datetime | None
    is_active: bool
    created_by: str | None
    created_at: datetime
    updated_at: datetime


def coupon_to_response(coupon: Any) -> CouponResponse:
    """Convert a Coupon model to CouponResponse."""
    return CouponResponse.model_validate(coupon)


class CouponValidateRequest(BaseModel):
    """Request model for previewing a coupon."""

    code: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0)
    course_id: str | None = None


class CouponQuoteResponse(BaseModel):
    """Response model for a coupon preview."""

    is_valid: bool
    discount_amount: Decimal
    final_amount: Decimal
    error: str | None = None
    coupon: CouponResponse | None = None


def quote_to_response(quote: Any) -> CouponQuoteResponse:
    """Convert a CouponQuote to CouponQuoteResponse."""
    return CouponQuoteResponse(
        is_valid=quote.is_valid,
        discount_amount=quote.discount_amount,
        final_amount=quote.final_amount,
        error=quote.error,
        coupon=coupon_to_response(quote.coupon) if quote.coupon is not None else None,
    )


class CouponApplyRequest(BaseModel):
    """Request model for applying a coupon."""

    code: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., ge=0)
    course_id: str | None = None
    enrollment_id: str | None = None


class CouponApplicationResponse(BaseModel):
    """Response model for an applied coupon."""

    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    usage_id: str
    coupon: CouponResponse


def application_to_response(application: Any) -> CouponApplicationResponse:
    """Convert a CouponApplication to CouponApplicationResponse."""
    return CouponApplicationResponse(
        original_amount=application.original_amount,
        discount_amount=application.discount_amount,
        final_amount=application.final_amount,
        usage_id=application.usage_id,
        coupon=coupon_to_response(application.coupon),
    )


class GenerateCodeRequest(BaseModel):
    """Request model for generating a coupon code."""

    prefix: str | None = Field(default=None, pattern=r"^[A-Za-z0-9]{1,20}$")
    length: int | None = Field(default=None, ge=4, le=32)


class GeneratedCodeResponse(BaseModel):
    """Response model for a generated coupon code."""

    code: str


class TopCouponResponse(BaseModel):
    """Usage summary for one coupon code."""

    model_config = ConfigDict(from_attributes=True)

    code: str
    usage_count: int
    total_discount: Decimal


class CouponStatsResponse(BaseModel):
    """Response model for coupon statistics."""

    model_config = ConfigDict(from_attributes=True)

    total_coupons: int
    active_coupons: int
    total_usage: int
    total_discount_given: Decimal
    top_coupons: list[TopCouponResponse]


class CouponUsageResponse(BaseModel):
    """Response model for one coupon use."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    coupon_id: str
    user_id: str
    course_id: str | None
    enrollment_id: str | None
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    used_at: datetime


def usage_to_response(usage: Any) -> CouponUsageResponse:
    """Convert a CouponUsage model to CouponUsageResponse."""
    return CouponUsageResponse.model_validate(usage)


# Payment models


class PaymentCreate(BaseModel):
    """Request model for recording a payment intent."""

    student_id: str | None = None
    amount: Decimal = Field(..., ge=0)
    gateway: str = Field(..., min_length=1, max_length=50)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    enrollment_id: str | None = None
    subscription_id: str | None = None
    payment_method: str | None = Field(default=None, max_length=50)
    coupon_code: str | None = Field(default=None, max_length=50)
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    gateway_order_id: str | None = Field(default=None, max_length=255)


class PaymentStatusUpdate(BaseModel):
    """Request model for changing a payment's status."""

    status: str
    gateway_payment_id: str | None = Field(default=None, max_length=255)
    failure_reason: str | None = None


class RefundRequest(BaseModel):
    """Request model for refunding a payment."""

    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


class PaymentResponse(BaseModel):
    """Response model for a payment."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    enrollment_id: str | None
    subscription_id: str | None
    student_id: str
    amount: Decimal
    currency: str
    status: str
    gateway: str
    gateway_payment_id: str | None
    gateway_order_id: str | None
    payment_method: str | None
    coupon_code: str | None
    discount_amount: Decimal
    payment_date: datetime | None
    failure_reason: str | None
    refund_amount: Decimal
    refund_date: datetime | None
    created_at: datetime
    updated_at: datetime


def payment_to_response(payment: Any) -> PaymentResponse:
    """Convert a Payment model to PaymentResponse."""
    return PaymentResponse.model_validate(payment)


# Subscription models


class SubscriptionCreate(BaseModel):
    """Request model for starting a subscription."""

    student_id: str | None = None
    course_id: str
    billing_cycle: str = Field(..., pattern=r"^(monthly|yearly)$")
    amount: Decimal = Field(..., ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    subscription_type: str = Field(default="course", max_length=50)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    auto_renew: bool = True
    gateway_subscription_id: str | None = Field(default=None, max_length=255)
    gateway_customer_id: str | None = Field(default=None, max_length=255)


class SubscriptionStatusUpdate(BaseModel):
    """Request model for changing a subscription's status."""

    status: str
    reason: str | None = None


class SubscriptionResponse(BaseModel):
    """Response model for a subscription."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    student_id: str
    course_id: str
    subscription_type: str
    status: str
    amount: Decimal
    currency: str
    billing_cycle: str
    current_period_start: datetime
    current_period_end: datetime
    auto_renew: bool
    next_billing_date: datetime | None
    failed_payment_count: int
    cancelled_at: datetime | None
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime


def subscription_to_response(subscription: Any) -> SubscriptionResponse:
    """Convert a Subscription model to SubscriptionResponse."""
    return SubscriptionResponse.model_validate(subscription)


class RenewalResponse(BaseModel):
    """Response model for a renewal."""

    subscription: SubscriptionResponse
    payment: PaymentResponse


class ExpiredResponse(BaseModel):
    """Response model for a subscription expiry sweep."""

    expired: int
