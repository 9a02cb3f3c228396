"""Course, capacity and enrollment-creation endpoints."""

from fastapi import APIRouter, Query, status

from enrollcore.api.dependencies import ActorDep, ServicesDep
from enrollcore.api.models import (
    APIResponse,
    CapacityResponse,
    CapacityUpdate,
    CourseCreate,
    CourseResponse,
    EnrollmentResponse,
    EnrollRequest,
    PageResponse,
    capacity_to_response,
    course_to_response,
    enrollment_to_response,
    page_to_response,
)
from enrollcore.auth import Capability, require
from enrollcore.enrollment import EnrollmentFilters, EnrollmentRequest

router = APIRouter(prefix="/courses", tags=["courses"])


@router.get("", response_model=APIResponse[list[CourseResponse]])
def list_courses(
    services: ServicesDep,
    mentor_id: str | None = Query(default=None, description="Filter by mentor ID"),
) -> APIResponse[list[CourseResponse]]:
    """List courses."""
    courses = services.store.list_courses(mentor_id=mentor_id)
    return APIResponse(data=[course_to_response(c) for c in courses])


@router.post(
    "",
    response_model=APIResponse[CourseResponse],
    status_code=status.HTTP_201_CREATED,
)
def register_course(
    course: CourseCreate, services: ServicesDep, actor: ActorDep
) -> APIResponse[CourseResponse]:
    """Register a course with embedded enrollment counters."""
    require(actor, Capability.CAPACITY_MANAGE, "Not authorized to register courses")
    created = services.store.register_course(
        title=course.title,
        mentor_id=course.mentor_id,
        max_students=course.max_students,
        current_enrollment=course.current_enrollment,
    )
    return APIResponse(data=course_to_response(created))


@router.get("/{course_id}", response_model=APIResponse[CourseResponse])
def get_course(course_id: str, services: ServicesDep) -> APIResponse[CourseResponse]:
    """Get a course by ID."""
    course = services.store.get_course(course_id)
    return APIResponse(data=course_to_response(course))


@router.get("/{course_id}/capacity", response_model=APIResponse[CapacityResponse])
def get_capacity(course_id: str, services: ServicesDep) -> APIResponse[CapacityResponse]:
    """Get a course's capacity."""
    snapshot = services.admission.get_course_capacity(course_id)
    return APIResponse(data=capacity_to_response(snapshot))


@router.put("/{course_id}/capacity", response_model=APIResponse[CapacityResponse])
def set_capacity(
    course_id: str, update: CapacityUpdate, services: ServicesDep, actor: ActorDep
) -> APIResponse[CapacityResponse]:
    """Set a course's enrollment bound."""
    require(actor, Capability.CAPACITY_MANAGE, "Not authorized to manage course capacity")
    snapshot = services.admission.set_course_capacity(course_id, update.max_students)
    return APIResponse(data=capacity_to_response(snapshot))


@router.post(
    "/{course_id}/enroll",
    response_model=APIResponse[EnrollmentResponse],
    status_code=status.HTTP_201_CREATED,
)
def enroll(
    course_id: str, request: EnrollRequest, services: ServicesDep, actor: ActorDep
) -> APIResponse[EnrollmentResponse]:
    """Enroll the caller (or, for admins, another student) in a course."""
    student_id = request.student_id or actor.user_id
    if student_id != actor.user_id:
        require(
            actor,
            Capability.ENROLLMENT_STATUS_MANAGE,
            "Not authorized to enroll other students",
        )
    enrollment = services.lifecycle.enroll_student(
        EnrollmentRequest(
            course_id=course_id,
            student_id=student_id,
            amount_paid=request.amount_paid,
            currency=request.currency,
            payment_method=request.payment_method,
            gateway=request.gateway,
            transaction_id=request.transaction_id,
            subscription_id=request.subscription_id,
            coupon_code=request.coupon_code,
            enrollment_source=request.enrollment_source,
            referral_code=request.referral_code,
            access_expires_at=request.access_expires_at,
        )
    )
    return APIResponse(data=enrollment_to_response(enrollment))


@router.get(
    "/{course_id}/enrollments",
    response_model=APIResponse[PageResponse[EnrollmentResponse]],
)
def list_course_enrollments(
    course_id: str,
    services: ServicesDep,
    actor: ActorDep,
    status_filter: str | None = Query(default=None, alias="status"),
    enrollment_source: str | None = Query(default=None),
    sort_by: str = Query(default="enrollment_date"),
    sort_order: str = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> APIResponse[PageResponse[EnrollmentResponse]]:
    """List a course's enrollments (course mentor or admin)."""
    result = services.lifecycle.list_course_enrollments(
        course_id,
        actor,
        filters=EnrollmentFilters(status=status_filter, enrollment_source=enrollment_source),
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return APIResponse(data=page_to_response(result, enrollment_to_response))
