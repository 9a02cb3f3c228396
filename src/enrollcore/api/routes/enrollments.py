"""Enrollment query and update endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query

from enrollcore.api.dependencies import ActorDep, ServicesDep
from enrollcore.api.models import (
    APIResponse,
    EnrollmentResponse,
    EnrollmentStatsResponse,
    EnrollmentStatusUpdate,
    PageResponse,
    ProgressUpdateRequest,
    enrollment_to_response,
    page_to_response,
)
from enrollcore.auth import Capability, require_owner_or
from enrollcore.enrollment import EnrollmentFilters, ProgressUpdate
from enrollcore.exceptions import NotFoundError

router = APIRouter(prefix="/enrollments", tags=["enrollments"])


@router.get("", response_model=APIResponse[PageResponse[EnrollmentResponse]])
def list_my_enrollments(
    services: ServicesDep,
    actor: ActorDep,
    status: str | None = Query(default=None, description="Filter by status"),
    course_id: str | None = Query(default=None, description="Filter by course ID"),
    enrollment_source: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
    sort_by: str = Query(default="enrollment_date"),
    sort_order: str = Query(default="desc"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> APIResponse[PageResponse[EnrollmentResponse]]:
    """List the caller's enrollments."""
    result = services.lifecycle.list_student_enrollments(
        actor.user_id,
        filters=EnrollmentFilters(
            status=status,
            course_id=course_id,
            enrollment_source=enrollment_source,
            date_from=date_from,
            date_to=date_to,
        ),
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    return APIResponse(data=page_to_response(result, enrollment_to_response))


@router.get("/stats", response_model=APIResponse[EnrollmentStatsResponse])
def get_stats(
    services: ServicesDep,
    actor: ActorDep,
    course_id: str | None = Query(default=None),
    mentor_id: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
) -> APIResponse[EnrollmentStatsResponse]:
    """Get enrollment statistics (admin, or a mentor for their own courses)."""
    stats = services.lifecycle.get_enrollment_stats(
        actor,
        course_id=course_id,
        mentor_id=mentor_id,
        date_from=date_from,
        date_to=date_to,
    )
    return APIResponse(data=EnrollmentStatsResponse.model_validate(stats))


@router.get("/{enrollment_id}", response_model=APIResponse[EnrollmentResponse])
def get_enrollment(
    enrollment_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[EnrollmentResponse]:
    """Get an enrollment (its student, the course's mentor, or an admin)."""
    enrollment = services.lifecycle.get_enrollment(enrollment_id)
    try:
        mentor_id = services.store.get_course(enrollment.course_id).mentor_id
    except NotFoundError:
        mentor_id = None
    require_owner_or(
        actor,
        (enrollment.student_id, mentor_id),
        Capability.ENROLLMENT_STATUS_MANAGE,
        "Not authorized to view this enrollment",
    )
    return APIResponse(data=enrollment_to_response(enrollment))


@router.patch("/{enrollment_id}/status", response_model=APIResponse[EnrollmentResponse])
def update_status(
    enrollment_id: str,
    update: EnrollmentStatusUpdate,
    services: ServicesDep,
    actor: ActorDep,
) -> APIResponse[EnrollmentResponse]:
    """Set an enrollment's status."""
    enrollment = services.lifecycle.update_enrollment_status(enrollment_id, update.status, actor)
    return APIResponse(data=enrollment_to_response(enrollment))


@router.patch("/{enrollment_id}/progress", response_model=APIResponse[EnrollmentResponse])
def update_progress(
    enrollment_id: str,
    update: ProgressUpdateRequest,
    services: ServicesDep,
    actor: ActorDep,
) -> APIResponse[EnrollmentResponse]:
    """Report the caller's progress in an enrollment."""
    enrollment = services.lifecycle.update_enrollment_progress(
        enrollment_id,
        actor.user_id,
        ProgressUpdate(
            completed_sessions=update.completed_sessions,
            total_sessions=update.total_sessions,
            completion_percentage=update.completion_percentage,
            last_session_completed=update.last_session_completed,
            time_spent=update.time_spent,
        ),
    )
    return APIResponse(data=enrollment_to_response(enrollment))
