"""Coupon endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query, status

from enrollcore.api.dependencies import ActorDep, ServicesDep
from enrollcore.api.models import (
    APIResponse,
    CouponApplicationResponse,
    CouponApplyRequest,
    CouponBulkCreate,
    CouponCreate,
    CouponQuoteResponse,
    CouponResponse,
    CouponStatsResponse,
    CouponUpdate,
    CouponUsageResponse,
    CouponValidateRequest,
    GenerateCodeRequest,
    GeneratedCodeResponse,
    PageResponse,
    application_to_response,
    coupon_to_response,
    page_to_response,
    quote_to_response,
    usage_to_response,
)
from enrollcore.auth import Capability, Role, require, require_owner_or
from enrollcore.coupons import CouponChanges, CouponDraft
from enrollcore.exceptions import AuthorizationError

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.get("", response_model=APIResponse[list[CouponResponse]])
def list_coupons(
    services: ServicesDep,
    actor: ActorDep,
    is_active: bool | None = Query(default=None, description="Filter by active flag"),
    discount_type: str | None = Query(default=None, description="percentage or fixed"),
    created_by: str | None = Query(default=None, description="Filter by creator"),
    valid_only: bool = Query(default=False, description="Only currently usable coupons"),
    search: str | None = Query(default=None, description="Match code or description"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> APIResponse[list[CouponResponse]]:
    """List coupons. Callers without coupon management rights see their own."""
    if not actor.can(Capability.COUPON_MANAGE):
        created_by = actor.user_id
    coupons = services.coupons.list_coupons(
        is_active=is_active,
        discount_type=discount_type,
        created_by=created_by,
        valid_only=valid_only,
        search=search,
        limit=limit,
        offset=offset,
    )
    return APIResponse(data=[coupon_to_response(c) for c in coupons])


@router.post(
    "",
    response_model=APIResponse[CouponResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_coupon(
    coupon: CouponCreate, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponResponse]:
    """Create a coupon."""
    created = services.coupons.create_coupon(CouponDraft(**coupon.model_dump()), actor)
    return APIResponse(data=coupon_to_response(created))


@router.post(
    "/bulk",
    response_model=APIResponse[list[CouponResponse]],
    status_code=status.HTTP_201_CREATED,
)
def bulk_create_coupons(
    request: CouponBulkCreate, services: ServicesDep, actor: ActorDep
) -> APIResponse[list[CouponResponse]]:
    """Create many coupons with shared terms. All or nothing."""
    template = CouponDraft(**request.model_dump(exclude={"codes"}))
    created = services.coupons.bulk_create_coupons(template, request.codes, actor)
    return APIResponse(data=[coupon_to_response(c) for c in created])


@router.post("/generate-code", response_model=APIResponse[GeneratedCodeResponse])
def generate_code(
    request: GenerateCodeRequest, services: ServicesDep, actor: ActorDep
) -> APIResponse[GeneratedCodeResponse]:
    """Generate a coupon code not yet in use."""
    require(actor, Capability.COUPON_CREATE, "Not authorized to create coupons")
    code = services.coupons.generate_unique_code(request.prefix, request.length)
    return APIResponse(data=GeneratedCodeResponse(code=code))


@router.post("/validate", response_model=APIResponse[CouponQuoteResponse])
def validate_coupon(
    request: CouponValidateRequest, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponQuoteResponse]:
    """Preview a coupon for the caller without recording a use."""
    quote = services.coupons.validate_code(
        request.code, request.amount, actor.user_id, request.course_id
    )
    return APIResponse(data=quote_to_response(quote))


@router.post("/apply", response_model=APIResponse[CouponApplicationResponse])
def apply_coupon(
    request: CouponApplyRequest, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponApplicationResponse]:
    """Record a use of a coupon by the caller."""
    application = services.coupon_ledger.apply_coupon(
        request.code,
        actor.user_id,
        request.course_id,
        request.amount,
        enrollment_id=request.enrollment_id,
    )
    return APIResponse(data=application_to_response(application))


@router.get("/stats", response_model=APIResponse[CouponStatsResponse])
def get_stats(
    services: ServicesDep,
    actor: ActorDep,
    created_by: str | None = Query(default=None),
    date_from: datetime | None = Query(default=None),
    date_to: datetime | None = Query(default=None),
) -> APIResponse[CouponStatsResponse]:
    """Coupon statistics. Mentors see statistics for their own coupons."""
    if not actor.can(Capability.STATS_VIEW):
        if actor.role != Role.MENTOR:
            raise AuthorizationError("Not authorized to view coupon statistics")
        created_by = actor.user_id
    stats = services.coupons.get_coupon_stats(
        created_by=created_by, date_from=date_from, date_to=date_to
    )
    return APIResponse(data=CouponStatsResponse.model_validate(stats))


@router.get("/code/{code}", response_model=APIResponse[CouponResponse])
def get_coupon_by_code(code: str, services: ServicesDep) -> APIResponse[CouponResponse]:
    """Get a coupon by its code."""
    coupon = services.coupons.get_coupon_by_code(code)
    return APIResponse(data=coupon_to_response(coupon))


@router.get("/{coupon_id}", response_model=APIResponse[CouponResponse])
def get_coupon(
    coupon_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponResponse]:
    """Get a coupon (its creator or a coupon manager)."""
    coupon = services.coupons.get_coupon(coupon_id)
    require_owner_or(
        actor,
        (coupon.created_by,),
        Capability.COUPON_MANAGE,
        "Not authorized to view this coupon",
    )
    return APIResponse(data=coupon_to_response(coupon))


@router.patch("/{coupon_id}", response_model=APIResponse[CouponResponse])
def update_coupon(
    coupon_id: str, update: CouponUpdate, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponResponse]:
    """Update a coupon's terms."""
    coupon = services.coupons.update_coupon(
        coupon_id, CouponChanges(**update.model_dump(exclude_unset=True)), actor
    )
    return APIResponse(data=coupon_to_response(coupon))


@router.delete("/{coupon_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_coupon(coupon_id: str, services: ServicesDep, actor: ActorDep) -> None:
    """Delete a coupon that has never been used."""
    services.coupons.delete_coupon(coupon_id, actor)


@router.post("/{coupon_id}/toggle", response_model=APIResponse[CouponResponse])
def toggle_coupon(
    coupon_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[CouponResponse]:
    """Flip a coupon's active flag."""
    coupon = services.coupons.toggle_coupon_status(coupon_id, actor)
    return APIResponse(data=coupon_to_response(coupon))


@router.get(
    "/{coupon_id}/usage",
    response_model=APIResponse[PageResponse[CouponUsageResponse]],
)
def get_usage_history(
    coupon_id: str,
    services: ServicesDep,
    actor: ActorDep,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
) -> APIResponse[PageResponse[CouponUsageResponse]]:
    """A coupon's usage history, most recent first."""
    coupon = services.coupons.get_coupon(coupon_id)
    require_owner_or(
        actor,
        (coupon.created_by,),
        Capability.COUPON_MANAGE,
        "Not authorized to view this coupon",
    )
    history = services.coupons.get_coupon_usage_history(coupon_id, page=page, limit=limit)
    return APIResponse(data=page_to_response(history, usage_to_response))
