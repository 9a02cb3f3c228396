"""Payment endpoints."""

from fastapi import APIRouter, Query, status

from enrollcore.api.dependencies import ActorDep, ServicesDep
from enrollcore.api.models import (
    APIResponse,
    PaymentCreate,
    PaymentResponse,
    PaymentStatusUpdate,
    RefundRequest,
    payment_to_response,
)
from enrollcore.auth import Capability, require, require_owner_or
from enrollcore.payments import PaymentInput

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get("", response_model=APIResponse[list[PaymentResponse]])
def list_payments(
    services: ServicesDep,
    actor: ActorDep,
    student_id: str | None = Query(default=None, description="Filter by student"),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> APIResponse[list[PaymentResponse]]:
    """List payments. Callers without payment management rights see their own."""
    if not actor.can(Capability.PAYMENT_MANAGE):
        student_id = actor.user_id
    payments = services.payments.list_payments(
        student_id=student_id, status=status_filter, limit=limit, offset=offset
    )
    return APIResponse(data=[payment_to_response(p) for p in payments])


@router.post(
    "",
    response_model=APIResponse[PaymentResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_payment(
    payment: PaymentCreate, services: ServicesDep, actor: ActorDep
) -> APIResponse[PaymentResponse]:
    """Record a pending payment intent."""
    student_id = payment.student_id or actor.user_id
    if student_id != actor.user_id:
        require(actor, Capability.PAYMENT_MANAGE, "Not authorized to create payments for others")
    created = services.payments.create_payment(
        PaymentInput(**payment.model_dump(exclude={"student_id"}), student_id=student_id)
    )
    return APIResponse(data=payment_to_response(created))


@router.get("/{payment_id}", response_model=APIResponse[PaymentResponse])
def get_payment(
    payment_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[PaymentResponse]:
    """Get a payment (its payer or a payment manager)."""
    payment = services.payments.get_payment(payment_id)
    require_owner_or(
        actor,
        (payment.student_id,),
        Capability.PAYMENT_MANAGE,
        "Not authorized to view this payment",
    )
    return APIResponse(data=payment_to_response(payment))


@router.patch("/{payment_id}/status", response_model=APIResponse[PaymentResponse])
def update_payment_status(
    payment_id: str,
    update: PaymentStatusUpdate,
    services: ServicesDep,
    actor: ActorDep,
) -> APIResponse[PaymentResponse]:
    """Record a gateway outcome for a payment."""
    require(actor, Capability.PAYMENT_MANAGE, "Not authorized to update payments")
    payment = services.payments.update_payment_status(
        payment_id,
        update.status,
        gateway_payment_id=update.gateway_payment_id,
        failure_reason=update.failure_reason,
    )
    return APIResponse(data=payment_to_response(payment))


@router.post("/{payment_id}/refund", response_model=APIResponse[PaymentResponse])
def refund_payment(
    payment_id: str,
    request: RefundRequest,
    services: ServicesDep,
    actor: ActorDep,
) -> APIResponse[PaymentResponse]:
    """Refund a completed payment through the gateway."""
    require(actor, Capability.PAYMENT_MANAGE, "Not authorized to refund payments")
    payment = services.payments.refund_payment(
        payment_id, amount=request.amount, reason=request.reason
    )
    return APIResponse(data=payment_to_response(payment))
