"""Subscription endpoints."""

from fastapi import APIRouter, status

from enrollcore.api.dependencies import ActorDep, Services, ServicesDep
from enrollcore.api.models import (
    APIResponse,
    ExpiredResponse,
    RenewalResponse,
    SubscriptionCreate,
    SubscriptionResponse,
    SubscriptionStatusUpdate,
    payment_to_response,
    subscription_to_response,
)
from enrollcore.auth import Actor, Capability, require, require_owner_or
from enrollcore.payments import SubscriptionInput
from enrollcore.store.models import Subscription

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


def _owned(services: Services, actor: Actor, subscription_id: str) -> Subscription:
    subscription = services.payments.get_subscription(subscription_id)
    require_owner_or(
        actor,
        (subscription.student_id,),
        Capability.PAYMENT_MANAGE,
        "Not authorized to manage this subscription",
    )
    return subscription


@router.get("", response_model=APIResponse[list[SubscriptionResponse]])
def list_my_subscriptions(
    services: ServicesDep, actor: ActorDep
) -> APIResponse[list[SubscriptionResponse]]:
    """List the caller's subscriptions."""
    subscriptions = services.payments.list_subscriptions(actor.user_id)
    return APIResponse(data=[subscription_to_response(s) for s in subscriptions])


@router.post(
    "",
    response_model=APIResponse[SubscriptionResponse],
    status_code=status.HTTP_201_CREATED,
)
def create_subscription(
    subscription: SubscriptionCreate, services: ServicesDep, actor: ActorDep
) -> APIResponse[SubscriptionResponse]:
    """Start a subscription."""
    student_id = subscription.student_id or actor.user_id
    if student_id != actor.user_id:
        require(
            actor,
            Capability.PAYMENT_MANAGE,
            "Not authorized to create subscriptions for others",
        )
    created = services.payments.create_subscription(
        SubscriptionInput(**subscription.model_dump(exclude={"student_id"}), student_id=student_id)
    )
    return APIResponse(data=subscription_to_response(created))


@router.post("/expire", response_model=APIResponse[ExpiredResponse])
def expire_subscriptions(services: ServicesDep, actor: ActorDep) -> APIResponse[ExpiredResponse]:
    """Expire lapsed, non-renewing subscriptions."""
    require(actor, Capability.PAYMENT_MANAGE, "Not authorized to expire subscriptions")
    count = services.payments.expire_subscriptions()
    return APIResponse(data=ExpiredResponse(expired=count))


@router.get("/{subscription_id}", response_model=APIResponse[SubscriptionResponse])
def get_subscription(
    subscription_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[SubscriptionResponse]:
    """Get a subscription (its subscriber or a payment manager)."""
    subscription = _owned(services, actor, subscription_id)
    return APIResponse(data=subscription_to_response(subscription))


@router.patch("/{subscription_id}/status", response_model=APIResponse[SubscriptionResponse])
def update_subscription_status(
    subscription_id: str,
    update: SubscriptionStatusUpdate,
    services: ServicesDep,
    actor: ActorDep,
) -> APIResponse[SubscriptionResponse]:
    """Set a subscription's status; cancelling turns auto-renewal off."""
    _owned(services, actor, subscription_id)
    subscription = services.payments.update_subscription_status(
        subscription_id, update.status, reason=update.reason
    )
    return APIResponse(data=subscription_to_response(subscription))


@router.post("/{subscription_id}/pause", response_model=APIResponse[SubscriptionResponse])
def pause_subscription(
    subscription_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[SubscriptionResponse]:
    """Pause an active subscription."""
    _owned(services, actor, subscription_id)
    subscription = services.payments.pause_subscription(subscription_id)
    return APIResponse(data=subscription_to_response(subscription))


@router.post("/{subscription_id}/resume", response_model=APIResponse[SubscriptionResponse])
def resume_subscription(
    subscription_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[SubscriptionResponse]:
    """Resume a paused subscription."""
    _owned(services, actor, subscription_id)
    subscription = services.payments.resume_subscription(subscription_id)
    return APIResponse(data=subscription_to_response(subscription))


@router.post("/{subscription_id}/renew", response_model=APIResponse[RenewalResponse])
def renew_subscription(
    subscription_id: str, services: ServicesDep, actor: ActorDep
) -> APIResponse[RenewalResponse]:
    """Advance an active subscription by one billing period."""
    _owned(services, actor, subscription_id)
    renewal = services.payments.renew_subscription(subscription_id)
    return APIResponse(
        data=RenewalResponse(
            subscription=subscription_to_response(renewal.subscription),
            payment=payment_to_response(renewal.payment),
        )
    )
