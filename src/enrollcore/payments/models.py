"""Input and result models for the payment ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from enrollcore.store.models import Payment, Subscription


@dataclass
class PaymentInput:
    """A payment intent to record."""

    student_id: str
    amount: Decimal
    gateway: str
    currency: str | None = None
    enrollment_id: str | None = None
    subscription_id: str | None = None
    payment_method: str | None = None
    coupon_code: str | None = None
    discount_amount: Decimal = Decimal("0")
    gateway_order_id: str | None = None


@dataclass
class SubscriptionInput:
    """A new subscription.

    ``current_period_end`` defaults to one billing cycle after
    ``current_period_start``, which defaults to now.
    """

    student_id: str
    course_id: str
    billing_cycle: str
    amount: Decimal
    currency: str | None = None
    subscription_type: str = "course"
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    auto_renew: bool = True
    gateway_subscription_id: str | None = None
    gateway_customer_id: str | None = None


@dataclass
class Renewal:
    """Outcome of a successful renewal."""

    subscription: Subscription
    payment: Payment
