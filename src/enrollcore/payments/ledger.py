"""PaymentLedger - payment and subscription records."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from enrollcore.clock import naive_utc, utcnow
from enrollcore.coupons.engine import quantize, to_money
from enrollcore.exceptions import (
    ConflictError,
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from enrollcore.payments.billing import next_billing_date
from enrollcore.payments.gateway import PaymentGateway
from enrollcore.payments.models import PaymentInput, Renewal, SubscriptionInput
from enrollcore.store.database import StaleWriteError
from enrollcore.store.models import (
    BillingCycle,
    Payment,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
)
from enrollcore.store.store import RecordStore

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")
MANUAL_GATEWAY = "manual"


def normalize_currency(currency: str) -> str:
    """Upper-case an ISO 4217 code and check its shape.

    Raises:
        ValidationError: If it is not three letters.
    """
    normalized = currency.strip().upper()
    if not CURRENCY_PATTERN.match(normalized):
        raise ValidationError(f"Invalid currency: {currency}")
    return normalized


class PaymentLedger:
    """Records payment intents and subscriptions.

    The gateway is optional; without one, refunds and gateway orders are
    unavailable but every record-keeping operation still works.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: PaymentGateway | None = None,
        default_currency: str = "INR",
    ) -> None:
        """Initialize the ledger.

        Args:
            store: Record store.
            gateway: Payment provider used for refunds and renewal orders.
            default_currency: Currency applied when an input names none.
        """
        self._store = store
        self._db = store.db
        self._gateway = gateway
        self.default_currency = normalize_currency(default_currency)

    @property
    def gateway_name(self) -> str:
        return self._gateway.name if self._gateway is not None else MANUAL_GATEWAY

    # --- Payments ---

    def create_payment(self, data: PaymentInput, session: Session | None = None) -> Payment:
        """Record a pending payment.

        Args:
            data: Payment details.
            session: Caller's open transaction to join, if any.

        Returns:
            The created Payment.

        Raises:
            ValidationError: If the amount or currency is malformed.
        """
        amount = to_money(data.amount)
        if amount < 0:
            raise ValidationError("amount must not be negative")
        discount = to_money(data.discount_amount, "discount_amount")
        if discount < 0:
            raise ValidationError("discount_amount must not be negative")
        if not data.gateway:
            raise ValidationError("gateway is required")

        payment = Payment(
            student_id=data.student_id,
            amount=quantize(amount),
            gateway=data.gateway,
            currency=normalize_currency(data.currency or self.default_currency),
            discount_amount=quantize(discount),
            enrollment_id=data.enrollment_id,
            subscription_id=data.subscription_id,
            payment_method=data.payment_method,
            coupon_code=data.coupon_code,
            gateway_order_id=data.gateway_order_id,
        )

        if session is not None:
            session.add(payment)
            session.flush()
        else:
            with self._db.transaction("create_payment") as own:
                own.add(payment)

        logger.info(
            "Payment %s recorded for %s (%s %s)",
            payment.id,
            payment.student_id,
            payment.amount,
            payment.currency,
        )
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        """Get payment by ID.

        Raises:
            NotFoundError: If the payment doesn't exist
        """
        session = self._db.get_session()
        try:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            return payment
        finally:
            session.close()

    def list_payments(
        self,
        student_id: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Payment]:
        """List payments, newest first."""
        stmt = select(Payment)
        if student_id is not None:
            stmt = stmt.where(Payment.student_id == student_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        stmt = stmt.order_by(Payment.created_at.desc()).limit(limit).offset(offset)

        session = self._db.get_session()
        try:
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    def update_payment_status(
        self,
        payment_id: str,
        status: str,
        gateway_payment_id: str | None = None,
        failure_reason: str | None = None,
    ) -> Payment:
        """Move a payment to a new status.

        ``completed`` stamps the payment date and gateway payment ID,
        ``failed`` stores the reason, and ``refunded`` is only reachable from
        ``completed``.

        Raises:
            NotFoundError: If the payment doesn't exist.
            InvalidTransitionError: If refunding a payment that isn't completed.
        """
        try:
            new_status = PaymentStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid payment status: {status}") from e

        def work(session: Session) -> Payment:
            payment = session.get(Payment, payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            observed = payment.status
            if new_status == PaymentStatus.REFUNDED and observed != PaymentStatus.COMPLETED:
                raise InvalidTransitionError("Only completed payments can be refunded")

            now = utcnow()
            values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
            if new_status == PaymentStatus.COMPLETED:
                values["payment_date"] = now
                if gateway_payment_id:
                    values["gateway_payment_id"] = gateway_payment_id
            elif new_status == PaymentStatus.FAILED and failure_reason:
                values["failure_reason"] = failure_reason
            elif new_status == PaymentStatus.REFUNDED:
                values["refund_amount"] = payment.amount
                values["refund_date"] = now

            if not self._swap_status(session, payment_id, observed, values):
                raise StaleWriteError(f"Payment {payment_id} changed concurrently")
            session.refresh(payment)
            return payment

        payment = self._db.run_in_transaction(work, operation="update_payment_status")
        logger.info("Payment %s is now %s", payment_id, new_status.value)
        return payment

    def refund_payment(
        self,
        payment_id: str,
        amount: Any = None,
        reason: str | None = None,
    ) -> Payment:
        """Refund a completed payment through the gateway.

        Args:
            payment_id: The payment.
            amount: Amount to refund; the full amount when omitted.
            reason: Reason passed to the gateway.

        Raises:
            NotFoundError: If the payment doesn't exist.
            InvalidTransitionError: If the payment isn't completed.
            ValidationError: If the amount is not in (0, payment amount].
            ExternalServiceError: If no gateway is configured or it fails;
                the payment is left unchanged.
        """
        payment = self.get_payment(payment_id)
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidTransitionError("Only completed payments can be refunded")

        refund = quantize(to_money(amount)) if amount is not None else payment.amount
        if refund <= 0 or refund > payment.amount:
            raise ValidationError(
                "Refund amount must be positive and not exceed the payment amount"
            )
        if self._gateway is None:
            raise ExternalServiceError("No payment gateway configured")

        refund_id = self._gateway.refund(payment.gateway_payment_id or payment.id, refund, reason)

        def work(session: Session) -> Payment:
            now = utcnow()
            swapped = self._swap_status(
                session,
                payment_id,
                PaymentStatus.COMPLETED.value,
                {
                    "status": PaymentStatus.REFUNDED.value,
                    "refund_amount": refund,
                    "refund_date": now,
                    "updated_at": now,
                },
            )
            if not swapped:
                logger.error(
                    "Gateway refund %s issued but payment %s changed meanwhile",
                    refund_id,
                    payment_id,
                )
                raise InvalidTransitionError("Only completed payments can be refunded")
            refunded = session.get(Payment, payment_id)
            if refunded is None:
                raise NotFoundError("Payment not found")
            session.refresh(refunded)
            return refunded

        refunded = self._db.run_in_transaction(work, operation="refund_payment")
        logger.info("Payment %s refunded %s (gateway refund %s)", payment_id, refund, refund_id)
        return refunded

    @staticmethod
    def _swap_status(
        session: Session, payment_id: str, observed: str, values: dict[str, Any]
    ) -> bool:
        result = session.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == observed)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # --- Subscriptions ---

    def create_subscription(self, data: SubscriptionInput) -> Subscription:
        """Start an active subscription.

        Raises:
            ValidationError: If the cycle, amount, currency or period is malformed.
        """
        try:
            cycle = BillingCycle(data.billing_cycle)
        except ValueError as e:
            raise ValidationError(f"Invalid billing cycle: {data.billing_cycle}") from e
        amount = to_money(data.amount)
        if amount < 0:
            raise ValidationError("amount must not be negative")

        start = utcnow()
        if data.current_period_start is not None:
            start = naive_utc(data.current_period_start)
        end = (
            naive_utc(data.current_period_end)
            if data.current_period_end is not None
            else next_billing_date(start, cycle)
        )
        if end <= start:
            raise ValidationError("current_period_end must be after current_period_start")

        subscription = Subscription(
            student_id=data.student_id,
            course_id=data.course_id,
            billing_cycle=cycle.value,
            amount=quantize(amount),
            current_period_start=start,
            current_period_end=end,
            subscription_type=data.subscription_type,
            currency=normalize_currency(data.currency or self.default_currency),
            auto_renew=data.auto_renew,
            gateway_subscription_id=data.gateway_subscription_id,
            gateway_customer_id=data.gateway_customer_id,
            next_billing_date=end,
        )
        with self._db.transaction("create_subscription") as session:
            session.add(subscription)

        logger.info(
            "Subscription %s started for %s (%s)",
            subscription.id,
            subscription.student_id,
            cycle.value,
        )
        return subscription

    def get_subscription(self, subscription_id: str) -> Subscription:
        """Get subscription by ID.

        Raises:
            NotFoundError: If the subscription doesn't exist
        """
        session = self._db.get_session()
        try:
            subscription = session.get(Subscription, subscription_id)
            if subscription is None:
                raise NotFoundError("Subscription not found")
            return subscription
        finally:
            session.close()

    def list_subscriptions(self, student_id: str) -> list[Subscription]:
        """List a student's subscriptions, newest first."""
        session = self._db.get_session()
        try:
            stmt = (
                select(Subscription)
                .where(Subscription.student_id == student_id)
                .order_by(Subscription.created_at.desc())
            )
            return list(session.execute(stmt).scalars().all())
        finally:
            session.close()

    def update_subscription_status(
        self, subscription_id: str, status: str, reason: str | None = None
    ) -> Subscription:
        """Set a subscription's status.

        Cancelling stamps ``cancelled_at``, stores the reason and turns
        auto-renewal off.

        Raises:
            NotFoundError: If the subscription doesn't exist.
        """
        try:
            new_status = SubscriptionStatus(status)
        except ValueError as e:
            raise ValidationError(f"Invalid subscription status: {status}") from e

        now = utcnow()
        values: dict[str, Any] = {"status": new_status.value, "updated_at": now}
        if new_status == SubscriptionStatus.CANCELLED:
            values["cancelled_at"] = now
            values["auto_renew"] = False
            if reason:
                values["cancellation_reason"] = reason

        self._update_subscription(subscription_id, values)
        logger.info("Subscription %s is now %s", subscription_id, new_status.value)
        return self.get_subscription(subscription_id)

    def pause_subscription(self, subscription_id: str) -> Subscription:
        """Pause an active subscription.

        Raises:
            NotFoundError: If the subscription doesn't exist.
            InvalidTransitionError: If it isn't active.
        """
        self._update_subscription(
            subscription_id,
            {"status": SubscriptionStatus.PAUSED.value, "updated_at": utcnow()},
            expected=SubscriptionStatus.ACTIVE,
            message="Can only pause active subscriptions",
        )
        logger.info("Subscription %s paused", subscription_id)
        return self.get_subscription(subscription_id)

    def resume_subscription(self, subscription_id: str) -> Subscription:
        """Resume a paused subscription with a fresh period starting now.

        Raises:
            NotFoundError: If the subscription doesn't exist.
            InvalidTransitionError: If it isn't paused.
        """
        subscription = self.get_subscription(subscription_id)
        now = utcnow()
        end = next_billing_date(now, subscription.billing_cycle)
        self._update_subscription(
            subscription_id,
            {
                "status": SubscriptionStatus.ACTIVE.value,
                "current_period_start": now,
                "current_period_end": end,
                "next_billing_date": end,
                "auto_renew": True,
                "updated_at": now,
            },
            expected=SubscriptionStatus.PAUSED,
            message="Can only resume paused subscriptions",
        )
        logger.info("Subscription %s resumed until %s", subscription_id, end.isoformat())
        return self.get_subscription(subscription_id)

    def renew_subscription(self, subscription_id: str) -> Renewal:
        """Advance an active subscription by one billing period.

        Opens a gateway order when a gateway is configured and records a
        pending renewal payment. A gateway failure bumps
        ``failed_payment_count`` and leaves the period unchanged.

        Raises:
            NotFoundError: If the subscription doesn't exist.
            InvalidTransitionError: If it isn't active.
            ConflictError: If it was renewed concurrently.
            ExternalServiceError: If the gateway failed.
        """
        subscription = self.get_subscription(subscription_id)
        if subscription.status != SubscriptionStatus.ACTIVE:
            raise InvalidTransitionError("Cannot renew inactive subscription")

        period_start = subscription.current_period_end
        period_end = next_billing_date(period_start, subscription.billing_cycle)

        order_id = None
        if self._gateway is not None:
            try:
                order_id = self._gateway.create_order(
                    subscription.amount, subscription.currency, subscription.id
                )
            except ExternalServiceError:
                with self._db.transaction("renew_subscription") as session:
                    session.execute(
                        update(Subscription)
                        .where(Subscription.id == subscription_id)
                        .values(
                            failed_payment_count=Subscription.failed_payment_count + 1,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                logger.warning("Renewal payment for subscription %s failed", subscription_id)
                raise

        def work(session: Session) -> Renewal:
            result = session.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.current_period_end == period_start,
                )
                .values(
                    current_period_start=period_start,
                    current_period_end=period_end,
                    next_billing_date=period_end,
                    failed_payment_count=0,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Subscription changed during renewal")

            payment = self.create_payment(
                PaymentInput(
                    student_id=subscription.student_id,
                    amount=subscription.amount,
                    gateway=self.gateway_name,
                    currency=subscription.currency,
                    subscription_id=subscription.id,
                    gateway_order_id=order_id,
                ),
                session=session,
            )
            renewed = session.get(Subscription, subscription_id)
            if renewed is None:
                raise NotFoundError("Subscription not found")
            session.refresh(renewed)
            return Renewal(subscription=renewed, payment=payment)

        renewal = self._db.run_in_transaction(work, operation="renew_subscription")
        logger.info("Subscription %s renewed until %s", subscription_id, period_end.isoformat())
        return renewal

    def expire_subscriptions(self, now: datetime | None = None) -> int:
        """Expire active, non-renewing subscriptions whose period has ended.

        Returns:
            Number of subscriptions expired.
        """
        moment = naive_utc(now) if now is not None else utcnow()
        with self._db.transaction("expire_subscriptions") as session:
            result = session.execute(
                update(Subscription)
                .where(
                    Subscription.status == SubscriptionStatus.ACTIVE.value,
                    Subscription.auto_renew.is_(False),
                    Subscription.current_period_end < moment,
                )
                .values(status=SubscriptionStatus.EXPIRED.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        if count:
            logger.info("Expired %d subscriptions", count)
        return count

    def _update_subscription(
        self,
        subscription_id: str,
        values: dict[str, Any],
        expected: SubscriptionStatus | None = None,
        message: str = "",
    ) -> None:
        with self._db.transaction("update_subscription") as session:
            stmt = update(Subscription).where(Subscription.id == subscription_id)
            if expected is not None:
                stmt = stmt.where(Subscription.status == expected.value)
            result = session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return
            if session.get(Subscription, subscription_id) is None:
                raise NotFoundError("Subscription not found")
            raise InvalidTransitionError(message)

