"""Unit tests for PaymentLedger."""

import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from enrollcore.clock import utcnow
from enrollcore.exceptions import (
    ExternalServiceError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from enrollcore.payments import PaymentInput, PaymentLedger, SubscriptionInput
from enrollcore.store import RecordStore


class FakeGateway:
    """In-memory payment gateway."""

    name = "fake"

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.orders: list[tuple[Decimal, str, str]] = []
        self.refunds: list[tuple[str, Decimal, str | None]] = []

    def create_order(self, amount: Decimal, currency: str, reference: str) -> str:
        if self.fail:
            raise ExternalServiceError("Payment gateway unavailable")
        self.orders.append((amount, currency, reference))
        return f"order_{len(self.orders)}"

    def refund(self, payment_reference: str, amount: Decimal, reason: str | None) -> str:
        if self.fail:
            raise ExternalServiceError("Payment gateway unavailable")
        self.refunds.append((payment_reference, amount, reason))
        return f"rfnd_{len(self.refunds)}"


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger(store: RecordStore, gateway: FakeGateway) -> PaymentLedger:
    return PaymentLedger(store, gateway=gateway)


@pytest.fixture
def student_id() -> str:
    return str(uuid.uuid4())


def subscription_input(student_id: str, **overrides) -> SubscriptionInput:
    values = {
        "student_id": student_id,
        "course_id": str(uuid.uuid4()),
        "billing_cycle": "monthly",
        "amount": Decimal("299"),
    }
    values.update(overrides)
    return SubscriptionInput(**values)


@pytest.mark.unit
class TestPayments:
    """Tests for payment records."""

    def test_create_payment(self, ledger: PaymentLedger, student_id: str) -> None:
        """New payments are pending, quantized and in the default currency."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("99.999"), gateway="fake")
        )

        assert payment.status == "pending"
        assert payment.amount == Decimal("100.00")
        assert payment.currency == "INR"
        assert ledger.get_payment(payment.id).student_id == student_id

    @pytest.mark.parametrize(
        ("overrides", "message"),
        [
            ({"amount": Decimal("-1")}, "amount must not be negative"),
            ({"gateway": ""}, "gateway is required"),
            ({"currency": "rupees"}, "Invalid currency"),
        ],
    )
    def test_create_payment_rejects(
        self, ledger: PaymentLedger, student_id: str, overrides: dict, message: str
    ) -> None:
        """Malformed payments are rejected."""
        values = {"student_id": student_id, "amount": Decimal("10"), "gateway": "fake"}
        values.update(overrides)
        with pytest.raises(ValidationError, match=message):
            ledger.create_payment(PaymentInput(**values))

    def test_missing_payment(self, ledger: PaymentLedger) -> None:
        """Unknown payments raise NotFoundError."""
        with pytest.raises(NotFoundError, match="Payment not found"):
            ledger.get_payment(str(uuid.uuid4()))

    def test_list_payments(self, ledger: PaymentLedger, student_id: str) -> None:
        """Listings filter by student and status."""
        first = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )
        ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("20"), gateway="fake")
        )
        ledger.create_payment(
            PaymentInput(student_id=str(uuid.uuid4()), amount=Decimal("30"), gateway="fake")
        )
        ledger.update_payment_status(first.id, "completed")

        assert len(ledger.list_payments(student_id=student_id)) == 2
        completed = ledger.list_payments(student_id=student_id, status="completed")
        assert [p.id for p in completed] == [first.id]

    def test_complete_stamps_payment(self, ledger: PaymentLedger, student_id: str) -> None:
        """Completing stores the date and gateway payment ID."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )

        completed = ledger.update_payment_status(payment.id, "completed", gateway_payment_id="pay_1")

        assert completed.status == "completed"
        assert completed.payment_date is not None
        assert completed.gateway_payment_id == "pay_1"

    def test_failure_reason(self, ledger: PaymentLedger, student_id: str) -> None:
        """Failing stores the reason."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )
        failed = ledger.update_payment_status(payment.id, "failed", failure_reason="declined")
        assert failed.failure_reason == "declined"

    def test_refund_status_needs_completed(self, ledger: PaymentLedger, student_id: str) -> None:
        """Only completed payments can move to refunded."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )
        with pytest.raises(InvalidTransitionError):
            ledger.update_payment_status(payment.id, "refunded")

    def test_unknown_status(self, ledger: PaymentLedger, student_id: str) -> None:
        """Unknown statuses are rejected."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )
        with pytest.raises(ValidationError, match="Invalid payment status"):
            ledger.update_payment_status(payment.id, "lost")


@pytest.mark.unit
class TestRefunds:
    """Tests for refund_payment."""

    def _completed(self, ledger: PaymentLedger, student_id: str):
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("100"), gateway="fake")
        )
        return ledger.update_payment_status(payment.id, "completed", gateway_payment_id="pay_7")

    def test_full_refund(
        self, ledger: PaymentLedger, gateway: FakeGateway, student_id: str
    ) -> None:
        """The full amount is refunded through the gateway."""
        payment = self._completed(ledger, student_id)

        refunded = ledger.refund_payment(payment.id, reason="requested")

        assert refunded.status == "refunded"
        assert refunded.refund_amount == Decimal("100.00")
        assert refunded.refund_date is not None
        assert gateway.refunds == [("pay_7", Decimal("100.00"), "requested")]

    def test_partial_refund(self, ledger: PaymentLedger, student_id: str) -> None:
        """Partial refunds record the refunded amount."""
        payment = self._completed(ledger, student_id)
        assert ledger.refund_payment(payment.id, Decimal("40")).refund_amount == Decimal("40.00")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("100.01")])
    def test_refund_amount_bounds(
        self, ledger: PaymentLedger, student_id: str, amount: Decimal
    ) -> None:
        """Refunds must be positive and at most the payment amount."""
        payment = self._completed(ledger, student_id)
        with pytest.raises(ValidationError):
            ledger.refund_payment(payment.id, amount)

    def test_pending_not_refundable(self, ledger: PaymentLedger, student_id: str) -> None:
        """Pending payments cannot be refunded."""
        payment = ledger.create_payment(
            PaymentInput(student_id=student_id, amount=Decimal("10"), gateway="fake")
        )
        with pytest.raises(InvalidTransitionError):
            ledger.refund_payment(payment.id)

    def test_gateway_failure_leaves_payment(
        self, ledger: PaymentLedger, gateway: FakeGateway, student_id: str
    ) -> None:
        """A gateway error leaves the payment completed."""
        payment = self._completed(ledger, student_id)
        gateway.fail = True

        with pytest.raises(ExternalServiceError):
            ledger.refund_payment(payment.id)
        assert ledger.get_payment(payment.id).status == "completed"

    def test_no_gateway(self, store: RecordStore, student_id: str) -> None:
        """Refunds need a gateway."""
        ledger = PaymentLedger(store)
        payment = self._completed(ledger, student_id)
        with pytest.raises(ExternalServiceError, match="No payment gateway configured"):
            ledger.refund_payment(payment.id)


@pytest.mark.unit
class TestSubscriptions:
    """Tests for subscription records."""

    def test_create_defaults_period(self, ledger: PaymentLedger, student_id: str) -> None:
        """The period defaults to one billing cycle from its start."""
        start = datetime(2026, 1, 31, 10, 0)
        subscription = ledger.create_subscription(
            subscription_input(student_id, current_period_start=start)
        )

        assert subscription.status == "active"
        assert subscription.current_period_end == datetime(2026, 2, 28, 10, 0)
        assert subscription.next_billing_date == subscription.current_period_end
        assert subscription.amount == Decimal("299.00")

    def test_create_rejects_inverted_period(self, ledger: PaymentLedger, student_id: str) -> None:
        """The period must end after it starts."""
        start = datetime(2026, 5, 1)
        with pytest.raises(ValidationError):
            ledger.create_subscription(
                subscription_input(
                    student_id, current_period_start=start, current_period_end=start
                )
            )

    def test_create_rejects_cycle(self, ledger: PaymentLedger, student_id: str) -> None:
        """Unknown billing cycles are rejected."""
        with pytest.raises(ValidationError, match="Invalid billing cycle"):
            ledger.create_subscription(subscription_input(student_id, billing_cycle="weekly"))

    def test_list_subscriptions(self, ledger: PaymentLedger, student_id: str) -> None:
        """Listings are scoped to the student."""
        ledger.create_subscription(subscription_input(student_id))
        ledger.create_subscription(subscription_input(str(uuid.uuid4())))
        assert len(ledger.list_subscriptions(student_id)) == 1

    def test_cancel(self, ledger: PaymentLedger, student_id: str) -> None:
        """Cancelling stamps the time, stores the reason and stops renewal."""
        subscription = ledger.create_subscription(subscription_input(student_id))

        cancelled = ledger.update_subscription_status(subscription.id, "cancelled", "too pricey")

        assert cancelled.status == "cancelled"
        assert cancelled.cancelled_at is not None
        assert cancelled.cancellation_reason == "too pricey"
        assert cancelled.auto_renew is False

    def test_pause_and_resume(self, ledger: PaymentLedger, student_id: str) -> None:
        """Paused subscriptions resume with a fresh period from now."""
        subscription = ledger.create_subscription(
            subscription_input(student_id, current_period_start=datetime(2025, 1, 1))
        )

        paused = ledger.pause_subscription(subscription.id)
        assert paused.status == "paused"
        with pytest.raises(InvalidTransitionError, match="Can only pause active"):
            ledger.pause_subscription(subscription.id)

        before = utcnow()
        resumed = ledger.resume_subscription(subscription.id)
        assert resumed.status == "active"
        assert resumed.current_period_start >= before
        assert resumed.current_period_end > resumed.current_period_start
        assert resumed.auto_renew is True

    def test_resume_requires_paused(self, ledger: PaymentLedger, student_id: str) -> None:
        """Active subscriptions cannot be resumed."""
        subscription = ledger.create_subscription(subscription_input(student_id))
        with pytest.raises(InvalidTransitionError, match="Can only resume paused"):
            ledger.resume_subscription(subscription.id)

    def test_missing_subscription(self, ledger: PaymentLedger) -> None:
        """Unknown subscriptions raise NotFoundError."""
        with pytest.raises(NotFoundError):
            ledger.pause_subscription(str(uuid.uuid4()))


@pytest.mark.unit
class TestRenewal:
    """Tests for renew_subscription."""

    def test_renew_advances_period(
        self, ledger: PaymentLedger, gateway: FakeGateway, student_id: str
    ) -> None:
        """Renewal moves the period forward and records a pending payment."""
        subscription = ledger.create_subscription(
            subscription_input(student_id, current_period_start=datetime(2026, 1, 31))
        )

        renewal = ledger.renew_subscription(subscription.id)

        assert renewal.subscription.current_period_start == datetime(2026, 2, 28)
        assert renewal.subscription.current_period_end == datetime(2026, 3, 28)
        assert renewal.payment.status == "pending"
        assert renewal.payment.gateway_order_id == "order_1"
        assert renewal.payment.subscription_id == subscription.id
        assert gateway.orders == [(Decimal("299.00"), "INR", subscription.id)]

    def test_gateway_failure_counts(
        self, ledger: PaymentLedger, gateway: FakeGateway, student_id: str
    ) -> None:
        """A failed order bumps failed_payment_count and keeps the period."""
        subscription = ledger.create_subscription(subscription_input(student_id))
        gateway.fail = True

        with pytest.raises(ExternalServiceError):
            ledger.renew_subscription(subscription.id)

        after = ledger.get_subscription(subscription.id)
        assert after.failed_payment_count == 1
        assert after.current_period_end == subscription.current_period_end

    def test_renew_resets_failures(
        self, ledger: PaymentLedger, gateway: FakeGateway, student_id: str
    ) -> None:
        """A successful renewal clears the failure count."""
        subscription = ledger.create_subscription(subscription_input(student_id))
        gateway.fail = True
        with pytest.raises(ExternalServiceError):
            ledger.renew_subscription(subscription.id)
        gateway.fail = False

        assert ledger.renew_subscription(subscription.id).subscription.failed_payment_count == 0

    def test_renew_inactive(self, ledger: PaymentLedger, student_id: str) -> None:
        """Paused subscriptions cannot renew."""
        subscription = ledger.create_subscription(subscription_input(student_id))
        ledger.pause_subscription(subscription.id)
        with pytest.raises(InvalidTransitionError, match="Cannot renew inactive"):
            ledger.renew_subscription(subscription.id)

    def test_renew_without_gateway(self, store: RecordStore, student_id: str) -> None:
        """Without a gateway the renewal payment is manual."""
        ledger = PaymentLedger(store)
        subscription = ledger.create_subscription(subscription_input(student_id))

        renewal = ledger.renew_subscription(subscription.id)

        assert renewal.payment.gateway == "manual"
        assert renewal.payment.gateway_order_id is None


@pytest.mark.unit
class TestExpireSubscriptions:
    """Tests for expire_subscriptions."""

    def test_expires_only_lapsed_non_renewing(self, ledger: PaymentLedger, student_id: str) -> None:
        """Only active subscriptions past their end with auto-renew off expire."""
        past = utcnow() - timedelta(days=60)
        lapsed = ledger.create_subscription(
            subscription_input(student_id, current_period_start=past, auto_renew=False)
        )
        renewing = ledger.create_subscription(
            subscription_input(student_id, current_period_start=past)
        )
        current = ledger.create_subscription(subscription_input(student_id, auto_renew=False))

        assert ledger.expire_subscriptions() == 1

        assert ledger.get_subscription(lapsed.id).status == "expired"
        assert ledger.get_subscription(renewing.id).status == "active"
        assert ledger.get_subscription(current.id).status == "active"
        assert ledger.expire_subscriptions() == 0
