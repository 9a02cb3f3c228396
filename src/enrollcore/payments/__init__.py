"""Payments - payment intents, refunds and subscriptions."""

from enrollcore.payments.billing import next_billing_date
from enrollcore.payments.gateway import HttpPaymentGateway, PaymentGateway
from enrollcore.payments.ledger import PaymentLedger, normalize_currency
from enrollcore.payments.models import PaymentInput, Renewal, SubscriptionInput

__all__ = [
    "HttpPaymentGateway",
    "PaymentGateway",
    "PaymentInput",
    "PaymentLedger",
    "Renewal",
    "SubscriptionInput",
    "next_billing_date",
    "normalize_currency",
]
