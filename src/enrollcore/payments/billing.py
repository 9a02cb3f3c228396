"""Billing period arithmetic."""

from __future__ import annotations

from datetime import datetime

from dateutil.relativedelta import relativedelta

from enrollcore.exceptions import ValidationError
from enrollcore.store.models import BillingCycle


def add_months(value: datetime, months: int) -> datetime:
    """Shift a datetime by whole months, clamping to the target month's last day.

    Jan 31 + 1 month is Feb 28 (or 29), not early March.
    """
    return value + relativedelta(months=months)


def next_billing_date(from_date: datetime, billing_cycle: str) -> datetime:
    """End of the billing period starting at ``from_date``.

    Raises:
        ValidationError: If the cycle is unknown.
    """
    try:
        cycle = BillingCycle(billing_cycle)
    except ValueError as e:
        raise ValidationError(f"Invalid billing cycle: {billing_cycle}") from e

    if cycle == BillingCycle.MONTHLY:
        return add_months(from_date, 1)
    return add_months(from_date, 12)
