"""FastAPI dependencies for dependency injection."""

from __future__ import annotations

from collections.abc import Generator  # noqa: TC003
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header

from enrollcore.admission import CapacityAdmissionController
from enrollcore.auth import Actor
from enrollcore.config import Settings
from enrollcore.coupons import CouponService, CouponUsageLedger
from enrollcore.enrollment import EnrollmentLifecycle
from enrollcore.exceptions import AuthorizationError
from enrollcore.payments import HttpPaymentGateway, PaymentGateway, PaymentLedger
from enrollcore.store import RecordStore


@dataclass
class Services:
    """The engine components one application instance serves."""

    store: RecordStore
    coupons: CouponService
    coupon_ledger: CouponUsageLedger
    admission: CapacityAdmissionController
    lifecycle: EnrollmentLifecycle
    payments: PaymentLedger
    gateway: PaymentGateway | None = None

    @classmethod
    def build(
        cls,
        store: RecordStore,
        settings: Settings,
        gateway: PaymentGateway | None = None,
    ) -> Services:
        """Wire the components over one store."""
        admission = CapacityAdmissionController(store)
        coupon_ledger = CouponUsageLedger(store)
        payments = PaymentLedger(store, gateway=gateway, default_currency=settings.default_currency)
        return cls(
            store=store,
            coupons=CouponService(
                store,
                code_attempts=settings.coupon_code_attempts,
                code_length=settings.coupon_code_length,
            ),
            coupon_ledger=coupon_ledger,
            admission=admission,
            lifecycle=EnrollmentLifecycle(
                store,
                admission,
                coupon_ledger,
                payments,
                default_currency=settings.default_currency,
            ),
            payments=payments,
            gateway=gateway,
        )

    def close(self) -> None:
        if isinstance(self.gateway, HttpPaymentGateway):
            self.gateway.close()
        self.store.close()


# Global Services instance (initialized on app startup)
_services: Services | None = None


def init_services(settings: Settings) -> Services:
    """Initialize the global Services instance."""
    global _services  # noqa: PLW0603
    gateway = None
    if settings.gateway_url:
        gateway = HttpPaymentGateway(settings.gateway_url, settings.gateway_token)
    _services = Services.build(RecordStore.from_settings(settings), settings, gateway=gateway)
    return _services


def close_services() -> None:
    """Close the global Services instance."""
    global _services  # noqa: PLW0603
    if _services is not None:
        _services.close()
        _services = None


def get_services() -> Generator[Services, None, None]:
    """Dependency that provides the Services instance."""
    if _services is None:
        raise RuntimeError("Services not initialized. Call init_services() first.")
    yield _services


# Type alias for dependency injection
ServicesDep = Annotated[Services, Depends(get_services)]


def get_actor(
    x_user_id: Annotated[str | None, Header()] = None,
    x_user_role: Annotated[str | None, Header()] = None,
) -> Actor:
    """Dependency that builds the caller from the upstream auth headers."""
    if not x_user_id or not x_user_role:
        raise AuthorizationError("Authentication required")
    return Actor.of(x_user_id, x_user_role)


ActorDep = Annotated[Actor, Depends(get_actor)]
