"""Authorization decisions for engine operations.

Identity is supplied by an upstream authentication layer; this module only
decides what a given actor may do.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum

from enrollcore.exceptions import AuthorizationError, ValidationError


class Role(StrEnum):
    """Caller role."""

    STUDENT = "student"
    MENTOR = "mentor"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"


class Capability(StrEnum):
    """Operations gated by role rather than by ownership."""

    ENROLLMENT_STATUS_MANAGE = "enrollment.status.manage"
    COUPON_MANAGE = "coupon.manage"
    COUPON_CREATE = "coupon.create"
    STATS_VIEW = "stats.view"
    CAPACITY_MANAGE = "capacity.manage"
    PAYMENT_MANAGE = "payment.manage"


CAPABILITIES: dict[Capability, frozenset[Role]] = {
    Capability.ENROLLMENT_STATUS_MANAGE: frozenset({Role.ADMIN, Role.SUPER_ADMIN}),
    Capability.COUPON_MANAGE: frozenset({Role.ADMIN, Role.SUPER_ADMIN}),
    Capability.COUPON_CREATE: frozenset({Role.MENTOR, Role.ADMIN, Role.SUPER_ADMIN}),
    Capability.STATS_VIEW: frozenset({Role.ADMIN, Role.SUPER_ADMIN}),
    Capability.CAPACITY_MANAGE: frozenset({Role.ADMIN, Role.SUPER_ADMIN}),
    Capability.PAYMENT_MANAGE: frozenset({Role.ADMIN, Role.SUPER_ADMIN}),
}


@dataclass(frozen=True)
class Actor:
    """Authenticated caller.

    Attributes:
        user_id: The caller's user ID.
        role: The caller's role.
    """

    user_id: str
    role: Role

    @classmethod
    def of(cls, user_id: str, role: str | Role) -> Actor:
        """Build an actor, rejecting unknown roles."""
        try:
            return cls(user_id=user_id, role=Role(role))
        except ValueError as e:
            raise ValidationError(f"Invalid role: {role}") from e

    def can(self, capability: Capability) -> bool:
        """Whether the actor's role grants a capability."""
        return self.role in CAPABILITIES[capability]


def require(actor: Actor, capability: Capability, message: str | None = None) -> None:
    """Raise AuthorizationError unless the actor holds the capability."""
    if not actor.can(capability):
        raise AuthorizationError(message or f"Role '{actor.role}' may not {capability.value}")


def require_owner_or(
    actor: Actor,
    owner_ids: tuple[str | None, ...],
    capability: Capability,
    message: str,
) -> None:
    """Raise AuthorizationError unless the actor owns the record or holds the capability.

    Args:
        actor: The caller.
        owner_ids: User IDs that own the record (e.g. student and mentor).
        capability: Capability that overrides ownership.
        message: Error message on rejection.
    """
    if actor.user_id in {o for o in owner_ids if o}:
        return
    if actor.can(capability):
        return
    raise AuthorizationError(message)
