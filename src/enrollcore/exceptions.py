"""Typed errors raised by the enrollment engine.

Every error carries a ``kind`` tag so callers can branch on the category
without parsing the human-readable message.
"""

from enum import StrEnum


class ErrorKind(StrEnum):
    """Error category tag."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    NOT_FOUND = "not_found"
    AUTHORIZATION = "authorization"
    EXTERNAL_SERVICE = "external_service"


class EnrollmentEngineError(Exception):
    """Base exception for engine errors."""

    kind: ErrorKind = ErrorKind.VALIDATION

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(EnrollmentEngineError):
    """Malformed input, rejected before any write."""

    kind = ErrorKind.VALIDATION


class CouponInvalidError(ValidationError):
    """Coupon failed validation (inactive, expired, exhausted, below minimum)."""


class InvalidTransitionError(ValidationError):
    """Requested status change is not allowed from the current status."""


class ConflictError(EnrollmentEngineError):
    """Write rejected by a uniqueness or state constraint."""

    kind = ErrorKind.CONFLICT


class AlreadyEnrolledError(ConflictError):
    """Student already holds an enrollment for the course."""


class CouponAlreadyUsedError(ConflictError):
    """User already applied this coupon to this course."""


class CouponCodeExistsError(ConflictError):
    """Coupon code is already taken."""


class CouponInUseError(ConflictError):
    """Coupon has usage recorded and cannot be deleted."""


class CapacityExceededError(EnrollmentEngineError):
    """Course has no free enrollment slot."""

    kind = ErrorKind.CAPACITY_EXCEEDED


class NotFoundError(EnrollmentEngineError):
    """Referenced record does not exist."""

    kind = ErrorKind.NOT_FOUND


class AuthorizationError(EnrollmentEngineError):
    """Actor lacks permission for the operation."""

    kind = ErrorKind.AUTHORIZATION


class ExternalServiceError(EnrollmentEngineError):
    """Payment gateway or record store unavailable."""

    kind = ErrorKind.EXTERNAL_SERVICE


class CodeGenerationExhaustedError(ExternalServiceError):
    """No free coupon code found within the attempt budget."""
