"""Admission - capacity-bounded, duplicate-free course admission."""

from enrollcore.admission.controller import CapacityAdmissionController
from enrollcore.admission.models import CapacitySnapshot, CapacitySource, ReservationToken

__all__ = [
    "CapacityAdmissionController",
    "CapacitySnapshot",
    "CapacitySource",
    "ReservationToken",
]
