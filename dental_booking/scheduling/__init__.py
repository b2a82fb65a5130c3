"""Appointment scheduling and constraint validation engine."""

from dental_booking.scheduling.availability import AvailabilityResolver
from dental_booking.scheduling.booking import BookingService
from dental_booking.scheduling.clinical_rules import ClinicalRuleEngine
from dental_booking.scheduling.conflicts import ConflictDetector
from dental_booking.scheduling.constraints import ConstraintValidator, PatientHistory
from dental_booking.scheduling.errors import (
    BookingError,
    ConcurrentWriteError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dental_booking.scheduling.models import Interval, ResourceKind, RuleViolation, TimeSlot

__all__ = [
    "AvailabilityResolver",
    "BookingError",
    "BookingService",
    "ClinicalRuleEngine",
    "ConcurrentWriteError",
    "ConflictDetector",
    "ConflictError",
    "ConstraintValidator",
    "Interval",
    "InvalidInputError",
    "InvalidStateError",
    "NotFoundError",
    "PatientHistory",
    "ResourceKind",
    "RuleViolation",
    "TimeSlot",
]
