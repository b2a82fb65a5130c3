"""Booking engine exceptions."""

from __future__ import annotations

from typing import Any, Optional

from dental_booking.scheduling.models import RuleViolation


class BookingError(Exception):
    """Base exception for booking errors."""

    status_code = 400
    default_rule_code = "BOOKING_ERROR"

    def __init__(
        self,
        message: str,
        rule_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.rule_code = rule_code or self.default_rule_code
        self.details = details or {}

    @classmethod
    def from_violation(cls, violation: RuleViolation) -> "BookingError":
        return cls(violation.message, violation.rule_code, violation.details)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "rule_code": self.rule_code,
            "detail": self.message,
            "details": self.details,
        }


class NotFoundError(BookingError):
    """Unknown doctor, room, service, patient or appointment."""

    status_code = 404
    default_rule_code = "NOT_FOUND"


class ConflictError(BookingError):
    """Resource double-booking or a violated clinical or day-based rule."""

    status_code = 409
    default_rule_code = "CONFLICT"


class InvalidInputError(BookingError):
    """Malformed request rejected before any resource query."""

    status_code = 400
    default_rule_code = "INVALID_INPUT"


class InvalidStateError(BookingError):
    """Operation not allowed in the appointment's current status."""

    status_code = 409
    default_rule_code = "INVALID_STATUS_TRANSITION"


class ConcurrentWriteError(BookingError):
    """Lost the race for a resource at insert time."""

    status_code = 409
    default_rule_code = "CONCURRENT_WRITE_CONFLICT"
