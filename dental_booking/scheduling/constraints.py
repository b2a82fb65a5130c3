"""Per-service day-based booking constraints.

Checks run in a fixed order and stop at the first failure:

1. holiday calendar
2. ``max_appointments_per_day``
3. ``minimum_preparation_days`` and ``recovery_days``, both measured from the
   patient's most recent completed appointment of any service
4. ``spacing_days``, measured from the most recent completed appointment
   carrying the same service
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.config import get_settings
from dental_booking.core.models import DentalService
from dental_booking.core.repository import AppointmentRepository, HolidayRepository
from dental_booking.scheduling.models import RuleViolation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatientHistory:
    """Immutable snapshot of a patient's completed appointments."""

    last_completed: Optional[date] = None
    last_completed_by_service: dict[uuid.UUID, date] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return self.last_completed is None


def _limit(value: Optional[int]) -> int:
    return value if value and value > 0 else 0


class ConstraintValidator:
    """Holiday, daily-cap, preparation, recovery and spacing checks."""

    def __init__(self, session: Optional[AsyncSession] = None, history_limit: Optional[int] = None):
        self.session = session
        self.history_limit = history_limit or get_settings().history_limit

    @staticmethod
    def evaluate(
        day: date,
        service: DentalService,
        history: PatientHistory,
        is_holiday: bool = False,
        booked_on_day: int = 0,
    ) -> Optional[RuleViolation]:
        """Pure check of one service on one date; returns the first violation or None."""
        if is_holiday:
            return RuleViolation(
                rule_code="DATE_IS_HOLIDAY",
                message=f"Cannot create appointment on {day.isoformat()}: it is a holiday",
                details={"date": day.isoformat()},
            )

        cap = _limit(service.max_appointments_per_day)
        if cap and booked_on_day >= cap:
            return RuleViolation(
                rule_code="MAX_APPOINTMENTS_PER_DAY_REACHED",
                message=(
                    f"Maximum appointments per day reached for service '{service.service_name}' "
                    f"on {day.isoformat()} ({booked_on_day}/{cap})"
                ),
                details={
                    "service_code": service.service_code,
                    "date": day.isoformat(),
                    "booked": booked_on_day,
                    "max_per_day": cap,
                },
            )

        if history.is_empty:
            return None

        last = history.last_completed
        days_since = (day - last).days
        for rule_code, required, label in (
            ("PREPARATION_DAYS_NOT_MET", _limit(service.minimum_preparation_days), "preparation"),
            ("RECOVERY_DAYS_NOT_MET", _limit(service.recovery_days), "recovery"),
        ):
            if required and days_since < required:
                return RuleViolation(
                    rule_code=rule_code,
                    message=(
                        f"Service '{service.service_name}' requires {required} days {label}. "
                        f"Last appointment was on {last.isoformat()} ({days_since} days ago)"
                    ),
                    details={
                        "service_code": service.service_code,
                        "proposed_date": day.isoformat(),
                        "last_completed_date": last.isoformat(),
                        "required_days": required,
                        "actual_days": days_since,
                    },
                )

        spacing = _limit(service.spacing_days)
        last_same = history.last_completed_by_service.get(service.id)
        if spacing and last_same is not None:
            gap = (day - last_same).days
            if gap < spacing:
                return RuleViolation(
                    rule_code="SPACING_DAYS_NOT_MET",
                    message=(
                        f"Service '{service.service_name}' requires {spacing} days spacing between "
                        f"appointments. Last appointment with this service was on "
                        f"{last_same.isoformat()} ({gap} days ago)"
                    ),
                    details={
                        "service_code": service.service_code,
                        "proposed_date": day.isoformat(),
                        "last_completed_date": last_same.isoformat(),
                        "required_days": spacing,
                        "actual_days": gap,
                    },
                )
        return None

    async def load_history(self, patient_id: uuid.UUID) -> PatientHistory:
        repo = AppointmentRepository(self.session)
        recent = await repo.recent_completed_by_patient(patient_id, limit=self.history_limit)
        if not recent:
            return PatientHistory()
        return PatientHistory(
            last_completed=recent[0].start_time.date(),
            last_completed_by_service=await repo.completed_service_history(patient_id),
        )

    async def validate(
        self,
        day: date,
        services: list[DentalService],
        patient_id: Optional[uuid.UUID],
        history: Optional[PatientHistory] = None,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> Optional[RuleViolation]:
        """Load the snapshot for *patient_id* and check every service in order.

        *exclude_appointment_id* keeps an appointment being rescheduled out of
        the daily cap count.
        """
        is_holiday = await HolidayRepository(self.session).is_holiday(day)
        if history is None:
            history = await self.load_history(patient_id) if patient_id else PatientHistory()

        appointments = AppointmentRepository(self.session)
        for service in services:
            booked = 0
            if _limit(service.max_appointments_per_day):
                booked = await appointments.count_for_service_on_day(service.id, day, exclude_appointment_id)
            violation = self.evaluate(day, service, history, is_holiday, booked)
            if violation is not None:
                logger.warning("Constraint %s for %s on %s", violation.rule_code, service.service_code, day)
                return violation
        return None
