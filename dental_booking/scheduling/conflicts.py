"""Resource conflict detection.

Busy time is derived from appointment rows at query time. A resource is
busy over an interval when it is attached to an active appointment
(SCHEDULED, CHECKED_IN or IN_PROGRESS) whose ``[start_time, end_time)``
overlaps it. Employees are busy whether they hold the primary-doctor role
or a participant role, so DOCTOR and PARTICIPANT lookups are equivalent.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date
from typing import Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.core.models import ACTIVE_STATUSES, Appointment, AppointmentParticipant
from dental_booking.core.repository import day_bounds
from dental_booking.scheduling.models import Interval, ResourceKind

logger = logging.getLogger(__name__)

_ACTIVE = [s.value for s in ACTIVE_STATUSES]


def _resource_clause(kind: ResourceKind, resource_id: uuid.UUID):
    if kind is ResourceKind.ROOM:
        return Appointment.room_id == resource_id
    if kind is ResourceKind.PATIENT:
        return Appointment.patient_id == resource_id
    as_participant = select(AppointmentParticipant.appointment_id).where(
        AppointmentParticipant.employee_id == resource_id
    )
    return or_(Appointment.employee_id == resource_id, Appointment.id.in_(as_participant))


class ConflictDetector:
    """Read-only busy/free queries against the appointment table."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_conflicts(
        self,
        kind: ResourceKind,
        resource_id: uuid.UUID,
        interval: Interval,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> Sequence[Appointment]:
        """Active appointments holding the resource that overlap *interval*."""
        stmt = select(Appointment).where(
            _resource_clause(kind, resource_id),
            Appointment.status.in_(_ACTIVE),
            Appointment.start_time < interval.end,
            Appointment.end_time > interval.start,
        )
        if exclude_appointment_id is not None:
            stmt = stmt.where(Appointment.id != exclude_appointment_id)
        stmt = stmt.order_by(Appointment.start_time)
        result = await self.session.execute(stmt)
        conflicts = result.scalars().all()
        if conflicts:
            logger.debug(
                "%s %s busy during %s-%s: %s",
                kind.value, resource_id, interval.start, interval.end,
                [a.appointment_code for a in conflicts],
            )
        return conflicts

    async def has_conflict(
        self,
        kind: ResourceKind,
        resource_id: uuid.UUID,
        interval: Interval,
        exclude_appointment_id: Optional[uuid.UUID] = None,
    ) -> bool:
        return bool(await self.find_conflicts(kind, resource_id, interval, exclude_appointment_id))

    async def list_busy_intervals(
        self,
        kind: ResourceKind,
        resource_id: uuid.UUID,
        day: date,
    ) -> list[Interval]:
        """Busy intervals of the resource that touch *day*, sorted by start."""
        start, end = day_bounds(day)
        stmt = (
            select(Appointment.start_time, Appointment.end_time)
            .where(
                _resource_clause(kind, resource_id),
                Appointment.status.in_(_ACTIVE),
                Appointment.start_time < end,
                Appointment.end_time > start,
            )
            .order_by(Appointment.start_time)
        )
        result = await self.session.execute(stmt)
        return [Interval(start=s, end=e) for s, e in result.all()]
