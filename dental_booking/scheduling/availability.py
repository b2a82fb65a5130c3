"""Availability resolver: doctors, free slots and free rooms/assistants."""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.core.models import DentalService, WorkShift
from dental_booking.core.repository import (
    EmployeeRepository,
    RoomRepository,
    ServiceRepository,
    ShiftRepository,
)
from dental_booking.scheduling.conflicts import ConflictDetector
from dental_booking.scheduling.errors import InvalidInputError, NotFoundError
from dental_booking.scheduling.intervals import free_gaps, merge_intervals
from dental_booking.scheduling.models import (
    AssistantOption,
    AvailableDoctor,
    AvailableResources,
    DoctorAvailability,
    Interval,
    ResourceKind,
    RoomOption,
    ShiftWindow,
    SlotAvailability,
    TimeSlot,
)

logger = logging.getLogger(__name__)


def shift_windows(shifts: Sequence[WorkShift], day: date) -> list[Interval]:
    """Merged working windows for *day*; shifts with end <= start are skipped."""
    windows = [
        Interval.on_day(day, s.start_time, s.end_time)
        for s in shifts
        if s.end_time > s.start_time
    ]
    return merge_intervals(windows)


def shifts_cover(shifts: Sequence[WorkShift], interval: Interval) -> bool:
    """True when a single working window contains the whole interval."""
    return any(w.contains(interval) for w in shift_windows(shifts, interval.start.date()))


async def load_services(session: AsyncSession, service_codes: Sequence[str]) -> list[DentalService]:
    """Resolve service codes in request order, rejecting empty or unknown sets."""
    codes = list(dict.fromkeys(service_codes))
    if not codes:
        raise InvalidInputError("At least one service is required", "SERVICES_REQUIRED")
    found = {s.service_code: s for s in await ServiceRepository(session).get_by_codes(codes)}
    missing = [c for c in codes if c not in found or not found[c].is_active]
    if missing:
        raise NotFoundError(
            f"Unknown or inactive services: {', '.join(missing)}",
            "SERVICES_NOT_FOUND",
            {"service_codes": missing},
        )
    return [found[c] for c in codes]


class AvailabilityResolver:
    """Staged availability queries mirroring the booking flow.

    Doctor discovery filters on specialization and declared shifts only;
    conflicts are applied at slot and resource discovery.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.conflicts = ConflictDetector(session)
        self.employees = EmployeeRepository(session)
        self.rooms = RoomRepository(session)
        self.shifts = ShiftRepository(session)

    # ------------------------------------------------------------------
    # Doctors
    # ------------------------------------------------------------------

    async def resolve_doctors(self, day: date, service_codes: Sequence[str]) -> DoctorAvailability:
        services = await load_services(self.session, service_codes)
        required = {s.specialization_id for s in services if s.specialization_id is not None}
        on_shift = await self.shifts.employees_on_date(day)

        doctors: list[AvailableDoctor] = []
        for employee in await self.employees.list_active_medical_staff():
            shifts = on_shift.get(employee.id)
            if not shifts:
                continue
            if not required.issubset({sp.id for sp in employee.specializations}):
                continue
            doctors.append(
                AvailableDoctor(
                    employee_code=employee.employee_code,
                    full_name=employee.full_name,
                    specializations=sorted(sp.code for sp in employee.specializations),
                    shifts=[
                        ShiftWindow(shift_code=s.shift_code, start_time=s.start_time, end_time=s.end_time)
                        for s in shifts
                    ],
                )
            )

        message = None
        if not doctors:
            message = f"No qualified doctor has a shift on {day.isoformat()}"
        logger.debug("Doctor discovery for %s on %s: %d found", service_codes, day, len(doctors))
        return DoctorAvailability(
            date=day,
            service_codes=[s.service_code for s in services],
            doctors=doctors,
            message=message,
        )

    # ------------------------------------------------------------------
    # Slots
    # ------------------------------------------------------------------

    async def resolve_slots(self, day: date, doctor_code: str, duration_minutes: int) -> SlotAvailability:
        doctor = await self.employees.get_by_code(doctor_code)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_code} not found", "EMPLOYEE_NOT_FOUND", {"doctor_code": doctor_code})

        result = SlotAvailability(date=day, doctor_code=doctor_code, duration_minutes=duration_minutes)
        if duration_minutes <= 0:
            result.message = "Duration must be positive"
            return result

        windows = shift_windows(await self.shifts.list_for_employee(doctor.id, day), day)
        if not windows:
            result.message = f"Doctor {doctor_code} has no shift on {day.isoformat()}"
            return result

        busy = await self.conflicts.list_busy_intervals(ResourceKind.DOCTOR, doctor.id, day)
        gaps: list[Interval] = []
        for window in windows:
            gaps.extend(free_gaps(window, busy, duration_minutes))

        result.slots = [
            TimeSlot(
                start_time=gap.start,
                end_time=gap.end,
                duration_minutes=gap.duration_minutes,
                suggested=(i == 0),
            )
            for i, gap in enumerate(gaps)
        ]
        if not result.slots:
            result.message = f"No free gap of {duration_minutes} minutes on {day.isoformat()}"
        return result

    # ------------------------------------------------------------------
    # Rooms and assistants
    # ------------------------------------------------------------------

    async def resolve_resources(
        self, start: datetime, end: datetime, service_codes: Sequence[str]
    ) -> AvailableResources:
        if end <= start:
            raise InvalidInputError(
                "End time must be after start time",
                "INVALID_INTERVAL",
                {"start_time": start.isoformat(), "end_time": end.isoformat()},
            )
        interval = Interval(start=start, end=end)
        services = await load_services(self.session, service_codes)
        required = {s.id for s in services}

        compatible = [r for r in await self.rooms.list_active() if required.issubset(r.service_ids)]
        rooms: list[RoomOption] = []
        for room in compatible:
            if not await self.conflicts.has_conflict(ResourceKind.ROOM, room.id, interval):
                rooms.append(RoomOption(room_code=room.room_code, room_name=room.room_name))

        on_shift = await self.shifts.employees_on_date(start.date())
        assistants: list[AssistantOption] = []
        for employee in await self.employees.list_active_medical_staff():
            if not shifts_cover(on_shift.get(employee.id, []), interval):
                continue
            if await self.conflicts.has_conflict(ResourceKind.PARTICIPANT, employee.id, interval):
                continue
            assistants.append(AssistantOption(employee_code=employee.employee_code, full_name=employee.full_name))

        notes: list[str] = []
        if not compatible:
            notes.append("No room supports this service combination")
        elif not rooms:
            notes.append("All compatible rooms are booked for this time")
        if not assistants:
            notes.append("No assistant is free for this time")

        return AvailableResources(
            start_time=start,
            end_time=end,
            service_codes=[s.service_code for s in services],
            rooms=rooms,
            assistants=assistants,
            message="; ".join(notes) or None,
        )
