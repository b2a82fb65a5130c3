"""Booking transaction orchestrator.

Creating an appointment runs, in order:

0. input and master-data checks (patient, doctor, room, services, participants)
1. total duration as the sum of duration plus buffer of every service
2. day-based constraints for each service
3. clinical dependency rules for the requested set
4. shift coverage, then resource conflicts under per-resource locks
5. insert of the appointment aggregate, plan-item update and audit row,
   committed once

The first failure aborts with a structured error and nothing is written.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Sequence, TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.config import Settings, get_settings
from dental_booking.core.models import (
    Appointment,
    AppointmentParticipant,
    AppointmentService,
    AppointmentStatus,
    DentalService,
    Employee,
    Patient,
    PlanItem,
    PlanItemStatus,
    Room,
)
from dental_booking.core.repository import (
    AppointmentRepository,
    AuditRepository,
    EmployeeRepository,
    PatientRepository,
    PlanItemRepository,
    RoomRepository,
    ServiceRepository,
    ShiftRepository,
)
from dental_booking.scheduling.availability import load_services, shifts_cover
from dental_booking.scheduling.clinical_rules import ClinicalRuleEngine
from dental_booking.scheduling.conflicts import ConflictDetector
from dental_booking.scheduling.constraints import ConstraintValidator
from dental_booking.scheduling.errors import (
    BookingError,
    ConcurrentWriteError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dental_booking.scheduling.locks import ResourceLockRegistry, resource_key, resource_locks
from dental_booking.scheduling.models import (
    AppointmentCreateRequest,
    Interval,
    ParticipantRequest,
    RescheduleRequest,
    ResourceKind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Allowed status transitions; anything not listed is rejected.
TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CHECKED_IN, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
    ),
    AppointmentStatus.CHECKED_IN: frozenset({AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED}),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
}

RESCHEDULABLE = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CHECKED_IN})

RESCHEDULED_REASON = "RESCHEDULED"

# Plan items follow the appointment they are booked on.
_PLAN_ITEM_STATUS = {
    AppointmentStatus.IN_PROGRESS: PlanItemStatus.IN_PROGRESS,
    AppointmentStatus.COMPLETED: PlanItemStatus.COMPLETED,
    AppointmentStatus.CANCELLED: PlanItemStatus.READY_FOR_BOOKING,
    AppointmentStatus.NO_SHOW: PlanItemStatus.READY_FOR_BOOKING,
}


@dataclass
class BookingPlan:
    """Everything validated for one booking, ready to be persisted."""

    patient: Patient
    doctor: Employee
    room: Room
    services: list[DentalService]
    interval: Interval
    participants: list[tuple[Employee, str]] = field(default_factory=list)
    plan_items: list[PlanItem] = field(default_factory=list)
    notes: Optional[str] = None
    created_by: Optional[str] = None
    replaces: Optional[Appointment] = None

    @property
    def day(self) -> date:
        return self.interval.start.date()

    @property
    def total_minutes(self) -> int:
        return self.interval.duration_minutes

    def resources(self) -> list[tuple[ResourceKind, uuid.UUID, str, str]]:
        """(kind, id, display code, rule code) for every resource the booking occupies."""
        items = [
            (ResourceKind.DOCTOR, self.doctor.id, self.doctor.employee_code, "EMPLOYEE_SLOT_TAKEN"),
            (ResourceKind.ROOM, self.room.id, self.room.room_code, "ROOM_SLOT_TAKEN"),
            (ResourceKind.PATIENT, self.patient.id, self.patient.patient_code, "PATIENT_SLOT_TAKEN"),
        ]
        for employee, _role in self.participants:
            items.append(
                (ResourceKind.PARTICIPANT, employee.id, employee.employee_code, "PARTICIPANT_SLOT_TAKEN")
            )
        return items


def total_duration_minutes(services: Sequence[DentalService]) -> int:
    return sum(s.duration_minutes + (s.buffer_minutes or 0) for s in services)


class BookingService:
    """Creates appointments and drives their status transitions."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[Settings] = None,
        locks: Optional[ResourceLockRegistry] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.settings = settings or get_settings()
        self.locks = locks or resource_locks
        self._now = clock or datetime.now

        self.appointments = AppointmentRepository(session)
        self.patients = PatientRepository(session)
        self.employees = EmployeeRepository(session)
        self.rooms = RoomRepository(session)
        self.services = ServiceRepository(session)
        self.shifts = ShiftRepository(session)
        self.plan_items = PlanItemRepository(session)
        self.audit = AuditRepository(session)
        self.conflicts = ConflictDetector(session)
        self.constraints = ConstraintValidator(session, history_limit=self.settings.history_limit)
        self.rules = ClinicalRuleEngine(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_code: str) -> Appointment:
        appt = await self.appointments.get_by_code(appointment_code)
        if appt is None:
            raise NotFoundError(
                f"Appointment {appointment_code} not found",
                "APPOINTMENT_NOT_FOUND",
                {"appointment_code": appointment_code},
            )
        return appt

    async def list_appointments(
        self,
        day: Optional[date] = None,
        doctor_code: Optional[str] = None,
        patient_code: Optional[str] = None,
        status: Optional[AppointmentStatus] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Sequence[Appointment]:
        employee_id = patient_id = None
        if doctor_code:
            employee_id = (await self._require_employee(doctor_code, "EMPLOYEE_NOT_FOUND")).id
        if patient_code:
            patient_id = (await self._require_patient(patient_code)).id
        return await self.appointments.list(
            day=day,
            employee_id=employee_id,
            patient_id=patient_id,
            status=status.value if status else None,
            offset=offset,
            limit=limit,
        )

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_appointment(self, request: AppointmentCreateRequest) -> Appointment:
        async def attempt() -> Appointment:
            plan = await self.prepare(request)
            return await self._persist(plan)

        appt = await self._with_retry(attempt)
        logger.info(
            "Booked %s for patient %s with %s in %s at %s",
            appt.appointment_code, request.patient_code, request.doctor_code,
            request.room_code, appt.start_time,
        )
        return appt

    async def prepare(
        self,
        request: AppointmentCreateRequest,
        replaces: Optional[Appointment] = None,
        carried_plan_items: Sequence[PlanItem] = (),
    ) -> BookingPlan:
        """Run every read-only check of the creation pipeline and return the plan."""
        if self.settings.reject_past_start and request.start_time < self._now():
            raise InvalidInputError(
                f"Start time {request.start_time.isoformat()} is in the past",
                "START_TIME_IN_PAST",
                {"start_time": request.start_time.isoformat()},
            )

        patient = await self._require_patient(request.patient_code)
        doctor = await self._require_employee(request.doctor_code, "EMPLOYEE_NOT_FOUND")
        if not doctor.is_active or not doctor.is_medical_staff:
            raise InvalidInputError(
                f"Employee {doctor.employee_code} cannot be the treating doctor",
                "EMPLOYEE_NOT_MEDICAL_STAFF",
                {"doctor_code": doctor.employee_code},
            )
        room = await self.rooms.get_by_code(request.room_code)
        if room is None or not room.is_active:
            raise NotFoundError(
                f"Room {request.room_code} not found or inactive",
                "ROOM_NOT_FOUND",
                {"room_code": request.room_code},
            )

        plan_items = list(carried_plan_items)
        if request.plan_item_ids:
            plan_items.extend(await self._load_plan_items(patient, request.plan_item_ids))
        services = await self._collect_services(request.service_codes, plan_items)
        participants = await self._load_participants(doctor, request.participants)

        self._check_qualification(doctor, services)
        self._check_room(room, services)

        # (1) duration
        interval = Interval.from_duration(request.start_time, total_duration_minutes(services))
        plan = BookingPlan(
            patient=patient,
            doctor=doctor,
            room=room,
            services=services,
            interval=interval,
            participants=participants,
            plan_items=plan_items,
            notes=request.notes,
            created_by=request.created_by,
            replaces=replaces,
        )

        # (2) day-based constraints
        violation = await self.constraints.validate(
            plan.day, services, patient.id,
            exclude_appointment_id=replaces.id if replaces else None,
        )
        if violation is not None:
            raise ConflictError.from_violation(violation)

        # (3) clinical dependency rules
        violation = await self.rules.validate(plan.day, services, patient.id)
        if violation is not None:
            raise ConflictError.from_violation(violation)

        # (4a) shift coverage
        await self._check_shift(doctor, interval, "EMPLOYEE")
        for employee, _role in participants:
            await self._check_shift(employee, interval, "PARTICIPANT")
        return plan

    async def _persist(
        self,
        plan: BookingPlan,
        after_insert: Optional[Callable[[Appointment], Awaitable[None]]] = None,
    ) -> Appointment:
        exclude_id = plan.replaces.id if plan.replaces else None
        keys = [resource_key(kind, rid) for kind, rid, _code, _rule in plan.resources()]

        async with self.locks.hold(keys):
            # (4b) conflicts, checked while holding every resource lock
            for kind, rid, code, rule_code in plan.resources():
                found = await self.conflicts.find_conflicts(kind, rid, plan.interval, exclude_id)
                if found:
                    raise self._slot_taken(kind, code, rule_code, plan.interval, found)

            # (5) write
            try:
                appt = await self._insert(plan)
                await self._recheck(plan, appt)
                if after_insert is not None:
                    await after_insert(appt)
                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                raise ConcurrentWriteError(
                    "Another booking was written at the same time",
                    details={"reason": str(exc.orig)},
                ) from exc
            except Exception:
                await self.session.rollback()
                raise
        return appt

    async def _insert(self, plan: BookingPlan) -> Appointment:
        appt = Appointment(
            appointment_code=await self.appointments.next_code(plan.day),
            patient=plan.patient,
            doctor=plan.doctor,
            room=plan.room,
            start_time=plan.interval.start,
            end_time=plan.interval.end,
            expected_duration_minutes=plan.total_minutes,
            status=AppointmentStatus.SCHEDULED.value,
            notes=plan.notes,
            created_by=plan.created_by,
            services=[
                AppointmentService(
                    service=s,
                    price_snapshot=s.price,
                    duration_snapshot=s.duration_minutes,
                    buffer_snapshot=s.buffer_minutes or 0,
                )
                for s in plan.services
            ],
            participants=[
                AppointmentParticipant(employee=employee, role=role)
                for employee, role in plan.participants
            ],
        )
        await self.appointments.add(appt)

        if plan.plan_items:
            await self.plan_items.link(appt.id, [item.id for item in plan.plan_items])
            await self.plan_items.set_status(plan.plan_items, PlanItemStatus.SCHEDULED.value)

        await self.audit.log_action(
            action="create",
            resource_type="appointment",
            resource_id=appt.appointment_code,
            user_id=plan.created_by,
            details={
                "start_time": appt.start_time.isoformat(),
                "end_time": appt.end_time.isoformat(),
                "services": [s.service_code for s in plan.services],
                "doctor_code": plan.doctor.employee_code,
                "room_code": plan.room.room_code,
            },
        )
        return appt

    async def _recheck(self, plan: BookingPlan, appt: Appointment) -> None:
        """Re-run conflict scans after the flush to catch writers outside this process."""
        ignored = {appt.id}
        if plan.replaces is not None:
            ignored.add(plan.replaces.id)
        for kind, rid, code, _rule in plan.resources():
            found = [
                a for a in await self.conflicts.find_conflicts(kind, rid, plan.interval, appt.id)
                if a.id not in ignored
            ]
            if found:
                raise ConcurrentWriteError(
                    f"{kind.value.title()} {code} was booked concurrently",
                    details={"resource": code, "conflicts": [a.appointment_code for a in found]},
                )

    # ------------------------------------------------------------------
    # Delay
    # ------------------------------------------------------------------

    async def delay(
        self,
        appointment_code: str,
        new_start: datetime,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Appointment:
        """Move a SCHEDULED appointment later in place, keeping its duration."""

        async def attempt() -> Appointment:
            appt = await self.get_appointment(appointment_code)
            if appt.status != AppointmentStatus.SCHEDULED.value:
                raise InvalidStateError(
                    f"Cannot delay appointment in status {appt.status}; only SCHEDULED appointments can be delayed",
                    "APPOINTMENT_NOT_DELAYABLE",
                    {"appointment_code": appointment_code, "status": appt.status},
                )
            if new_start <= appt.start_time:
                raise InvalidInputError(
                    f"New start time {new_start.isoformat()} must be after {appt.start_time.isoformat()}",
                    "NEW_START_NOT_LATER",
                    {"current_start": appt.start_time.isoformat(), "new_start": new_start.isoformat()},
                )
            if self.settings.reject_past_start and new_start < self._now():
                raise InvalidInputError(
                    f"Cannot delay to a time in the past: {new_start.isoformat()}",
                    "START_TIME_IN_PAST",
                    {"new_start": new_start.isoformat()},
                )

            old_start = appt.start_time
            interval = Interval(start=new_start, end=new_start + (appt.end_time - appt.start_time))
            if interval.start.date() != old_start.date():
                logger.warning("Appointment %s delayed across days (%s -> %s)",
                               appointment_code, old_start.date(), interval.start.date())

            resources = [
                (ResourceKind.DOCTOR, appt.employee_id, appt.doctor.employee_code, "EMPLOYEE_SLOT_TAKEN"),
                (ResourceKind.ROOM, appt.room_id, appt.room.room_code, "ROOM_SLOT_TAKEN"),
                (ResourceKind.PATIENT, appt.patient_id, appt.patient.patient_code, "PATIENT_SLOT_TAKEN"),
            ] + [
                (ResourceKind.PARTICIPANT, p.employee_id, p.employee.employee_code, "PARTICIPANT_SLOT_TAKEN")
                for p in appt.participants
            ]
            async with self.locks.hold(resource_key(kind, rid) for kind, rid, _c, _r in resources):
                for kind, rid, code, rule_code in resources:
                    found = await self.conflicts.find_conflicts(kind, rid, interval, appt.id)
                    if found:
                        raise self._slot_taken(kind, code, rule_code, interval, found)
                try:
                    appt.start_time = interval.start
                    appt.end_time = interval.end
                    if reason_code:
                        appt.reason_code = reason_code
                    if notes:
                        appt.notes = notes
                    await self.session.flush()
                    await self.audit.log_action(
                        action="delay",
                        resource_type="appointment",
                        resource_id=appt.appointment_code,
                        user_id=performed_by,
                        details={
                            "old_start_time": old_start.isoformat(),
                            "new_start_time": interval.start.isoformat(),
                            "reason_code": reason_code,
                        },
                    )
                    await self.session.commit()
                except Exception:
                    await self.session.rollback()
                    raise
            logger.info("Delayed %s from %s to %s", appointment_code, old_start, interval.start)
            return appt

        return await self._with_retry(attempt)

    # ------------------------------------------------------------------
    # Reschedule
    # ------------------------------------------------------------------

    async def reschedule(
        self,
        appointment_code: str,
        request: RescheduleRequest,
        performed_by: Optional[str] = None,
    ) -> tuple[Appointment, Appointment]:
        """Book a replacement appointment, then cancel the old one pointing at it.

        Returns ``(old, new)``. Both writes share one transaction.
        """

        async def attempt() -> tuple[Appointment, Appointment]:
            old = await self.get_appointment(appointment_code)
            if AppointmentStatus(old.status) not in RESCHEDULABLE:
                raise InvalidStateError(
                    f"Appointment {appointment_code} in status {old.status} cannot be rescheduled",
                    "APPOINTMENT_NOT_RESCHEDULABLE",
                    {"appointment_code": appointment_code, "status": old.status},
                )

            participants = request.participants
            if participants is None:
                participants = [
                    ParticipantRequest(employee_code=p.employee.employee_code, role=p.role)
                    for p in old.participants
                ]
            create = AppointmentCreateRequest(
                patient_code=old.patient.patient_code,
                doctor_code=request.doctor_code or old.doctor.employee_code,
                room_code=request.room_code or old.room.room_code,
                start_time=request.new_start_time,
                service_codes=request.service_codes or [s.service.service_code for s in old.services],
                participants=participants,
                notes=request.notes or old.notes,
                created_by=performed_by,
            )
            carried = await self.plan_items.list_for_appointment(old.id)
            plan = await self.prepare(create, replaces=old, carried_plan_items=carried)

            async def cancel_old(new: Appointment) -> None:
                old.status = AppointmentStatus.CANCELLED.value
                old.reason_code = RESCHEDULED_REASON
                old.rescheduled_to_appointment_id = new.id
                if request.reason_code:
                    old.notes = f"{old.notes}\n{request.reason_code}" if old.notes else request.reason_code
                await self.session.flush()
                await self.audit.log_action(
                    action="reschedule",
                    resource_type="appointment",
                    resource_id=old.appointment_code,
                    user_id=performed_by,
                    details={
                        "new_appointment_code": new.appointment_code,
                        "old_start_time": old.start_time.isoformat(),
                        "new_start_time": new.start_time.isoformat(),
                        "reason_code": request.reason_code,
                    },
                )

            new = await self._persist(plan, after_insert=cancel_old)
            return old, new

        old, new = await self._with_retry(attempt)
        logger.info("Rescheduled %s -> %s", old.appointment_code, new.appointment_code)
        return old, new

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def update_status(
        self,
        appointment_code: str,
        status: AppointmentStatus,
        reason_code: Optional[str] = None,
        notes: Optional[str] = None,
        performed_by: Optional[str] = None,
    ) -> Appointment:
        appt = await self.get_appointment(appointment_code)
        current = AppointmentStatus(appt.status)
        if status not in TRANSITIONS[current]:
            raise InvalidStateError(
                f"Cannot change appointment {appointment_code} from {current.value} to {status.value}",
                details={"appointment_code": appointment_code, "from": current.value, "to": status.value},
            )
        if status is AppointmentStatus.CANCELLED and not reason_code:
            raise InvalidInputError("A reason code is required to cancel", "REASON_CODE_REQUIRED")

        try:
            appt.status = status.value
            if reason_code:
                appt.reason_code = reason_code
            if notes:
                appt.notes = notes
            if status is AppointmentStatus.IN_PROGRESS:
                appt.actual_start_time = self._now()
            elif status is AppointmentStatus.COMPLETED:
                appt.actual_end_time = self._now()

            plan_status = _PLAN_ITEM_STATUS.get(status)
            if plan_status is not None:
                items = await self.plan_items.list_for_appointment(appt.id)
                if items:
                    await self.plan_items.set_status(items, plan_status.value)

            await self.session.flush()
            await self.audit.log_action(
                action="status_change",
                resource_type="appointment",
                resource_id=appt.appointment_code,
                user_id=performed_by,
                details={"from": current.value, "to": status.value, "reason_code": reason_code},
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        logger.info("Appointment %s: %s -> %s", appointment_code, current.value, status.value)
        return appt

    async def cancel(self, appointment_code: str, reason_code: str, notes: Optional[str] = None,
                     performed_by: Optional[str] = None) -> Appointment:
        return await self.update_status(appointment_code, AppointmentStatus.CANCELLED, reason_code, notes, performed_by)

    async def check_in(self, appointment_code: str, performed_by: Optional[str] = None) -> Appointment:
        return await self.update_status(appointment_code, AppointmentStatus.CHECKED_IN, performed_by=performed_by)

    async def start(self, appointment_code: str, performed_by: Optional[str] = None) -> Appointment:
        return await self.update_status(appointment_code, AppointmentStatus.IN_PROGRESS, performed_by=performed_by)

    async def complete(self, appointment_code: str, notes: Optional[str] = None,
                       performed_by: Optional[str] = None) -> Appointment:
        return await self.update_status(appointment_code, AppointmentStatus.COMPLETED, notes=notes,
                                        performed_by=performed_by)

    async def mark_no_show(self, appointment_code: str, performed_by: Optional[str] = None) -> Appointment:
        return await self.update_status(appointment_code, AppointmentStatus.NO_SHOW, performed_by=performed_by)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _with_retry(self, attempt: Callable[[], Awaitable[T]]) -> T:
        retries = self.settings.booking_retry_attempts
        for n in range(retries + 1):
            try:
                return await attempt()
            except ConcurrentWriteError:
                # Start the next attempt from a clean identity map
                self.session.expunge_all()
                if n >= retries:
                    raise
                logger.warning("Concurrent write conflict, retrying (attempt %d of %d)", n + 2, retries + 1)
        raise AssertionError("unreachable")

    async def _require_patient(self, patient_code: str) -> Patient:
        patient = await self.patients.get_by_code(patient_code)
        if patient is None or not patient.is_active:
            raise NotFoundError(f"Patient {patient_code} not found", "PATIENT_NOT_FOUND",
                                {"patient_code": patient_code})
        return patient

    async def _require_employee(self, employee_code: str, rule_code: str) -> Employee:
        employee = await self.employees.get_by_code(employee_code)
        if employee is None:
            raise NotFoundError(f"Employee {employee_code} not found", rule_code,
                                {"employee_code": employee_code})
        return employee

    async def _load_plan_items(self, patient: Patient, item_ids: Sequence[uuid.UUID]) -> list[PlanItem]:
        items = {item.id: item for item in await self.plan_items.get_by_ids(item_ids)}
        missing = [str(i) for i in item_ids if i not in items]
        if missing:
            raise NotFoundError("Treatment plan items not found", "PLAN_ITEMS_NOT_FOUND", {"item_ids": missing})
        for item in items.values():
            if item.patient_id != patient.id:
                raise InvalidInputError(
                    f"Plan item {item.item_name} belongs to another patient",
                    "PLAN_ITEM_PATIENT_MISMATCH",
                    {"item_id": str(item.id)},
                )
            if item.status != PlanItemStatus.READY_FOR_BOOKING.value:
                raise InvalidStateError(
                    f"Plan item {item.item_name} is {item.status}, not READY_FOR_BOOKING",
                    "PLAN_ITEM_NOT_READY",
                    {"item_id": str(item.id), "status": item.status},
                )
        return [items[i] for i in dict.fromkeys(item_ids)]

    async def _collect_services(self, service_codes: Sequence[str], plan_items: Sequence[PlanItem]) -> list[DentalService]:
        if not plan_items:
            return await load_services(self.session, service_codes)
        from_items = await self.services.get_by_ids(list(dict.fromkeys(i.service_id for i in plan_items)))
        services = {s.id: s for s in from_items}
        if service_codes:
            for s in await load_services(self.session, service_codes):
                services.setdefault(s.id, s)
        return list(services.values())

    async def _load_participants(
        self, doctor: Employee, requested: Sequence[ParticipantRequest]
    ) -> list[tuple[Employee, str]]:
        participants: list[tuple[Employee, str]] = []
        seen: set[uuid.UUID] = set()
        for p in requested:
            employee = await self._require_employee(p.employee_code, "PARTICIPANT_NOT_FOUND")
            if not employee.is_active or not employee.is_medical_staff:
                raise InvalidInputError(
                    f"Employee {employee.employee_code} is not active medical staff",
                    "PARTICIPANT_NOT_MEDICAL_STAFF",
                    {"employee_code": employee.employee_code},
                )
            if employee.id == doctor.id or employee.id in seen:
                raise InvalidInputError(
                    f"Employee {employee.employee_code} is listed more than once",
                    "DUPLICATE_PARTICIPANT",
                    {"employee_code": employee.employee_code},
                )
            seen.add(employee.id)
            participants.append((employee, p.role.value))
        return participants

    @staticmethod
    def _check_qualification(doctor: Employee, services: Sequence[DentalService]) -> None:
        held = {sp.id for sp in doctor.specializations}
        lacking = [s.service_code for s in services if s.specialization_id and s.specialization_id not in held]
        if lacking:
            raise ConflictError(
                f"Doctor {doctor.employee_code} lacks the specialization for {', '.join(lacking)}",
                "EMPLOYEE_NOT_QUALIFIED",
                {"doctor_code": doctor.employee_code, "service_codes": lacking},
            )

    @staticmethod
    def _check_room(room: Room, services: Sequence[DentalService]) -> None:
        unsupported = [s.service_code for s in services if s.id not in room.service_ids]
        if unsupported:
            raise ConflictError(
                f"Room {room.room_code} does not support {', '.join(unsupported)}",
                "ROOM_NOT_COMPATIBLE",
                {"room_code": room.room_code, "service_codes": unsupported},
            )

    async def _check_shift(self, employee: Employee, interval: Interval, prefix: str) -> None:
        shifts = await self.shifts.list_for_employee(employee.id, interval.start.date())
        details = {
            "employee_code": employee.employee_code,
            "start_time": interval.start.isoformat(),
            "end_time": interval.end.isoformat(),
        }
        if not shifts:
            raise ConflictError(
                f"{employee.employee_code} has no shift on {interval.start.date().isoformat()}",
                f"{prefix}_NOT_SCHEDULED",
                details,
            )
        if not shifts_cover(shifts, interval):
            raise ConflictError(
                f"{employee.employee_code}'s shift does not cover {interval.start:%H:%M}-{interval.end:%H:%M}",
                "EMPLOYEE_SHIFT_NOT_COVERING",
                details,
            )

    @staticmethod
    def _slot_taken(
        kind: ResourceKind, code: str, rule_code: str, interval: Interval, found: Sequence[Appointment]
    ) -> BookingError:
        return ConflictError(
            f"{kind.value.title()} {code} is busy during "
            f"{interval.start:%Y-%m-%d %H:%M}-{interval.end:%H:%M}",
            rule_code,
            {
                "resource_kind": kind.value,
                "resource_code": code,
                "start_time": interval.start.isoformat(),
                "end_time": interval.end.isoformat(),
                "conflicting_appointments": [a.appointment_code for a in found],
            },
        )
