"""CRUD repositories for the clinic booking models."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta
from typing import Optional, Sequence

from sqlalchemy import delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from dental_booking.core.models import (
    Appointment,
    AppointmentPlanItem,
    AppointmentService,
    AppointmentStatus,
    AuditLog,
    DentalService,
    Employee,
    EmployeeShift,
    Holiday,
    Patient,
    PlanItem,
    Room,
    ServiceDependency,
    WorkShift,
)


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min)
    return start, start + timedelta(days=1)


class PatientRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Patient:
        patient = Patient(**kwargs)
        self.session.add(patient)
        await self.session.flush()
        return patient

    async def get_by_id(self, patient_id: uuid.UUID) -> Optional[Patient]:
        return await self.session.get(Patient, patient_id)

    async def get_by_code(self, patient_code: str) -> Optional[Patient]:
        result = await self.session.execute(select(Patient).where(Patient.patient_code == patient_code))
        return result.scalar_one_or_none()


class EmployeeRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Employee:
        employee = Employee(**kwargs)
        self.session.add(employee)
        await self.session.flush()
        return employee

    async def get_by_id(self, employee_id: uuid.UUID) -> Optional[Employee]:
        return await self.session.get(Employee, employee_id)

    async def get_by_code(self, employee_code: str) -> Optional[Employee]:
        result = await self.session.execute(select(Employee).where(Employee.employee_code == employee_code))
        return result.scalar_one_or_none()

    async def list_active_medical_staff(self) -> Sequence[Employee]:
        stmt = (
            select(Employee)
            .where(Employee.is_active.is_(True), Employee.is_medical_staff.is_(True))
            .order_by(Employee.employee_code)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class RoomRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Room:
        room = Room(**kwargs)
        self.session.add(room)
        await self.session.flush()
        return room

    async def get_by_code(self, room_code: str) -> Optional[Room]:
        result = await self.session.execute(select(Room).where(Room.room_code == room_code))
        return result.scalar_one_or_none()

    async def list_active(self) -> Sequence[Room]:
        stmt = select(Room).where(Room.is_active.is_(True)).order_by(Room.room_code)
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ServiceRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> DentalService:
        service = DentalService(**kwargs)
        self.session.add(service)
        await self.session.flush()
        return service

    async def get_by_id(self, service_id: uuid.UUID) -> Optional[DentalService]:
        return await self.session.get(DentalService, service_id)

    async def get_by_code(self, service_code: str) -> Optional[DentalService]:
        result = await self.session.execute(
            select(DentalService).where(DentalService.service_code == service_code)
        )
        return result.scalar_one_or_none()

    async def get_by_codes(self, service_codes: Sequence[str]) -> Sequence[DentalService]:
        if not service_codes:
            return []
        stmt = select(DentalService).where(DentalService.service_code.in_(list(service_codes)))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def get_by_ids(self, service_ids: Sequence[uuid.UUID]) -> Sequence[DentalService]:
        if not service_ids:
            return []
        stmt = select(DentalService).where(DentalService.id.in_(list(service_ids)))
        result = await self.session.execute(stmt)
        return result.scalars().all()


class ServiceDependencyRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> ServiceDependency:
        dep = ServiceDependency(**kwargs)
        self.session.add(dep)
        await self.session.flush()
        return dep

    async def find(
        self, service_id: uuid.UUID, dependent_service_id: uuid.UUID, rule_type: str
    ) -> Optional[ServiceDependency]:
        stmt = select(ServiceDependency).where(
            ServiceDependency.service_id == service_id,
            ServiceDependency.dependent_service_id == dependent_service_id,
            ServiceDependency.rule_type == rule_type,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_for_services(self, service_ids: Sequence[uuid.UUID]) -> Sequence[ServiceDependency]:
        """All edges whose source is one of *service_ids*."""
        if not service_ids:
            return []
        stmt = select(ServiceDependency).where(ServiceDependency.service_id.in_(list(service_ids)))
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_touching(self, service_id: uuid.UUID, rule_type: str) -> Sequence[ServiceDependency]:
        """Edges of *rule_type* with *service_id* on either end."""
        stmt = select(ServiceDependency).where(
            ServiceDependency.rule_type == rule_type,
            or_(
                ServiceDependency.service_id == service_id,
                ServiceDependency.dependent_service_id == service_id,
            ),
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_by_dependent(
        self, dependent_service_id: uuid.UUID, rule_types: Sequence[str]
    ) -> Sequence[ServiceDependency]:
        stmt = select(ServiceDependency).where(
            ServiceDependency.dependent_service_id == dependent_service_id,
            ServiceDependency.rule_type.in_(list(rule_types)),
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def delete_edge(self, service_id: uuid.UUID, dependent_service_id: uuid.UUID, rule_type: str) -> int:
        stmt = delete(ServiceDependency).where(
            ServiceDependency.service_id == service_id,
            ServiceDependency.dependent_service_id == dependent_service_id,
            ServiceDependency.rule_type == rule_type,
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount


class ShiftRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_shift(self, **kwargs) -> WorkShift:
        shift = WorkShift(**kwargs)
        self.session.add(shift)
        await self.session.flush()
        return shift

    async def assign(self, employee_id: uuid.UUID, work_shift_id: uuid.UUID, work_date: date) -> EmployeeShift:
        entry = EmployeeShift(employee_id=employee_id, work_shift_id=work_shift_id, work_date=work_date)
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_for_employee(self, employee_id: uuid.UUID, work_date: date) -> Sequence[WorkShift]:
        stmt = (
            select(WorkShift)
            .join(EmployeeShift, EmployeeShift.work_shift_id == WorkShift.id)
            .where(EmployeeShift.employee_id == employee_id, EmployeeShift.work_date == work_date)
            .order_by(WorkShift.start_time)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def employees_on_date(self, work_date: date) -> dict[uuid.UUID, list[WorkShift]]:
        stmt = (
            select(EmployeeShift.employee_id, WorkShift)
            .join(WorkShift, EmployeeShift.work_shift_id == WorkShift.id)
            .where(EmployeeShift.work_date == work_date)
            .order_by(WorkShift.start_time)
        )
        result = await self.session.execute(stmt)
        by_employee: dict[uuid.UUID, list[WorkShift]] = {}
        for employee_id, shift in result.all():
            by_employee.setdefault(employee_id, []).append(shift)
        return by_employee


class HolidayRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Holiday:
        holiday = Holiday(**kwargs)
        self.session.add(holiday)
        await self.session.flush()
        return holiday

    async def is_holiday(self, day: date) -> bool:
        result = await self.session.execute(select(Holiday.id).where(Holiday.holiday_date == day))
        return result.first() is not None


class AppointmentRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, appointment: Appointment) -> Appointment:
        """Persist an appointment together with its service and participant rows."""
        self.session.add(appointment)
        await self.session.flush()
        return appointment

    async def get_by_id(self, appointment_id: uuid.UUID) -> Optional[Appointment]:
        return await self.session.get(Appointment, appointment_id)

    async def get_by_code(self, appointment_code: str) -> Optional[Appointment]:
        stmt = (
            select(Appointment)
            .where(Appointment.appointment_code == appointment_code)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list(
        self,
        day: Optional[date] = None,
        employee_id: Optional[uuid.UUID] = None,
        patient_id: Optional[uuid.UUID] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Sequence[Appointment]:
        stmt = select(Appointment)
        if day is not None:
            start, end = day_bounds(day)
            stmt = stmt.where(Appointment.start_time >= start, Appointment.start_time < end)
        if employee_id is not None:
            stmt = stmt.where(Appointment.employee_id == employee_id)
        if patient_id is not None:
            stmt = stmt.where(Appointment.patient_id == patient_id)
        if status is not None:
            stmt = stmt.where(Appointment.status == status)
        stmt = stmt.order_by(Appointment.start_time).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def next_code(self, day: date) -> str:
        """Next ``APT-YYYYMMDD-NNN`` code for appointments starting on *day*."""
        prefix = f"APT-{day:%Y%m%d}-"
        stmt = select(Appointment.appointment_code).where(Appointment.appointment_code.like(f"{prefix}%"))
        result = await self.session.execute(stmt)
        highest = 0
        for (code,) in result.all():
            suffix = code[len(prefix):]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:03d}"

    async def count_for_service_on_day(
        self, service_id: uuid.UUID, day: date, exclude_appointment_id: Optional[uuid.UUID] = None
    ) -> int:
        """Non-cancelled appointments carrying *service_id* that start on *day*."""
        start, end = day_bounds(day)
        stmt = (
            select(func.count(func.distinct(Appointment.id)))
            .join(AppointmentService, AppointmentService.appointment_id == Appointment.id)
            .where(
                AppointmentService.service_id == service_id,
                Appointment.start_time >= start,
                Appointment.start_time < end,
                Appointment.status != AppointmentStatus.CANCELLED.value,
            )
        )
        if exclude_appointment_id is not None:
            stmt = stmt.where(Appointment.id != exclude_appointment_id)
        result = await self.session.execute(stmt)
        return result.scalar_one()

    async def recent_completed_by_patient(self, patient_id: uuid.UUID, limit: int = 10) -> Sequence[Appointment]:
        stmt = (
            select(Appointment)
            .where(
                Appointment.patient_id == patient_id,
                Appointment.status == AppointmentStatus.COMPLETED.value,
            )
            .order_by(Appointment.start_time.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def completed_service_history(self, patient_id: uuid.UUID) -> dict[uuid.UUID, date]:
        """Latest completion date per service the patient has completed."""
        stmt = (
            select(AppointmentService.service_id, func.max(Appointment.start_time))
            .join(Appointment, AppointmentService.appointment_id == Appointment.id)
            .where(
                Appointment.patient_id == patient_id,
                Appointment.status == AppointmentStatus.COMPLETED.value,
            )
            .group_by(AppointmentService.service_id)
        )
        result = await self.session.execute(stmt)
        return {service_id: latest.date() for service_id, latest in result.all()}


class PlanItemRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> PlanItem:
        item = PlanItem(**kwargs)
        self.session.add(item)
        await self.session.flush()
        return item

    async def get_by_ids(self, item_ids: Sequence[uuid.UUID]) -> Sequence[PlanItem]:
        if not item_ids:
            return []
        result = await self.session.execute(select(PlanItem).where(PlanItem.id.in_(list(item_ids))))
        return result.scalars().all()

    async def link(self, appointment_id: uuid.UUID, item_ids: Sequence[uuid.UUID]) -> None:
        for item_id in item_ids:
            self.session.add(AppointmentPlanItem(appointment_id=appointment_id, item_id=item_id))
        await self.session.flush()

    async def list_for_appointment(self, appointment_id: uuid.UUID) -> Sequence[PlanItem]:
        stmt = (
            select(PlanItem)
            .join(AppointmentPlanItem, AppointmentPlanItem.item_id == PlanItem.id)
            .where(AppointmentPlanItem.appointment_id == appointment_id)
            .order_by(PlanItem.sequence_number)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def set_status(self, items: Sequence[PlanItem], status: str) -> None:
        for item in items:
            item.status = status
        await self.session.flush()


class AuditRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def log_action(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        user_id: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> AuditLog:
        entry = AuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id),
            details=details,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_by_resource(self, resource_type: str, resource_id: str, limit: int = 50) -> Sequence[AuditLog]:
        stmt = (
            select(AuditLog)
            .where(AuditLog.resource_type == resource_type, AuditLog.resource_id == resource_id)
            .order_by(AuditLog.timestamp.desc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()

