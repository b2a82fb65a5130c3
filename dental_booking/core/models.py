"""SQLAlchemy 2.0 async models for the clinic booking schema."""

from __future__ import annotations

import enum
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.types import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


class AppointmentStatus(str, enum.Enum):
    """Appointment lifecycle statuses."""
    SCHEDULED = "SCHEDULED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


# Statuses that occupy a doctor, room, participant or patient.
ACTIVE_STATUSES: tuple[AppointmentStatus, ...] = (
    AppointmentStatus.SCHEDULED,
    AppointmentStatus.CHECKED_IN,
    AppointmentStatus.IN_PROGRESS,
)


class DependencyRuleType(str, enum.Enum):
    """Kinds of edges in the clinical service dependency graph."""
    REQUIRES_PREREQUISITE = "REQUIRES_PREREQUISITE"
    REQUIRES_MIN_DAYS = "REQUIRES_MIN_DAYS"
    EXCLUDES_SAME_DAY = "EXCLUDES_SAME_DAY"
    BUNDLES_WITH = "BUNDLES_WITH"


class ParticipantRole(str, enum.Enum):
    """Role an employee holds on an appointment besides the primary doctor."""
    ASSISTANT = "ASSISTANT"
    SECONDARY_DOCTOR = "SECONDARY_DOCTOR"
    OBSERVER = "OBSERVER"


class PlanItemStatus(str, enum.Enum):
    """Treatment-plan item statuses relevant to booking."""
    PENDING = "PENDING"
    READY_FOR_BOOKING = "READY_FOR_BOOKING"
    SCHEDULED = "SCHEDULED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


class Base(DeclarativeBase):
    pass


employee_specializations = Table(
    "employee_specializations",
    Base.metadata,
    Column("employee_id", PG_UUID(as_uuid=True), ForeignKey("employees.id", ondelete="CASCADE"), primary_key=True),
    Column("specialization_id", PG_UUID(as_uuid=True), ForeignKey("specializations.id", ondelete="CASCADE"), primary_key=True),
)

room_services = Table(
    "room_services",
    Base.metadata,
    Column("room_id", PG_UUID(as_uuid=True), ForeignKey("rooms.id", ondelete="CASCADE"), primary_key=True),
    Column("service_id", PG_UUID(as_uuid=True), ForeignKey("dental_services.id", ondelete="CASCADE"), primary_key=True),
)


class Specialization(Base):
    __tablename__ = "specializations"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    employee_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_medical_staff: Mapped[bool] = mapped_column(Boolean, default=True)

    specializations: Mapped[list[Specialization]] = relationship(secondary=employee_specializations, lazy="selectin")
    shifts: Mapped[list[EmployeeShift]] = relationship(back_populates="employee", lazy="noload")

    __table_args__ = (
        Index("ix_employees_active", "is_active"),
    )


class Patient(Base):
    __tablename__ = "patients"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    patient_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class DentalService(Base):
    __tablename__ = "dental_services"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    service_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    service_name: Mapped[str] = mapped_column(String(255), nullable=False)
    specialization_id: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("specializations.id", ondelete="SET NULL"))
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    buffer_minutes: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Day-based constraints; null or zero means unconstrained
    minimum_preparation_days: Mapped[int | None] = mapped_column(Integer)
    recovery_days: Mapped[int | None] = mapped_column(Integer)
    spacing_days: Mapped[int | None] = mapped_column(Integer)
    max_appointments_per_day: Mapped[int | None] = mapped_column(Integer)

    specialization: Mapped[Specialization | None] = relationship(lazy="selectin")

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_dental_services_duration_positive"),
        CheckConstraint("buffer_minutes >= 0", name="ck_dental_services_buffer_non_negative"),
    )


class Room(Base):
    __tablename__ = "rooms"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    room_code: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    room_name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    services: Mapped[list[DentalService]] = relationship(secondary=room_services, lazy="selectin")

    @property
    def service_ids(self) -> set[uuid.UUID]:
        return {s.id for s in self.services}


class ServiceDependency(Base):
    __tablename__ = "service_dependencies"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    service_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("dental_services.id", ondelete="CASCADE"), nullable=False)
    dependent_service_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("dental_services.id", ondelete="CASCADE"), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(30), nullable=False)
    min_days_apart: Mapped[int | None] = mapped_column(Integer)
    receptionist_note: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    service: Mapped[DentalService] = relationship(foreign_keys=[service_id], lazy="selectin")
    dependent_service: Mapped[DentalService] = relationship(foreign_keys=[dependent_service_id], lazy="selectin")

    __table_args__ = (
        UniqueConstraint("service_id", "dependent_service_id", "rule_type", name="uq_service_dependency_edge"),
        CheckConstraint("service_id <> dependent_service_id", name="ck_service_dependency_no_self_loop"),
        CheckConstraint(
            "(rule_type = 'REQUIRES_MIN_DAYS' AND min_days_apart > 0) "
            "OR (rule_type <> 'REQUIRES_MIN_DAYS' AND min_days_apart IS NULL)",
            name="ck_service_dependency_min_days",
        ),
        Index("ix_service_dependencies_service_rule", "service_id", "rule_type"),
        Index("ix_service_dependencies_dependent", "dependent_service_id"),
    )


class WorkShift(Base):
    __tablename__ = "work_shifts"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    shift_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    shift_name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)


class EmployeeShift(Base):
    __tablename__ = "employee_shifts"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    employee_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    work_shift_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("work_shifts.id", ondelete="CASCADE"), nullable=False)
    work_date: Mapped[date] = mapped_column(Date, nullable=False)

    employee: Mapped[Employee] = relationship(back_populates="shifts")
    work_shift: Mapped[WorkShift] = relationship(lazy="selectin")

    __table_args__ = (
        UniqueConstraint("employee_id", "work_date", "work_shift_id", name="uq_employee_shift"),
        Index("ix_employee_shifts_employee_date", "employee_id", "work_date"),
    )


class Holiday(Base):
    __tablename__ = "holidays"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    holiday_date: Mapped[date] = mapped_column(Date, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)


class Appointment(Base):
    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    appointment_code: Mapped[str] = mapped_column(String(30), unique=True, nullable=False)
    patient_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("patients.id"), nullable=False)
    employee_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("employees.id"), nullable=False)
    room_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("rooms.id"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expected_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=AppointmentStatus.SCHEDULED.value)
    rescheduled_to_appointment_id: Mapped[uuid.UUID | None] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("appointments.id"))
    reason_code: Mapped[str | None] = mapped_column(String(50))
    notes: Mapped[str | None] = mapped_column(Text)
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime)
    created_by: Mapped[str | None] = mapped_column(String(100))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    patient: Mapped[Patient] = relationship(lazy="selectin")
    doctor: Mapped[Employee] = relationship(foreign_keys=[employee_id], lazy="selectin")
    room: Mapped[Room] = relationship(lazy="selectin")
    services: Mapped[list[AppointmentService]] = relationship(
        back_populates="appointment", lazy="selectin", cascade="save-update, merge"
    )
    participants: Mapped[list[AppointmentParticipant]] = relationship(
        back_populates="appointment", lazy="selectin", cascade="save-update, merge"
    )

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_appointments_end_after_start"),
        Index("ix_appointments_patient_id", "patient_id"),
        Index("ix_appointments_employee_start", "employee_id", "start_time"),
        Index("ix_appointments_room_start", "room_id", "start_time"),
        Index("ix_appointments_start_time", "start_time"),
        Index("ix_appointments_status", "status"),
    )

    @property
    def service_ids(self) -> list[uuid.UUID]:
        return [s.service_id for s in self.services]


class AppointmentService(Base):
    __tablename__ = "appointment_services"

    appointment_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("appointments.id"), primary_key=True)
    service_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("dental_services.id"), primary_key=True)
    price_snapshot: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    duration_snapshot: Mapped[int] = mapped_column(Integer, nullable=False)
    buffer_snapshot: Mapped[int] = mapped_column(Integer, default=0)

    appointment: Mapped[Appointment] = relationship(back_populates="services")
    service: Mapped[DentalService] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_appointment_services_service", "service_id"),
    )


class AppointmentParticipant(Base):
    __tablename__ = "appointment_participants"

    appointment_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("appointments.id"), primary_key=True)
    employee_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("employees.id"), primary_key=True)
    role: Mapped[str] = mapped_column(String(30), default=ParticipantRole.ASSISTANT.value)

    appointment: Mapped[Appointment] = relationship(back_populates="participants")
    employee: Mapped[Employee] = relationship(lazy="selectin")

    __table_args__ = (
        Index("ix_appointment_participants_employee", "employee_id"),
    )


class PlanItem(Base):
    __tablename__ = "plan_items"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    patient_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("patients.id", ondelete="CASCADE"), nullable=False)
    service_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("dental_services.id"), nullable=False)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    sequence_number: Mapped[int] = mapped_column(Integer, default=1)
    status: Mapped[str] = mapped_column(String(30), default=PlanItemStatus.READY_FOR_BOOKING.value)

    __table_args__ = (
        Index("ix_plan_items_patient", "patient_id"),
    )


class AppointmentPlanItem(Base):
    __tablename__ = "appointment_plan_items"

    appointment_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("appointments.id"), primary_key=True)
    item_id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), ForeignKey("plan_items.id"), primary_key=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[uuid.UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=_new_uuid)
    user_id: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict | None] = mapped_column(JSON)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_audit_resource", "resource_type", "resource_id"),
        Index("ix_audit_timestamp", "timestamp"),
    )
