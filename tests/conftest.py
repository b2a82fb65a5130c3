"""Pytest configuration and fixtures."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from dental_booking.api.app import create_app
from dental_booking.api.dependencies import get_booking_service
from dental_booking.config import Settings
from dental_booking.core.database import get_db
from dental_booking.core.models import (
    Appointment,
    AppointmentService,
    AppointmentStatus,
    Base,
    DentalService,
    Employee,
    EmployeeShift,
    Patient,
    Room,
    Specialization,
    WorkShift,
)
from dental_booking.scheduling.booking import BookingService
from dental_booking.scheduling.locks import ResourceLockRegistry

# Monday used by most scheduling tests
DAY = date(2025, 11, 10)


def at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite://", echo=False, poolclass=StaticPool)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        yield sess
        await sess.rollback()


@pytest.fixture
def settings():
    """Settings that accept the fixed 2025 dates used throughout the suite."""
    return Settings(reject_past_start=False, booking_retry_attempts=1)


# ---------------------------------------------------------------------------
# Seeded clinic
# ---------------------------------------------------------------------------

@dataclass
class Clinic:
    specializations: dict[str, Specialization] = field(default_factory=dict)
    employees: dict[str, Employee] = field(default_factory=dict)
    services: dict[str, DentalService] = field(default_factory=dict)
    rooms: dict[str, Room] = field(default_factory=dict)
    patients: dict[str, Patient] = field(default_factory=dict)
    shifts: dict[str, WorkShift] = field(default_factory=dict)


async def seed_clinic(session: AsyncSession) -> Clinic:
    """Small clinic: two general doctors, an orthodontist, two assistants and three rooms.

    D001 (general + surgery) and A001 work the morning of DAY, D002 and A002
    the afternoon. D003 has no shift on DAY. R001 is front-desk staff.
    """
    clinic = Clinic()

    for code, name in (("GEN", "General dentistry"), ("SURG", "Oral surgery"), ("ORTHO", "Orthodontics")):
        clinic.specializations[code] = Specialization(code=code, name=name)

    spec = clinic.specializations
    for code, name, specs, medical in (
        ("D001", "Dr. Linh Tran", ["GEN", "SURG"], True),
        ("D002", "Dr. Minh Pham", ["GEN"], True),
        ("D003", "Dr. Hoa Le", ["ORTHO"], True),
        ("A001", "Thu Nguyen", [], True),
        ("A002", "Khanh Vo", [], True),
        ("R001", "Mai Do", [], False),
    ):
        clinic.employees[code] = Employee(
            employee_code=code,
            full_name=name,
            is_medical_staff=medical,
            specializations=[spec[s] for s in specs],
        )

    for code, name, spec_code, minutes, buffer, price in (
        ("CLEAN", "Scaling and polishing", "GEN", 30, 10, "300000"),
        ("XRAY", "Panoramic X-ray", "GEN", 20, 0, "150000"),
        ("WHITEN", "Teeth whitening", "GEN", 30, 0, "1200000"),
        ("EXTRACT", "Tooth extraction", "SURG", 45, 15, "800000"),
        ("IMPLANT", "Implant placement", "SURG", 60, 0, "15000000"),
        ("BRACES", "Braces fitting", "ORTHO", 60, 0, "20000000"),
    ):
        clinic.services[code] = DentalService(
            service_code=code,
            service_name=name,
            specialization=spec[spec_code],
            duration_minutes=minutes,
            buffer_minutes=buffer,
            price=Decimal(price),
        )

    svc = clinic.services
    for code, name, supported in (
        ("ROOM1", "Surgery room", ["CLEAN", "XRAY", "WHITEN", "EXTRACT", "IMPLANT"]),
        ("ROOM2", "Hygiene room", ["CLEAN", "XRAY"]),
        ("ROOM3", "Ortho room", ["BRACES"]),
    ):
        clinic.rooms[code] = Room(room_code=code, room_name=name, services=[svc[s] for s in supported])

    for code, name in (("P001", "Nguyen Van An"), ("P002", "Tran Thi Bich")):
        clinic.patients[code] = Patient(patient_code=code, full_name=name, phone="0900000000")

    clinic.shifts["MORNING"] = WorkShift(shift_code="MORNING", shift_name="Morning", start_time=time(8), end_time=time(12))
    clinic.shifts["AFTERNOON"] = WorkShift(shift_code="AFTERNOON", shift_name="Afternoon", start_time=time(13), end_time=time(17))

    session.add_all(
        [*spec.values(), *clinic.employees.values(), *svc.values(), *clinic.rooms.values(),
         *clinic.patients.values(), *clinic.shifts.values()]
    )
    await session.flush()

    emp = clinic.employees
    for employee_code, shift_code in (("D001", "MORNING"), ("A001", "MORNING"), ("D002", "AFTERNOON"), ("A002", "AFTERNOON")):
        session.add(
            EmployeeShift(employee_id=emp[employee_code].id, work_shift_id=clinic.shifts[shift_code].id, work_date=DAY)
        )
    await session.commit()
    return clinic


@pytest_asyncio.fixture
async def clinic(session) -> Clinic:
    return await seed_clinic(session)


async def add_appointment(
    session: AsyncSession,
    clinic: Clinic,
    start: datetime,
    minutes: int,
    service_code: str = "CLEAN",
    patient_code: str = "P001",
    doctor_code: str = "D001",
    room_code: str = "ROOM1",
    status: AppointmentStatus = AppointmentStatus.SCHEDULED,
    code: str = None,
) -> Appointment:
    """Write an appointment row directly, bypassing the booking checks."""
    service = clinic.services[service_code]
    appt = Appointment(
        appointment_code=code or f"SEED-{start:%Y%m%d%H%M}-{doctor_code}-{room_code}",
        patient=clinic.patients[patient_code],
        doctor=clinic.employees[doctor_code],
        room=clinic.rooms[room_code],
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
        expected_duration_minutes=minutes,
        status=status.value,
        services=[AppointmentService(service=service, price_snapshot=service.price, duration_snapshot=minutes)],
    )
    session.add(appt)
    await session.commit()
    return appt


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(engine, clinic, settings):
    """AsyncClient bound to the app with the test engine behind every request."""
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _override_get_db():
        async with factory() as sess:
            try:
                yield sess
                await sess.commit()
            except Exception:
                await sess.rollback()
                raise

    async def _override_booking_service(db: AsyncSession = Depends(get_db)) -> BookingService:
        return BookingService(db, settings=settings, locks=ResourceLockRegistry())

    app = create_app(with_lifespan=False)
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_booking_service] = _override_booking_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
