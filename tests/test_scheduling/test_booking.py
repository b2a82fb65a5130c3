"""Tests for the booking orchestrator."""

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from dental_booking.config import Settings
from dental_booking.core.models import (
    Appointment,
    AppointmentStatus,
    AuditLog,
    Base,
    DependencyRuleType,
    EmployeeShift,
    Holiday,
    ParticipantRole,
    PlanItem,
    PlanItemStatus,
)
from dental_booking.scheduling.booking import BookingService, total_duration_minutes
from dental_booking.scheduling.clinical_rules import ClinicalRuleEngine
from dental_booking.scheduling.errors import (
    BookingError,
    ConflictError,
    InvalidInputError,
    InvalidStateError,
    NotFoundError,
)
from dental_booking.scheduling.locks import ResourceLockRegistry
from dental_booking.scheduling.models import (
    AppointmentCreateRequest,
    DependencyRequest,
    ParticipantRequest,
    RescheduleRequest,
)
from tests.conftest import DAY, add_appointment, at, seed_clinic


@pytest_asyncio.fixture
async def booking(session, clinic, settings):
    return BookingService(session, settings=settings, locks=ResourceLockRegistry())


def make_request(**overrides) -> AppointmentCreateRequest:
    values = dict(
        patient_code="P001",
        doctor_code="D001",
        room_code="ROOM1",
        start_time=at(9),
        service_codes=["CLEAN"],
    )
    values.update(overrides)
    return AppointmentCreateRequest(**values)


async def count_appointments(session) -> int:
    return (await session.execute(select(func.count(Appointment.id)))).scalar_one()


# --- Create ---


async def test_create_sums_duration_and_buffer(booking, session, clinic):
    appt = await booking.create_appointment(make_request(service_codes=["CLEAN", "XRAY"], notes="first visit"))

    # CLEAN 30 + 10 buffer, XRAY 20
    assert appt.expected_duration_minutes == 60
    assert appt.start_time == at(9)
    assert appt.end_time == at(10)
    assert appt.appointment_code == "APT-20251110-001"
    assert appt.status == AppointmentStatus.SCHEDULED.value
    assert {line.service.service_code: line.buffer_snapshot for line in appt.services} == {"CLEAN": 10, "XRAY": 0}
    assert total_duration_minutes([clinic.services["CLEAN"], clinic.services["XRAY"]]) == 60

    audit = (await session.execute(select(AuditLog).where(AuditLog.resource_id == appt.appointment_code))).scalars().all()
    assert [a.action for a in audit] == ["create"]


async def test_codes_increase_per_day(booking):
    first = await booking.create_appointment(make_request(start_time=at(8)))
    second = await booking.create_appointment(make_request(start_time=at(10), patient_code="P002"))
    assert (first.appointment_code, second.appointment_code) == ("APT-20251110-001", "APT-20251110-002")


async def test_touching_bookings_are_allowed(booking):
    await booking.create_appointment(make_request(start_time=at(9)))
    nxt = await booking.create_appointment(make_request(start_time=at(9, 40), patient_code="P002", room_code="ROOM2"))
    assert nxt.start_time == at(9, 40)


async def test_doctor_double_booking_rejected(booking, session):
    await booking.create_appointment(make_request(start_time=at(9)))

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(start_time=at(9, 30), patient_code="P002", room_code="ROOM2"))
    assert exc.value.rule_code == "EMPLOYEE_SLOT_TAKEN"
    assert exc.value.details["conflicting_appointments"] == ["APT-20251110-001"]
    assert await count_appointments(session) == 1


async def test_room_double_booking_rejected(booking, session, clinic):
    await add_appointment(session, clinic, at(9), 60, doctor_code="D002", patient_code="P002", room_code="ROOM1")

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(start_time=at(9, 30)))
    assert exc.value.rule_code == "ROOM_SLOT_TAKEN"


async def test_patient_double_booking_rejected(booking, session, clinic):
    await add_appointment(session, clinic, at(9), 60, doctor_code="D002", room_code="ROOM2")

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(start_time=at(9, 30)))
    assert exc.value.rule_code == "PATIENT_SLOT_TAKEN"


async def test_master_data_errors(booking):
    cases = [
        (dict(patient_code="P999"), NotFoundError, "PATIENT_NOT_FOUND"),
        (dict(doctor_code="D999"), NotFoundError, "EMPLOYEE_NOT_FOUND"),
        (dict(doctor_code="R001"), InvalidInputError, "EMPLOYEE_NOT_MEDICAL_STAFF"),
        (dict(room_code="ROOM9"), NotFoundError, "ROOM_NOT_FOUND"),
        (dict(service_codes=[]), InvalidInputError, "SERVICES_REQUIRED"),
        (dict(service_codes=["NOPE"]), NotFoundError, "SERVICES_NOT_FOUND"),
    ]
    for overrides, error, rule_code in cases:
        with pytest.raises(error) as exc:
            await booking.create_appointment(make_request(**overrides))
        assert exc.value.rule_code == rule_code


async def test_doctor_must_hold_specialization(booking):
    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(
            make_request(doctor_code="D002", start_time=at(14), service_codes=["EXTRACT"])
        )
    assert exc.value.rule_code == "EMPLOYEE_NOT_QUALIFIED"


async def test_room_must_support_services(booking):
    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(room_code="ROOM2", service_codes=["CLEAN", "WHITEN"]))
    assert exc.value.rule_code == "ROOM_NOT_COMPATIBLE"
    assert exc.value.details["service_codes"] == ["WHITEN"]


async def test_shift_must_cover_interval(booking):
    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(start_time=at(11, 40)))
    assert exc.value.rule_code == "EMPLOYEE_SHIFT_NOT_COVERING"

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(
            make_request(doctor_code="D003", room_code="ROOM3", service_codes=["BRACES"])
        )
    assert exc.value.rule_code == "EMPLOYEE_NOT_SCHEDULED"


async def test_past_start_rejected(session, clinic):
    service = BookingService(session, settings=Settings(), locks=ResourceLockRegistry(), clock=lambda: at(9, 30))

    with pytest.raises(InvalidInputError) as exc:
        await service.create_appointment(make_request(start_time=at(9)))
    assert exc.value.rule_code == "START_TIME_IN_PAST"

    appt = await service.create_appointment(make_request(start_time=at(10)))
    assert appt.start_time == at(10)


async def test_timezone_is_dropped_from_start(booking):
    appt = await booking.create_appointment(make_request(start_time=at(9).replace(tzinfo=timezone.utc)))
    assert appt.start_time == at(9)
    assert appt.start_time.tzinfo is None


# --- Participants ---


async def test_participants_are_booked(booking):
    appt = await booking.create_appointment(
        make_request(participants=[ParticipantRequest(employee_code="A001")])
    )
    assert [(p.employee.employee_code, p.role) for p in appt.participants] == [("A001", ParticipantRole.ASSISTANT.value)]


async def test_participant_validation(booking):
    cases = [
        ([ParticipantRequest(employee_code="X999")], NotFoundError, "PARTICIPANT_NOT_FOUND"),
        ([ParticipantRequest(employee_code="R001")], InvalidInputError, "PARTICIPANT_NOT_MEDICAL_STAFF"),
        ([ParticipantRequest(employee_code="D001")], InvalidInputError, "DUPLICATE_PARTICIPANT"),
        (
            [ParticipantRequest(employee_code="A001"), ParticipantRequest(employee_code="A001")],
            InvalidInputError,
            "DUPLICATE_PARTICIPANT",
        ),
        ([ParticipantRequest(employee_code="A002")], ConflictError, "EMPLOYEE_SHIFT_NOT_COVERING"),
    ]
    for participants, error, rule_code in cases:
        with pytest.raises(error) as exc:
            await booking.create_appointment(make_request(participants=participants))
        assert exc.value.rule_code == rule_code


async def test_participant_slot_taken(booking, session, clinic):
    # A001 is the treating doctor of a directly seeded appointment
    await add_appointment(session, clinic, at(9), 60, doctor_code="A001", patient_code="P002", room_code="ROOM2")

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(participants=[ParticipantRequest(employee_code="A001")]))
    assert exc.value.rule_code == "PARTICIPANT_SLOT_TAKEN"


# --- Day-based and clinical rules ---


async def test_holiday_blocks_booking(booking, session):
    session.add(Holiday(holiday_date=DAY, name="Clinic closed"))
    await session.commit()

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request())
    assert exc.value.rule_code == "DATE_IS_HOLIDAY"


async def test_daily_cap_blocks_booking(booking, session, clinic):
    clinic.services["XRAY"].max_appointments_per_day = 1
    await session.commit()

    await booking.create_appointment(make_request(start_time=at(8), service_codes=["XRAY"]))
    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(
            make_request(doctor_code="D002", patient_code="P002", room_code="ROOM2", start_time=at(14), service_codes=["XRAY"])
        )
    assert exc.value.rule_code == "MAX_APPOINTMENTS_PER_DAY_REACHED"


async def test_prerequisite_then_completion_unlocks(booking, session, clinic):
    await ClinicalRuleEngine(session).add_dependency(
        DependencyRequest(service_code="IMPLANT", dependent_service_code="XRAY",
                          rule_type=DependencyRuleType.REQUIRES_PREREQUISITE)
    )
    await session.commit()

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(service_codes=["IMPLANT"]))
    assert exc.value.rule_code == "CLINICAL_RULE_PREREQUISITE_NOT_MET"

    xray = await booking.create_appointment(make_request(start_time=at(8), service_codes=["XRAY"]))
    await booking.check_in(xray.appointment_code)
    await booking.start(xray.appointment_code)
    await booking.complete(xray.appointment_code)

    implant = await booking.create_appointment(make_request(start_time=at(9), service_codes=["IMPLANT"]))
    assert implant.status == AppointmentStatus.SCHEDULED.value


async def test_exclusion_split_across_days(booking, session, clinic):
    await ClinicalRuleEngine(session).add_dependency(
        DependencyRequest(service_code="WHITEN", dependent_service_code="EXTRACT",
                          rule_type=DependencyRuleType.EXCLUDES_SAME_DAY)
    )
    next_day = DAY + timedelta(days=1)
    session.add(EmployeeShift(employee_id=clinic.employees["D001"].id,
                              work_shift_id=clinic.shifts["MORNING"].id, work_date=next_day))
    await session.commit()

    with pytest.raises(ConflictError) as exc:
        await booking.create_appointment(make_request(service_codes=["WHITEN", "EXTRACT"]))
    assert exc.value.rule_code == "CLINICAL_RULE_EXCLUSION_VIOLATED"

    await booking.create_appointment(make_request(service_codes=["WHITEN"]))
    extract = await booking.create_appointment(make_request(start_time=at(9, day=next_day), service_codes=["EXTRACT"]))
    assert extract.appointment_code == "APT-20251111-001"


# --- Delay ---


async def test_delay_moves_in_place(booking, session):
    appt = await booking.create_appointment(make_request(start_time=at(9)))

    delayed = await booking.delay(appt.appointment_code, at(10, 30), reason_code="DOCTOR_LATE", performed_by="desk")
    assert delayed.id == appt.id
    assert (delayed.start_time, delayed.end_time) == (at(10, 30), at(11, 10))
    assert delayed.reason_code == "DOCTOR_LATE"

    # The old interval is free again
    other = await booking.create_appointment(make_request(start_time=at(9), patient_code="P002", room_code="ROOM2"))
    assert other.start_time == at(9)

    actions = (await session.execute(select(AuditLog.action).where(AuditLog.resource_id == appt.appointment_code))).scalars().all()
    assert sorted(actions) == ["create", "delay"]


async def test_delay_overlapping_itself_is_allowed(booking):
    appt = await booking.create_appointment(make_request(start_time=at(9)))
    delayed = await booking.delay(appt.appointment_code, at(9, 15))
    assert delayed.end_time == at(9, 55)


async def test_delay_rules(booking):
    appt = await booking.create_appointment(make_request(start_time=at(9)))
    await booking.create_appointment(make_request(start_time=at(10), patient_code="P002", room_code="ROOM2"))

    with pytest.raises(InvalidInputError) as exc:
        await booking.delay(appt.appointment_code, at(8, 30))
    assert exc.value.rule_code == "NEW_START_NOT_LATER"

    with pytest.raises(ConflictError) as exc:
        await booking.delay(appt.appointment_code, at(9, 40))
    assert exc.value.rule_code == "EMPLOYEE_SLOT_TAKEN"

    await booking.check_in(appt.appointment_code)
    with pytest.raises(InvalidStateError) as exc:
        await booking.delay(appt.appointment_code, at(11))
    assert exc.value.rule_code == "APPOINTMENT_NOT_DELAYABLE"


# --- Reschedule ---


async def test_reschedule_links_and_frees_old_slot(booking, session):
    old = await booking.create_appointment(
        make_request(start_time=at(8), participants=[ParticipantRequest(employee_code="A001")])
    )

    prev, new = await booking.reschedule(
        old.appointment_code, RescheduleRequest(new_start_time=at(10), reason_code="PATIENT_REQUEST")
    )
    assert new.appointment_code == "APT-20251110-002"
    assert new.start_time == at(10)
    assert [p.employee.employee_code for p in new.participants] == ["A001"]
    assert [line.service.service_code for line in new.services] == ["CLEAN"]

    stored = await booking.get_appointment(old.appointment_code)
    assert stored.status == AppointmentStatus.CANCELLED.value
    assert stored.reason_code == "RESCHEDULED"
    assert stored.rescheduled_to_appointment_id == new.id
    assert prev.id == stored.id

    again = await booking.create_appointment(make_request(start_time=at(8), patient_code="P002", room_code="ROOM2"))
    assert again.start_time == at(8)


async def test_reschedule_may_overlap_its_own_slot(booking):
    old = await booking.create_appointment(make_request(start_time=at(9)))
    _prev, new = await booking.reschedule(old.appointment_code, RescheduleRequest(new_start_time=at(9, 20)))
    assert new.start_time == at(9, 20)


async def test_reschedule_failure_keeps_old(booking):
    old = await booking.create_appointment(make_request(start_time=at(8)))
    await booking.create_appointment(make_request(start_time=at(10), patient_code="P002", room_code="ROOM2"))

    with pytest.raises(ConflictError):
        await booking.reschedule(old.appointment_code, RescheduleRequest(new_start_time=at(10, 15)))

    stored = await booking.get_appointment(old.appointment_code)
    assert stored.status == AppointmentStatus.SCHEDULED.value
    assert stored.rescheduled_to_appointment_id is None


async def test_reschedule_requires_open_status(booking):
    appt = await booking.create_appointment(make_request(start_time=at(8)))
    await booking.cancel(appt.appointment_code, reason_code="PATIENT_REQUEST")

    with pytest.raises(InvalidStateError) as exc:
        await booking.reschedule(appt.appointment_code, RescheduleRequest(new_start_time=at(10)))
    assert exc.value.rule_code == "APPOINTMENT_NOT_RESCHEDULABLE"


async def test_reschedule_unknown_appointment(booking):
    with pytest.raises(NotFoundError) as exc:
        await booking.reschedule("APT-19990101-001", RescheduleRequest(new_start_time=at(10)))
    assert exc.value.rule_code == "APPOINTMENT_NOT_FOUND"


# --- Status transitions ---


async def test_full_lifecycle_stamps_actual_times(booking):
    appt = await booking.create_appointment(make_request())
    await booking.check_in(appt.appointment_code)
    started = await booking.start(appt.appointment_code)
    assert started.actual_start_time is not None
    done = await booking.complete(appt.appointment_code, notes="No complications")
    assert done.status == AppointmentStatus.COMPLETED.value
    assert done.actual_end_time is not None
    assert done.notes == "No complications"


async def test_invalid_transitions(booking):
    appt = await booking.create_appointment(make_request())

    with pytest.raises(InvalidStateError) as exc:
        await booking.complete(appt.appointment_code)
    assert exc.value.rule_code == "INVALID_STATUS_TRANSITION"

    await booking.mark_no_show(appt.appointment_code)
    with pytest.raises(InvalidStateError):
        await booking.check_in(appt.appointment_code)


async def test_cancel_requires_reason_and_frees_slot(booking):
    appt = await booking.create_appointment(make_request())

    with pytest.raises(InvalidInputError) as exc:
        await booking.update_status(appt.appointment_code, AppointmentStatus.CANCELLED)
    assert exc.value.rule_code == "REASON_CODE_REQUIRED"

    cancelled = await booking.cancel(appt.appointment_code, reason_code="PATIENT_SICK")
    assert cancelled.reason_code == "PATIENT_SICK"

    replacement = await booking.create_appointment(make_request(patient_code="P002"))
    assert replacement.start_time == appt.start_time


async def test_list_appointments_filters(booking):
    await booking.create_appointment(make_request(start_time=at(8)))
    second = await booking.create_appointment(make_request(start_time=at(10), patient_code="P002", room_code="ROOM2"))
    await booking.cancel(second.appointment_code, reason_code="PATIENT_REQUEST")

    assert len(await booking.list_appointments(day=DAY)) == 2
    assert [a.appointment_code for a in await booking.list_appointments(patient_code="P002")] == [second.appointment_code]
    assert len(await booking.list_appointments(status=AppointmentStatus.SCHEDULED)) == 1
    assert await booking.list_appointments(day=date(2025, 11, 11)) == []

    with pytest.raises(NotFoundError):
        await booking.list_appointments(doctor_code="D999")


# --- Treatment plan items ---


async def test_booking_from_plan_items(booking, session, clinic):
    item = PlanItem(patient_id=clinic.patients["P001"].id, service_id=clinic.services["XRAY"].id,
                    item_name="Pre-implant X-ray", sequence_number=1)
    session.add(item)
    await session.commit()

    appt = await booking.create_appointment(make_request(service_codes=[], plan_item_ids=[item.id]))
    assert [line.service.service_code for line in appt.services] == ["XRAY"]
    assert item.status == PlanItemStatus.SCHEDULED.value

    with pytest.raises(InvalidStateError) as exc:
        await booking.create_appointment(make_request(start_time=at(10), service_codes=[], plan_item_ids=[item.id]))
    assert exc.value.rule_code == "PLAN_ITEM_NOT_READY"

    await booking.cancel(appt.appointment_code, reason_code="PATIENT_REQUEST")
    assert item.status == PlanItemStatus.READY_FOR_BOOKING.value


async def test_plan_items_follow_reschedule_and_completion(booking, session, clinic):
    item = PlanItem(patient_id=clinic.patients["P001"].id, service_id=clinic.services["CLEAN"].id, item_name="Cleaning")
    session.add(item)
    await session.commit()

    appt = await booking.create_appointment(make_request(start_time=at(8), service_codes=[], plan_item_ids=[item.id]))
    _old, new = await booking.reschedule(appt.appointment_code, RescheduleRequest(new_start_time=at(10)))
    assert item.status == PlanItemStatus.SCHEDULED.value

    await booking.check_in(new.appointment_code)
    await booking.start(new.appointment_code)
    assert item.status == PlanItemStatus.IN_PROGRESS.value
    await booking.complete(new.appointment_code)
    assert item.status == PlanItemStatus.COMPLETED.value


async def test_plan_item_of_other_patient_rejected(booking, session, clinic):
    item = PlanItem(patient_id=clinic.patients["P002"].id, service_id=clinic.services["CLEAN"].id, item_name="Cleaning")
    session.add(item)
    await session.commit()

    with pytest.raises(InvalidInputError) as exc:
        await booking.create_appointment(make_request(plan_item_ids=[item.id]))
    assert exc.value.rule_code == "PLAN_ITEM_PATIENT_MISMATCH"


# --- Concurrency ---


@pytest_asyncio.fixture
async def file_factory(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}", echo=False)
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(eng, class_=AsyncSession, expire_on_commit=False)
    async with factory() as sess:
        await seed_clinic(sess)
    yield factory
    await eng.dispose()


async def test_concurrent_bookings_cannot_share_a_doctor(file_factory, settings):
    locks = ResourceLockRegistry()

    async def book(patient_code: str, room_code: str) -> Appointment:
        async with file_factory() as sess:
            service = BookingService(sess, settings=settings, locks=locks)
            return await service.create_appointment(make_request(patient_code=patient_code, room_code=room_code))

    results = await asyncio.gather(book("P001", "ROOM1"), book("P002", "ROOM2"), return_exceptions=True)
    booked = [r for r in results if isinstance(r, Appointment)]
    failed = [r for r in results if isinstance(r, BookingError)]

    assert len(booked) == 1
    assert len(failed) == 1
    assert failed[0].rule_code == "EMPLOYEE_SLOT_TAKEN"

    async with file_factory() as sess:
        assert await count_appointments(sess) == 1


async def test_concurrent_bookings_get_distinct_codes(file_factory, settings):
    locks = ResourceLockRegistry()

    async def book(patient_code: str, room_code: str, start: datetime) -> Appointment:
        async with file_factory() as sess:
            service = BookingService(sess, settings=settings, locks=locks)
            return await service.create_appointment(
                make_request(patient_code=patient_code, room_code=room_code, start_time=start)
            )

    first, second = await asyncio.gather(book("P001", "ROOM1", at(8)), book("P002", "ROOM2", at(10)))
    assert {first.appointment_code, second.appointment_code} == {"APT-20251110-001", "APT-20251110-002"}
