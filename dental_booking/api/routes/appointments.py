"""Appointment booking endpoints."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query

from dental_booking.api.dependencies import get_booking_service, get_performer
from dental_booking.core.models import Appointment, AppointmentStatus
from dental_booking.scheduling.booking import BookingService
from dental_booking.scheduling.models import (
    AppointmentCreateRequest,
    AppointmentResponse,
    AppointmentServiceLine,
    DelayRequest,
    ParticipantLine,
    RescheduleRequest,
    RescheduleResponse,
    StatusUpdateRequest,
)

router = APIRouter(prefix="/appointments")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _appt_to_response(appt: Appointment) -> AppointmentResponse:
    return AppointmentResponse(
        id=str(appt.id),
        appointment_code=appt.appointment_code,
        status=AppointmentStatus(appt.status),
        patient_code=appt.patient.patient_code,
        doctor_code=appt.doctor.employee_code,
        room_code=appt.room.room_code,
        start_time=appt.start_time,
        end_time=appt.end_time,
        expected_duration_minutes=appt.expected_duration_minutes,
        services=[
            AppointmentServiceLine(
                service_code=line.service.service_code,
                service_name=line.service.service_name,
                price=float(line.price_snapshot or 0),
                duration_minutes=line.duration_snapshot,
                buffer_minutes=line.buffer_snapshot,
            )
            for line in appt.services
        ],
        participants=[
            ParticipantLine(
                employee_code=p.employee.employee_code,
                full_name=p.employee.full_name,
                role=p.role,
            )
            for p in appt.participants
        ],
        rescheduled_to_appointment_id=(
            str(appt.rescheduled_to_appointment_id) if appt.rescheduled_to_appointment_id else None
        ),
        reason_code=appt.reason_code,
        notes=appt.notes,
        actual_start_time=appt.actual_start_time,
        actual_end_time=appt.actual_end_time,
    )


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

@router.post("", response_model=AppointmentResponse, status_code=201)
async def create_appointment(
    body: AppointmentCreateRequest,
    performer: Optional[str] = Depends(get_performer),
    service: BookingService = Depends(get_booking_service),
) -> AppointmentResponse:
    """Book an appointment after every availability and rule check passes."""
    if performer and not body.created_by:
        body = body.model_copy(update={"created_by": performer})
    appt = await service.create_appointment(body)
    return _appt_to_response(appt)


@router.get("", response_model=list[AppointmentResponse])
async def list_appointments(
    day: Optional[date] = Query(None, alias="date"),
    doctor_code: Optional[str] = None,
    patient_code: Optional[str] = None,
    status: Optional[AppointmentStatus] = None,
    offset: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    service: BookingService = Depends(get_booking_service),
) -> list[AppointmentResponse]:
    appts = await service.list_appointments(
        day=day, doctor_code=doctor_code, patient_code=patient_code,
        status=status, offset=offset, limit=limit,
    )
    return [_appt_to_response(a) for a in appts]


@router.get("/{appointment_code}", response_model=AppointmentResponse)
async def get_appointment(
    appointment_code: str,
    service: BookingService = Depends(get_booking_service),
) -> AppointmentResponse:
    return _appt_to_response(await service.get_appointment(appointment_code))


# ---------------------------------------------------------------------------
# Changes
# ---------------------------------------------------------------------------

@router.patch("/{appointment_code}/delay", response_model=AppointmentResponse)
async def delay_appointment(
    appointment_code: str,
    body: DelayRequest,
    performer: Optional[str] = Depends(get_performer),
    service: BookingService = Depends(get_booking_service),
) -> AppointmentResponse:
    """Push a SCHEDULED appointment later, keeping its length."""
    appt = await service.delay(
        appointment_code, body.new_start_time, body.reason_code, body.notes, performed_by=performer
    )
    return _appt_to_response(appt)


@router.post("/{appointment_code}/reschedule", response_model=RescheduleResponse)
async def reschedule_appointment(
    appointment_code: str,
    body: RescheduleRequest,
    performer: Optional[str] = Depends(get_performer),
    service: BookingService = Depends(get_booking_service),
) -> RescheduleResponse:
    old, new = await service.reschedule(appointment_code, body, performed_by=performer)
    return RescheduleResponse(
        old_appointment=_appt_to_response(old),
        new_appointment=_appt_to_response(new),
    )


@router.patch("/{appointment_code}/status", response_model=AppointmentResponse)
async def update_status(
    appointment_code: str,
    body: StatusUpdateRequest,
    performer: Optional[str] = Depends(get_performer),
    service: BookingService = Depends(get_booking_service),
) -> AppointmentResponse:
    """Check in, start, complete, cancel or mark a no-show."""
    appt = await service.update_status(
        appointment_code, body.status, body.reason_code, body.notes, performed_by=performer
    )
    return _appt_to_response(appt)
