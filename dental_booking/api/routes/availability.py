"""Availability endpoints: doctors, free slots, rooms and assistants."""

from datetime import date, datetime

from fastapi import APIRouter, Depends, Query

from dental_booking.api.dependencies import get_availability
from dental_booking.scheduling.availability import AvailabilityResolver
from dental_booking.scheduling.models import AvailableResources, DoctorAvailability, SlotAvailability

router = APIRouter(prefix="/availability")


@router.get("/doctors", response_model=DoctorAvailability)
async def available_doctors(
    date: date = Query(...),
    service_codes: list[str] = Query(...),
    resolver: AvailabilityResolver = Depends(get_availability),
) -> DoctorAvailability:
    """Doctors qualified for every service who work on *date*."""
    return await resolver.resolve_doctors(date, service_codes)


@router.get("/slots", response_model=SlotAvailability)
async def available_slots(
    date: date = Query(...),
    doctor_code: str = Query(...),
    duration_minutes: int = Query(..., ge=1),
    resolver: AvailabilityResolver = Depends(get_availability),
) -> SlotAvailability:
    return await resolver.resolve_slots(date, doctor_code, duration_minutes)


@router.get("/resources", response_model=AvailableResources)
async def available_resources(
    start: datetime = Query(...),
    end: datetime = Query(...),
    service_codes: list[str] = Query(...),
    resolver: AvailabilityResolver = Depends(get_availability),
) -> AvailableResources:
    """Compatible free rooms and free assistants for ``[start, end)``."""
    return await resolver.resolve_resources(
        start.replace(tzinfo=None), end.replace(tzinfo=None), service_codes
    )
