"""Pydantic models for the booking engine."""

from __future__ import annotations

import uuid
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dental_booking.core.models import (
    AppointmentStatus,
    DependencyRuleType,
    ParticipantRole,
)


class ResourceKind(str, Enum):
    """Resources an appointment occupies."""

    DOCTOR = "DOCTOR"
    ROOM = "ROOM"
    PARTICIPANT = "PARTICIPANT"
    PATIENT = "PATIENT"


class Interval(BaseModel):
    """Half-open time range ``[start, end)``."""

    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "Interval":
        if self.end <= self.start:
            raise ValueError(f"interval end {self.end} must be after start {self.start}")
        return self

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> "Interval":
        return cls(start=start, end=start + timedelta(minutes=minutes))

    @classmethod
    def on_day(cls, day: date, start: time, end: time) -> "Interval":
        return cls(start=datetime.combine(day, start), end=datetime.combine(day, end))

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    def overlaps(self, other: "Interval") -> bool:
        # Touching endpoints do not overlap
        return self.start < other.end and other.start < self.end

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


class TimeSlot(BaseModel):
    """A free gap in which an appointment of the requested length fits."""

    start_time: datetime
    end_time: datetime
    duration_minutes: int
    suggested: bool = False


class ShiftWindow(BaseModel):
    shift_code: str
    start_time: time
    end_time: time


class AvailableDoctor(BaseModel):
    employee_code: str
    full_name: str
    specializations: list[str] = []
    shifts: list[ShiftWindow] = []


class DoctorAvailability(BaseModel):
    date: date
    service_codes: list[str]
    doctors: list[AvailableDoctor] = []
    message: Optional[str] = None


class SlotAvailability(BaseModel):
    date: date
    doctor_code: str
    duration_minutes: int
    slots: list[TimeSlot] = []
    message: Optional[str] = None


class RoomOption(BaseModel):
    room_code: str
    room_name: str


class AssistantOption(BaseModel):
    employee_code: str
    full_name: str


class AvailableResources(BaseModel):
    """Rooms and assistants free over one interval."""

    start_time: datetime
    end_time: datetime
    service_codes: list[str]
    rooms: list[RoomOption] = []
    assistants: list[AssistantOption] = []
    message: Optional[str] = None


class RuleViolation(BaseModel):
    """Structured reason a booking was rejected."""

    rule_code: str
    message: str
    details: dict[str, Any] = {}


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------


def _naive(value: datetime) -> datetime:
    # Clinic times are local wall-clock times
    return value.replace(tzinfo=None)


class ParticipantRequest(BaseModel):
    employee_code: str
    role: ParticipantRole = ParticipantRole.ASSISTANT


class AppointmentCreateRequest(BaseModel):
    """Book a doctor, room and optional participants for a set of services.

    Services come either from ``service_codes`` or from treatment-plan items
    (``plan_item_ids``); at least one of the two must be non-empty.
    """

    patient_code: str
    doctor_code: str
    room_code: str
    start_time: datetime
    service_codes: list[str] = []
    plan_item_ids: list[uuid.UUID] = []
    participants: list[ParticipantRequest] = []
    notes: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator("start_time")
    @classmethod
    def naive_start_time(cls, value: datetime) -> datetime:
        return _naive(value)


class DelayRequest(BaseModel):
    new_start_time: datetime
    reason_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("new_start_time")
    @classmethod
    def naive_start_time(cls, value: datetime) -> datetime:
        return _naive(value)


class RescheduleRequest(BaseModel):
    """Move an appointment to a new slot; omitted fields keep the old values."""

    new_start_time: datetime
    doctor_code: Optional[str] = None
    room_code: Optional[str] = None
    participants: Optional[list[ParticipantRequest]] = None
    service_codes: Optional[list[str]] = None
    reason_code: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("new_start_time")
    @classmethod
    def naive_start_time(cls, value: datetime) -> datetime:
        return _naive(value)


class StatusUpdateRequest(BaseModel):
    status: AppointmentStatus
    reason_code: Optional[str] = None
    notes: Optional[str] = None


class DependencyRequest(BaseModel):
    service_code: str
    dependent_service_code: str
    rule_type: DependencyRuleType
    min_days_apart: Optional[int] = Field(default=None, ge=1)
    receptionist_note: Optional[str] = None


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------


class ServiceSummary(BaseModel):
    service_code: str
    service_name: str


class AppointmentServiceLine(BaseModel):
    service_code: str
    service_name: str
    price: float
    duration_minutes: int
    buffer_minutes: int


class ParticipantLine(BaseModel):
    employee_code: str
    full_name: str
    role: str


class AppointmentResponse(BaseModel):
    id: str
    appointment_code: str
    status: AppointmentStatus
    patient_code: str
    doctor_code: str
    room_code: str
    start_time: datetime
    end_time: datetime
    expected_duration_minutes: int
    services: list[AppointmentServiceLine] = []
    participants: list[ParticipantLine] = []
    rescheduled_to_appointment_id: Optional[str] = None
    reason_code: Optional[str] = None
    notes: Optional[str] = None
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None


class DependencyResponse(BaseModel):
    service_code: str
    dependent_service_code: str
    rule_type: DependencyRuleType
    min_days_apart: Optional[int] = None
    receptionist_note: Optional[str] = None


class RescheduleResponse(BaseModel):
    old_appointment: AppointmentResponse
    new_appointment: AppointmentResponse
