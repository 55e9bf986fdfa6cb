"""Appointment schemas for request/response validation."""

from datetime import date, datetime, time
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator


class AppointmentStatus(str, Enum):
    """Appointment status enumeration."""

    WAITING = "WAITING"
    CALLED = "CALLED"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    CANCELLED = "CANCELLED"
    SKIPPED = "SKIPPED"


class AppointmentAction(str, Enum):
    """Actions accepted by the status-change intake."""

    CALL = "call"
    START = "start"
    SKIP = "skip"
    FINISH = "finish"
    RECALL = "recall"
    CANCEL = "cancel"


class AppointmentCreate(BaseModel):
    """Schema for a booking request."""

    doctor_id: UUID
    schedule_slot_id: UUID
    appointment_date: date
    appointment_time: time
    # Staff book on behalf of a patient; patients always book for themselves
    patient_id: UUID | None = None
    symptoms: str | None = Field(None, max_length=1000)


class AppointmentCancel(BaseModel):
    """Schema for cancelling an appointment."""

    reason: str | None = Field(None, max_length=500)


class AppointmentStatusUpdate(BaseModel):
    """Schema for the generic status-change intake."""

    action: AppointmentAction
    reason: str | None = Field(None, max_length=500)

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str | None) -> str | None:
        """Treat blank reasons as missing."""
        if v is None:
            return None
        v = v.strip()
        return v or None


class AppointmentResponse(BaseModel):
    """Schema for appointment response."""

    id: UUID
    patient_id: UUID
    doctor_id: UUID
    schedule_slot_id: UUID
    department_id: UUID
    room_id: UUID | None = None
    appointment_date: date
    appointment_time: time
    queue_number: int
    call_order: int | None = None
    status: AppointmentStatus
    symptoms: str | None = None
    created_at: datetime
    updated_at: datetime
    called_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    cancelled_at: datetime | None = None

    model_config = {"from_attributes": True}


class AppointmentListResponse(BaseModel):
    """Schema for paginated appointment list response."""

    total: int
    page: int
    page_size: int
    items: list[AppointmentResponse]


class AppointmentFilters(BaseModel):
    """Schema for appointment filtering."""

    appointment_date: date | None = None
    status: AppointmentStatus | None = None
    doctor_id: UUID | None = None
    department_id: UUID | None = None
    room_id: UUID | None = None
    patient_id: UUID | None = None
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


class AppointmentEventResponse(BaseModel):
    """One entry of an appointment's audit trail."""

    id: UUID
    appointment_id: UUID
    action: str
    from_status: AppointmentStatus | None = None
    to_status: AppointmentStatus
    actor_id: UUID | None = None
    actor_role: str | None = None
    reason: str | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DailyStatsResponse(BaseModel):
    """Appointment counts per status for one day."""

    date: date
    doctor_id: UUID | None = None
    department_id: UUID | None = None
    room_id: UUID | None = None
    WAITING: int = 0
    CALLED: int = 0
    IN_PROGRESS: int = 0
    DONE: int = 0
    CANCELLED: int = 0
    SKIPPED: int = 0
    total: int = 0
