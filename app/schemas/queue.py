"""Queue snapshot and queue action schemas."""

from datetime import date, datetime, time
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from app.schemas.appointments import AppointmentStatus


class QueueEntry(BaseModel):
    """One appointment as seen in a queue snapshot."""

    appointment_id: UUID
    patient_id: UUID
    queue_number: int
    appointment_time: time
    status: AppointmentStatus
    call_order: int | None = None


class QueueSnapshot(BaseModel):
    """
    Full derived view of one doctor's queue for one day.

    Clients locate their own appointment by ``appointment_id``; positions
    shift as the queue advances. ``version`` grows with every committed
    change, so a frame with a lower version than one already shown is stale.
    """

    doctor_id: UUID
    date: date
    version: int = 0
    current: QueueEntry | None = None
    next: QueueEntry | None = None
    in_progress: QueueEntry | None = None
    waiting_list: list[QueueEntry] = Field(default_factory=list)
    called_list: list[QueueEntry] = Field(default_factory=list)
    skipped_list: list[QueueEntry] = Field(default_factory=list)
    waiting_count: int = 0
    called_count: int = 0
    skipped_count: int = 0
    in_progress_count: int = 0
    done_count: int = 0
    cancelled_count: int = 0
    total: int = 0
    generated_at: datetime


class QueueKey(BaseModel):
    """Identifies a queue room."""

    doctor_id: UUID
    date: date


class QueueAppointmentAction(BaseModel):
    """Body of start/finish/recall actions."""

    appointment_id: UUID


class QueueSkipRequest(QueueAppointmentAction):
    """Body of the skip action; the reason is kept for audit."""

    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        """Reject whitespace-only reasons."""
        if not v.strip():
            raise ValueError("Reason must not be blank")
        return v.strip()


class QueueConsistencyReport(BaseModel):
    """Result of re-deriving a queue from the store."""

    doctor_id: UUID
    date: date
    consistent: bool
    violations: list[str] = Field(default_factory=list)
    highest_queue_number: int = 0
    counter_value: int = 0
