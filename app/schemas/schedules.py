"""Schedule slot schemas."""

from datetime import date, time
from uuid import UUID

from pydantic import BaseModel


class ScheduleSlotResponse(BaseModel):
    """Schedule slot with its capacity ledger."""

    id: UUID
    doctor_id: UUID
    work_date: date
    start_time: time
    end_time: time
    max_patients: int
    booked_count: int
    is_active: bool
    remaining: int
    is_full: bool

    model_config = {"from_attributes": True}

    @classmethod
    def from_row(cls, row: dict) -> "ScheduleSlotResponse":
        """Build a response from a schedule_slots row mapping."""
        remaining = max(row["max_patients"] - row["booked_count"], 0)
        return cls(
            id=row["id"],
            doctor_id=row["doctor_id"],
            work_date=row["work_date"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            max_patients=row["max_patients"],
            booked_count=row["booked_count"],
            is_active=row["is_active"],
            remaining=remaining,
            is_full=remaining == 0,
        )
