"""Schedule slots table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Table,
    Time,
    Uuid,
    func,
    text,
)

from app.models.base import metadata

# Bookable time windows; created by scheduling administration
schedule_slots = Table(
    "schedule_slots",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("doctor_id", Uuid, nullable=False),
    Column("work_date", Date, nullable=False),
    Column("start_time", Time, nullable=False),
    Column("end_time", Time, nullable=False),
    # Capacity ledger
    Column("max_patients", Integer, nullable=False),
    Column("booked_count", Integer, nullable=False, server_default=text("0")),
    Column("is_active", Boolean, nullable=False, server_default=text("true")),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    CheckConstraint("max_patients >= 1", name="schedule_slots_max_patients_check"),
    CheckConstraint(
        "booked_count >= 0 AND booked_count <= max_patients",
        name="schedule_slots_booked_count_check",
    ),
    CheckConstraint("end_time > start_time", name="schedule_slots_time_window_check"),
)

Index("idx_schedule_slots_doctor_date", schedule_slots.c.doctor_id, schedule_slots.c.work_date)
