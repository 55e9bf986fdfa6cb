"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    Time,
    UniqueConstraint,
    Uuid,
    func,
    text,
)

from app.models.base import metadata

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    # References (owned by other services)
    Column("patient_id", Uuid, nullable=False, index=True),
    Column("doctor_id", Uuid, nullable=False),
    Column(
        "schedule_slot_id",
        Uuid,
        ForeignKey("schedule_slots.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    Column("department_id", Uuid, nullable=False, index=True),
    Column("room_id", Uuid, nullable=True),
    # Visit details
    Column("appointment_date", Date, nullable=False),
    Column("appointment_time", Time, nullable=False),
    Column("symptoms", Text, nullable=True),
    # Queue position
    Column("queue_number", Integer, nullable=False),
    Column("call_order", Integer, nullable=True),
    # Status management
    Column("status", Text, nullable=False, server_default="WAITING"),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("called_at", DateTime(timezone=True), nullable=True),
    Column("started_at", DateTime(timezone=True), nullable=True),
    Column("finished_at", DateTime(timezone=True), nullable=True),
    Column("cancelled_at", DateTime(timezone=True), nullable=True),
    # Constraints
    CheckConstraint(
        "status IN ('WAITING', 'CALLED', 'IN_PROGRESS', 'DONE', 'CANCELLED', 'SKIPPED')",
        name="appointments_status_check",
    ),
    CheckConstraint("queue_number >= 1", name="appointments_queue_number_check"),
    UniqueConstraint(
        "doctor_id",
        "appointment_date",
        "queue_number",
        name="uq_appointments_doctor_date_queue_number",
    ),
)

# Ordered retrieval of one doctor's queue for one day
Index(
    "idx_appointments_doctor_date_queue",
    appointments.c.doctor_id,
    appointments.c.appointment_date,
    appointments.c.queue_number,
)

# At most one examination in progress per doctor and day
Index(
    "uq_appointments_single_in_progress",
    appointments.c.doctor_id,
    appointments.c.appointment_date,
    unique=True,
    postgresql_where=text("status = 'IN_PROGRESS'"),
    sqlite_where=text("status = 'IN_PROGRESS'"),
)
