"""Appointment status audit trail."""

from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Table, Text, Uuid, func

from app.models.base import metadata

# One row per booking and per applied transition
appointment_events = Table(
    "appointment_events",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column(
        "appointment_id",
        Uuid,
        ForeignKey("appointments.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    ),
    Column("action", Text, nullable=False),
    Column("from_status", Text, nullable=True),
    Column("to_status", Text, nullable=False),
    Column("actor_id", Uuid, nullable=True),
    Column("actor_role", Text, nullable=True),
    Column("reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
