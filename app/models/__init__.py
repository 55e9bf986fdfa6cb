"""Database models."""

from app.models.appointment_events import appointment_events
from app.models.appointments import appointments
from app.models.base import metadata
from app.models.doctors import doctors
from app.models.queue_counters import queue_counters
from app.models.schedule_slots import schedule_slots

__all__ = [
    "appointment_events",
    "appointments",
    "doctors",
    "metadata",
    "queue_counters",
    "schedule_slots",
]
