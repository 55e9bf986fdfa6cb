"""Per doctor and day sequences for queue numbers, call order and queue version."""

from sqlalchemy import Column, Date, Integer, Table, Uuid, text

from app.models.base import metadata

queue_counters = Table(
    "queue_counters",
    metadata,
    Column("doctor_id", Uuid, primary_key=True),
    Column("queue_date", Date, primary_key=True),
    Column("last_queue_number", Integer, nullable=False, server_default=text("0")),
    Column("last_call_order", Integer, nullable=False, server_default=text("0")),
    # Bumped by every committed change to the queue; orders snapshots
    Column("last_event_seq", Integer, nullable=False, server_default=text("0")),
)
