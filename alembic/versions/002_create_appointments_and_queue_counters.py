"""Create appointments and queue counters.

Revision ID: 002
Revises: 001
Create Date: 2026-10-05 09:30:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create appointments and queue_counters tables."""
    op.create_table(
        "appointments",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("patient_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("doctor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("schedule_slot_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("department_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("room_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("appointment_date", sa.Date(), nullable=False),
        sa.Column("appointment_time", sa.Time(), nullable=False),
        sa.Column("symptoms", sa.Text(), nullable=True),
        sa.Column("queue_number", sa.Integer(), nullable=False),
        sa.Column("call_order", sa.Integer(), nullable=True),
        sa.Column("status", sa.Text(), server_default="WAITING", nullable=False),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column("called_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("started_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("finished_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("cancelled_at", postgresql.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(
            ["schedule_slot_id"], ["schedule_slots.id"], ondelete="RESTRICT"
        ),
        sa.CheckConstraint(
            "status IN ('WAITING', 'CALLED', 'IN_PROGRESS', 'DONE', 'CANCELLED', 'SKIPPED')",
            name="appointments_status_check",
        ),
        sa.CheckConstraint("queue_number >= 1", name="appointments_queue_number_check"),
        sa.UniqueConstraint(
            "doctor_id",
            "appointment_date",
            "queue_number",
            name="uq_appointments_doctor_date_queue_number",
        ),
    )

    op.create_index("ix_appointments_patient_id", "appointments", ["patient_id"])
    op.create_index("ix_appointments_schedule_slot_id", "appointments", ["schedule_slot_id"])
    op.create_index("ix_appointments_department_id", "appointments", ["department_id"])
    op.create_index(
        "idx_appointments_doctor_date_queue",
        "appointments",
        ["doctor_id", "appointment_date", "queue_number"],
    )

    # At most one examination in progress per doctor and day
    op.create_index(
        "uq_appointments_single_in_progress",
        "appointments",
        ["doctor_id", "appointment_date"],
        unique=True,
        postgresql_where=sa.text("status = 'IN_PROGRESS'"),
    )

    op.create_table(
        "queue_counters",
        sa.Column("doctor_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("queue_date", sa.Date(), nullable=False),
        sa.Column("last_queue_number", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_call_order", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_event_seq", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.PrimaryKeyConstraint("doctor_id", "queue_date"),
    )


def downgrade() -> None:
    """Drop queue_counters and appointments tables."""
    op.drop_table("queue_counters")
    op.drop_index("uq_appointments_single_in_progress", table_name="appointments")
    op.drop_index("idx_appointments_doctor_date_queue", table_name="appointments")
    op.drop_index("ix_appointments_department_id", table_name="appointments")
    op.drop_index("ix_appointments_schedule_slot_id", table_name="appointments")
    op.drop_index("ix_appointments_patient_id", table_name="appointments")
    op.drop_table("appointments")
