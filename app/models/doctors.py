"""Doctor reference table using SQLAlchemy Core.

Rows are maintained by the administration service; the queue engine only
reads them to resolve a booking's department and room and to check that a
doctor acts on their own queue.
"""

from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Table, Uuid, func, text

from app.models.base import metadata

doctors = Table(
    "doctors",
    metadata,
    Column("id", Uuid, primary_key=True, default=uuid4),
    Column("user_id", Uuid, nullable=False, unique=True, index=True),
    Column("department_id", Uuid, nullable=False, index=True),
    Column("room_id", Uuid, nullable=True),
    Column("is_active", Boolean, nullable=False, server_default=text("true"), index=True),
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
)
