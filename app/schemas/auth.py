"""Actor identity decoded from the bearer credential."""

from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class ActorRole(str, Enum):
    """Roles known to the queue engine."""

    PATIENT = "patient"
    DOCTOR = "doctor"
    STAFF = "staff"
    ADMIN = "admin"


STAFF_ROLES = frozenset({ActorRole.DOCTOR, ActorRole.STAFF, ActorRole.ADMIN})


class Actor(BaseModel):
    """Who is performing an action."""

    id: UUID
    role: ActorRole

    @property
    def is_staff(self) -> bool:
        """Doctors, staff and admins advance the queue."""
        return self.role in STAFF_ROLES

    @property
    def is_patient(self) -> bool:
        """Check if the actor is a patient."""
        return self.role == ActorRole.PATIENT
