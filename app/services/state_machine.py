"""Appointment status transition rules."""

from dataclasses import dataclass

from app.core.exceptions import InvalidTransitionException
from app.schemas.appointments import AppointmentAction, AppointmentStatus

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.WAITING: frozenset({S.CALLED, S.CANCELLED}),
    S.CALLED: frozenset({S.IN_PROGRESS, S.SKIPPED}),
    S.IN_PROGRESS: frozenset({S.DONE}),
    S.SKIPPED: frozenset({S.CALLED}),
    S.DONE: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, targets in ALLOWED_TRANSITIONS.items() if not targets)


@dataclass(frozen=True)
class Transition:
    """An action bound to its only legal source and target status."""

    action: AppointmentAction
    source: AppointmentStatus
    target: AppointmentStatus
    # Timestamp column stamped when the transition is applied
    timestamp_column: str | None = None


TRANSITIONS: dict[AppointmentAction, Transition] = {
    AppointmentAction.CALL: Transition(AppointmentAction.CALL, S.WAITING, S.CALLED, "called_at"),
    AppointmentAction.START: Transition(
        AppointmentAction.START, S.CALLED, S.IN_PROGRESS, "started_at"
    ),
    AppointmentAction.FINISH: Transition(
        AppointmentAction.FINISH, S.IN_PROGRESS, S.DONE, "finished_at"
    ),
    AppointmentAction.SKIP: Transition(AppointmentAction.SKIP, S.CALLED, S.SKIPPED),
    AppointmentAction.RECALL: Transition(
        AppointmentAction.RECALL, S.SKIPPED, S.CALLED, "called_at"
    ),
    AppointmentAction.CANCEL: Transition(
        AppointmentAction.CANCEL, S.WAITING, S.CANCELLED, "cancelled_at"
    ),
}


def can_transition(current: AppointmentStatus, target: AppointmentStatus) -> bool:
    """Check the transition table."""
    return target in ALLOWED_TRANSITIONS[current]


def resolve(action: AppointmentAction, current: AppointmentStatus) -> Transition:
    """
    Validate ``action`` against the appointment's current status.

    Raises:
        InvalidTransitionException: If the action is illegal from ``current``
    """
    transition = TRANSITIONS[action]
    if current != transition.source or not can_transition(current, transition.target):
        raise InvalidTransitionException(
            f"Cannot {action.value} an appointment in status {current.value}"
        )
    return transition
