"""Appointment service: booking and the visit lifecycle."""

from collections.abc import Awaitable, Callable
from datetime import UTC, date, datetime
from typing import Any, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    DoctorBusyException,
    ForbiddenException,
    InvalidSlotException,
    InvalidTransitionException,
    NotFoundException,
    QueueEmptyException,
    ValidationException,
)
from app.core.locks import KeyedLockRegistry, get_lock_registry, queue_lock_key, slot_lock_key
from app.core.retry import TransientStoreError, run_with_retry
from app.middleware.logging import bind_queue_context
from app.models.appointment_events import appointment_events
from app.models.appointments import appointments
from app.models.doctors import doctors
from app.schemas.appointments import (
    AppointmentAction,
    AppointmentCreate,
    AppointmentEventResponse,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
)
from app.schemas.auth import Actor, ActorRole
from app.schemas.queue import QueueConsistencyReport, QueueSnapshot
from app.services import state_machine
from app.services.broadcaster import QueueRoomBroadcaster
from app.services.queue_registry import QueueRegistry
from app.services.slot_ledger import SlotLedger

logger = structlog.get_logger()

T = TypeVar("T")


class AppointmentService:
    """
    Service for booking appointments and moving them through the queue.

    Every mutating operation is one unit of work: it takes the relevant
    keyed locks (slot before queue), validates against fresh rows, writes
    with compare-and-set updates, records an audit event and commits. On
    any error the transaction is rolled back and nothing is persisted.
    The room broadcast is scheduled only after a successful commit.
    """

    def __init__(
        self,
        db: AsyncSession,
        broadcaster: QueueRoomBroadcaster | None = None,
        locks: KeyedLockRegistry | None = None,
    ):
        """Initialize service with database session, broadcaster and locks."""
        self.db = db
        self.broadcaster = broadcaster
        self.locks = locks if locks is not None else get_lock_registry()
        self.ledger = SlotLedger(db)
        self.registry = QueueRegistry(db)

    # ------------------------------------------------------------------
    # Unit of work helpers
    # ------------------------------------------------------------------

    async def _run_unit(self, lock_keys: list[str], work: Callable[[], Awaitable[T]]) -> T:
        """Run ``work`` under locks in one transaction, retrying transient failures."""

        async def attempt() -> T:
            async with self.locks.hold(*lock_keys):
                try:
                    result = await work()
                    await self.db.commit()
                except BaseException:
                    await self.db.rollback()
                    raise
            return result

        return await run_with_retry(attempt)

    def _notify(self, doctor_id: UUID, queue_date: date) -> None:
        """Schedule a room update; failures never reach the caller."""
        if self.broadcaster is None:
            return
        try:
            self.broadcaster.notify(doctor_id, queue_date)
        except Exception as e:
            logger.warning("failed_to_schedule_broadcast", doctor_id=str(doctor_id), error=str(e))

    async def _get_row(self, appointment_id: UUID) -> dict[str, Any]:
        """Fetch an appointment row or raise NotFoundException."""
        result = await self.db.execute(select(appointments).where(appointments.c.id == appointment_id))
        row = result.mappings().first()
        if not row:
            raise NotFoundException("Appointment not found")
        return dict(row)

    async def _get_doctor(self, doctor_id: UUID) -> dict[str, Any]:
        """Fetch an active doctor or raise NotFoundException."""
        stmt = select(doctors).where(
            and_(doctors.c.id == doctor_id, doctors.c.is_active.is_(True))
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        if not row:
            raise NotFoundException("Doctor not found or inactive")
        return dict(row)

    async def _record_event(
        self,
        appointment_id: UUID,
        action: str,
        from_status: AppointmentStatus | None,
        to_status: AppointmentStatus,
        actor: Actor | None,
        reason: str | None = None,
    ) -> None:
        await self.db.execute(
            insert(appointment_events).values(
                appointment_id=appointment_id,
                action=action,
                from_status=from_status.value if from_status else None,
                to_status=to_status.value,
                actor_id=actor.id if actor else None,
                actor_role=actor.role.value if actor else None,
                reason=reason,
                created_at=datetime.now(UTC),
            )
        )

    # ------------------------------------------------------------------
    # Authorization ("this actor may act on this appointment")
    # ------------------------------------------------------------------

    async def _authorize_queue(self, actor: Actor, doctor_id: UUID) -> None:
        """Staff may act on any queue; a doctor only on their own."""
        if not actor.is_staff:
            raise ForbiddenException("Only clinical staff can manage the queue")

        if actor.role == ActorRole.DOCTOR:
            doctor = await self._get_doctor(doctor_id)
            if doctor["user_id"] != actor.id:
                raise ForbiddenException("Doctors can only manage their own queue")

    def _authorize_view(self, actor: Actor, row: dict[str, Any]) -> None:
        if actor.is_patient and row["patient_id"] != actor.id:
            raise ForbiddenException("Access denied to this appointment")

    # ------------------------------------------------------------------
    # Booking
    # ------------------------------------------------------------------

    async def book(self, actor: Actor, data: AppointmentCreate) -> AppointmentResponse:
        """
        Book a slot and admit the appointment into the doctor's queue.

        Args:
            actor: Patient booking for themselves, or staff booking for a patient
            data: Booking request

        Returns:
            Created appointment in status WAITING with its queue number

        Raises:
            NotFoundException: If the doctor is unknown or inactive
            InvalidSlotException: If the slot is unknown or does not match
            SlotClosedException: If the slot is inactive
            SlotFullException: If the slot has no capacity left
        """
        if actor.is_patient:
            if data.patient_id is not None and data.patient_id != actor.id:
                raise ForbiddenException("Patients can only book for themselves")
            patient_id = actor.id
        elif data.patient_id is None:
            raise ValidationException("patient_id is required when booking for a patient")
        else:
            patient_id = data.patient_id

        bind_queue_context(data.doctor_id, data.appointment_date)
        doctor = await self._get_doctor(data.doctor_id)

        async def work() -> dict[str, Any]:
            slot = await self.ledger.get_slot(data.schedule_slot_id)
            if slot is None:
                raise InvalidSlotException("Schedule slot not found")
            if slot["doctor_id"] != data.doctor_id:
                raise InvalidSlotException("Schedule slot does not belong to this doctor")
            if slot["work_date"] != data.appointment_date:
                raise InvalidSlotException("Appointment date does not match the schedule slot")
            if not slot["start_time"] <= data.appointment_time < slot["end_time"]:
                raise InvalidSlotException("Appointment time is outside the schedule slot")

            queue_number = await self.registry.next_queue_number(
                data.doctor_id, data.appointment_date
            )
            await self.registry.bump_version(data.doctor_id, data.appointment_date)
            await self.ledger.try_reserve(data.schedule_slot_id)

            now = datetime.now(UTC)
            stmt = (
                insert(appointments)
                .values(
                    patient_id=patient_id,
                    doctor_id=data.doctor_id,
                    schedule_slot_id=data.schedule_slot_id,
                    department_id=doctor["department_id"],
                    room_id=doctor["room_id"],
                    appointment_date=data.appointment_date,
                    appointment_time=data.appointment_time,
                    symptoms=data.symptoms,
                    queue_number=queue_number,
                    status=AppointmentStatus.WAITING.value,
                    created_at=now,
                    updated_at=now,
                )
                .returning(appointments)
            )
            try:
                result = await self.db.execute(stmt)
            except IntegrityError as e:
                # Another instance raced us to the same number; start over
                raise TransientStoreError(str(e.orig)) from e

            row = dict(result.mappings().one())
            await self._record_event(
                row["id"], "book", None, AppointmentStatus.WAITING, actor
            )
            return row

        row = await self._run_unit(
            [
                slot_lock_key(data.schedule_slot_id),
                queue_lock_key(data.doctor_id, data.appointment_date),
            ],
            work,
        )

        logger.info(
            "appointment_booked",
            appointment_id=str(row["id"]),
            doctor_id=str(row["doctor_id"]),
            date=row["appointment_date"].isoformat(),
            queue_number=row["queue_number"],
        )
        self._notify(row["doctor_id"], row["appointment_date"])
        return AppointmentResponse.model_validate(row)

    # ------------------------------------------------------------------
    # State machine operations
    # ------------------------------------------------------------------

    async def _apply(
        self,
        row: dict[str, Any],
        action: AppointmentAction,
        actor: Actor | None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """
        Validate and apply one transition to a freshly read row.

        Must run inside ``_run_unit`` holding the row's queue lock.
        """
        current = AppointmentStatus(row["status"])
        transition = state_machine.resolve(action, current)
        doctor_id, queue_date = row["doctor_id"], row["appointment_date"]
        now = datetime.now(UTC)
        values: dict[str, Any] = {"status": transition.target.value, "updated_at": now}

        if transition.timestamp_column:
            values[transition.timestamp_column] = now

        # The counter row is locked first in every unit, one lock order across instances
        await self.registry.bump_version(doctor_id, queue_date)

        if action == AppointmentAction.START:
            busy = await self.registry.find_in_progress(doctor_id, queue_date, exclude_id=row["id"])
            if busy is not None:
                raise DoctorBusyException(
                    f"Queue number {busy['queue_number']} is still in examination"
                )

        if action in (AppointmentAction.CALL, AppointmentAction.RECALL):
            values["call_order"] = await self.registry.next_call_order(doctor_id, queue_date)

        stmt = (
            update(appointments)
            .where(
                and_(
                    appointments.c.id == row["id"],
                    appointments.c.status == transition.source.value,
                )
            )
            .values(**values)
            .returning(appointments)
        )
        try:
            result = await self.db.execute(stmt)
        except IntegrityError as e:
            if action == AppointmentAction.START:
                raise DoctorBusyException() from e
            raise

        updated = result.mappings().first()
        if updated is None:
            # Status changed under us (another instance acted first)
            raise InvalidTransitionException(
                f"Appointment is no longer {transition.source.value}"
            )

        if action == AppointmentAction.CANCEL:
            await self.ledger.release(row["schedule_slot_id"])

        await self._record_event(row["id"], action.value, current, transition.target, actor, reason)
        return dict(updated)

    async def _transition(
        self,
        appointment_id: UUID,
        action: AppointmentAction,
        actor: Actor | None,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """Locate the appointment, lock its queue and apply ``action``."""
        located = await self._get_row(appointment_id)
        doctor_id, queue_date = located["doctor_id"], located["appointment_date"]
        bind_queue_context(doctor_id, queue_date)

        lock_keys = [queue_lock_key(doctor_id, queue_date)]
        if action == AppointmentAction.CANCEL:
            lock_keys.insert(0, slot_lock_key(located["schedule_slot_id"]))

        async def work() -> dict[str, Any]:
            row = await self._get_row(appointment_id)
            if action == AppointmentAction.CALL:
                head = await self.registry.find_head_of_waiting(doctor_id, queue_date)
                if head is not None and head["id"] != row["id"]:
                    raise InvalidTransitionException(
                        f"Queue number {head['queue_number']} must be called first"
                    )
            return await self._apply(row, action, actor, reason)

        updated = await self._run_unit(lock_keys, work)

        logger.info(
            "queue_transition_applied",
            appointment_id=str(appointment_id),
            action=action.value,
            status=updated["status"],
            queue_number=updated["queue_number"],
            actor_id=str(actor.id) if actor else None,
        )
        self._notify(doctor_id, queue_date)
        return AppointmentResponse.model_validate(updated)

    async def call_next(self, doctor_id: UUID, queue_date: date, actor: Actor) -> AppointmentResponse:
        """
        Call the WAITING appointment with the smallest queue number.

        Raises:
            QueueEmptyException: If nobody is waiting
        """
        bind_queue_context(doctor_id, queue_date)
        await self._authorize_queue(actor, doctor_id)

        async def work() -> dict[str, Any]:
            head = await self.registry.find_head_of_waiting(doctor_id, queue_date)
            if head is None:
                raise QueueEmptyException()
            return await self._apply(head, AppointmentAction.CALL, actor)

        updated = await self._run_unit([queue_lock_key(doctor_id, queue_date)], work)

        logger.info(
            "queue_transition_applied",
            appointment_id=str(updated["id"]),
            action=AppointmentAction.CALL.value,
            status=updated["status"],
            queue_number=updated["queue_number"],
            actor_id=str(actor.id),
        )
        self._notify(doctor_id, queue_date)
        return AppointmentResponse.model_validate(updated)

    async def _staff_transition(
        self,
        appointment_id: UUID,
        action: AppointmentAction,
        actor: Actor,
        reason: str | None = None,
    ) -> AppointmentResponse:
        row = await self._get_row(appointment_id)
        await self._authorize_queue(actor, row["doctor_id"])
        return await self._transition(appointment_id, action, actor, reason)

    async def start(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Start the examination of a CALLED appointment.

        Raises:
            DoctorBusyException: If the doctor already has a patient in examination
            InvalidTransitionException: If the appointment is not CALLED
        """
        return await self._staff_transition(appointment_id, AppointmentAction.START, actor)

    async def finish(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """Finish an examination (IN_PROGRESS to DONE)."""
        return await self._staff_transition(appointment_id, AppointmentAction.FINISH, actor)

    async def skip(self, appointment_id: UUID, reason: str, actor: Actor) -> AppointmentResponse:
        """Skip a CALLED patient who did not show up; the reason is mandatory."""
        if not reason or not reason.strip():
            raise ValidationException("A reason is required to skip a patient")
        return await self._staff_transition(
            appointment_id, AppointmentAction.SKIP, actor, reason.strip()
        )

    async def recall(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """Call a SKIPPED patient again, keeping their queue number."""
        return await self._staff_transition(appointment_id, AppointmentAction.RECALL, actor)

    async def cancel(
        self,
        appointment_id: UUID,
        actor: Actor,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """
        Cancel a WAITING appointment and give its slot capacity back.

        Args:
            appointment_id: Appointment ID
            actor: Patient owning the appointment, or staff
            reason: Required for staff, optional for patients

        Raises:
            InvalidTransitionException: If the appointment is not WAITING
        """
        row = await self._get_row(appointment_id)
        reason = reason.strip() if reason else None

        if actor.is_patient:
            self._authorize_view(actor, row)
        else:
            await self._authorize_queue(actor, row["doctor_id"])
            if not reason:
                raise ValidationException("A reason is required when staff cancel an appointment")

        return await self._transition(appointment_id, AppointmentAction.CANCEL, actor, reason)

    async def apply_action(
        self,
        appointment_id: UUID,
        action: AppointmentAction,
        actor: Actor,
        reason: str | None = None,
    ) -> AppointmentResponse:
        """
        Status-change intake: dispatch ``action`` for one appointment.

        ``call`` is only accepted for the head of the waiting list so the
        queue order cannot be bypassed.
        """
        if action == AppointmentAction.CANCEL:
            return await self.cancel(appointment_id, actor, reason)
        if action == AppointmentAction.SKIP:
            return await self.skip(appointment_id, reason or "", actor)
        return await self._staff_transition(appointment_id, action, actor, reason)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_appointment(self, appointment_id: UUID, actor: Actor) -> AppointmentResponse:
        """
        Get appointment by ID.

        Raises:
            NotFoundException: If appointment not found
            ForbiddenException: If a patient asks for someone else's appointment
        """
        row = await self._get_row(appointment_id)
        self._authorize_view(actor, row)
        return AppointmentResponse.model_validate(row)

    async def list_appointments(
        self,
        actor: Actor,
        filters: AppointmentFilters,
    ) -> AppointmentListResponse:
        """
        List appointments with filtering and pagination.

        Patients only ever see their own appointments.
        """
        conditions = []

        if actor.is_patient:
            conditions.append(appointments.c.patient_id == actor.id)
        elif filters.patient_id:
            conditions.append(appointments.c.patient_id == filters.patient_id)

        if filters.appointment_date:
            conditions.append(appointments.c.appointment_date == filters.appointment_date)

        if filters.status:
            conditions.append(appointments.c.status == filters.status.value)

        if filters.doctor_id:
            conditions.append(appointments.c.doctor_id == filters.doctor_id)

        if filters.department_id:
            conditions.append(appointments.c.department_id == filters.department_id)

        if filters.room_id:
            conditions.append(appointments.c.room_id == filters.room_id)

        where = and_(*conditions) if conditions else and_(True)

        # Count total
        count_stmt = select(func.count()).select_from(appointments).where(where)
        total_result = await self.db.execute(count_stmt)
        total = total_result.scalar() or 0

        # Get paginated results
        offset = (filters.page - 1) * filters.page_size

        stmt = (
            select(appointments)
            .where(where)
            .order_by(
                appointments.c.appointment_date.desc(),
                appointments.c.queue_number.asc(),
            )
            .limit(filters.page_size)
            .offset(offset)
        )

        result = await self.db.execute(stmt)
        items = [AppointmentResponse.model_validate(dict(row)) for row in result.mappings().all()]

        return AppointmentListResponse(
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            items=items,
        )

    async def list_events(self, appointment_id: UUID, actor: Actor) -> list[AppointmentEventResponse]:
        """Audit trail of one appointment, oldest first."""
        row = await self._get_row(appointment_id)
        self._authorize_view(actor, row)

        stmt = (
            select(appointment_events)
            .where(appointment_events.c.appointment_id == appointment_id)
            .order_by(appointment_events.c.created_at.asc())
        )
        result = await self.db.execute(stmt)
        return [AppointmentEventResponse.model_validate(dict(r)) for r in result.mappings().all()]

    async def snapshot(self, doctor_id: UUID, queue_date: date) -> QueueSnapshot:
        """Current queue view for (doctor, date)."""
        return await self.registry.snapshot(doctor_id, queue_date)

    async def check_consistency(
        self,
        doctor_id: UUID,
        queue_date: date,
        actor: Actor,
    ) -> QueueConsistencyReport:
        """Re-derive a queue and report invariant violations (staff only)."""
        await self._authorize_queue(actor, doctor_id)
        report = await self.registry.check_consistency(doctor_id, queue_date)
        if not report.consistent:
            logger.error(
                "queue_inconsistent",
                doctor_id=str(doctor_id),
                date=queue_date.isoformat(),
                violations=report.violations,
            )
        return report
