"""Queue registry: numbering and the derived per doctor, per day view."""

from collections import Counter
from datetime import UTC, date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import and_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.appointments import appointments
from app.models.queue_counters import queue_counters
from app.schemas.appointments import AppointmentStatus
from app.schemas.queue import QueueConsistencyReport, QueueEntry, QueueSnapshot

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class QueueRegistry:
    """
    Assigns queue numbers and derives queue snapshots from the store.

    The snapshot is a projection over the appointments table and can be
    rebuilt from scratch at any time; nothing here is a source of truth.
    Counter updates run in the caller's transaction.
    """

    def __init__(self, db: AsyncSession):
        """Initialize registry with database session."""
        self.db = db

    async def _increment(self, doctor_id: UUID, queue_date: date, column: str) -> int:
        """Atomically bump one counter column and return its new value."""
        dialect = self.db.get_bind().dialect.name
        try:
            insert = _UPSERT_DIALECTS[dialect]
        except KeyError:
            raise RuntimeError(f"Queue counters are not supported on {dialect}") from None

        initial = {
            "last_queue_number": 0,
            "last_call_order": 0,
            "last_event_seq": 0,
            column: 1,
        }
        stmt = insert(queue_counters).values(
            doctor_id=doctor_id,
            queue_date=queue_date,
            **initial,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[queue_counters.c.doctor_id, queue_counters.c.queue_date],
            set_={column: queue_counters.c[column] + 1},
        ).returning(queue_counters.c[column])

        result = await self.db.execute(stmt)
        return int(result.scalar_one())

    async def next_queue_number(self, doctor_id: UUID, queue_date: date) -> int:
        """
        Next queue number for (doctor, date), starting at 1.

        Numbers are never reused, even when the appointment holding one is
        cancelled.
        """
        return await self._increment(doctor_id, queue_date, "last_queue_number")

    async def next_call_order(self, doctor_id: UUID, queue_date: date) -> int:
        """Next position in the CALLED set, stamped on every call and recall."""
        return await self._increment(doctor_id, queue_date, "last_call_order")

    async def bump_version(self, doctor_id: UUID, queue_date: date) -> int:
        """
        Advance the queue version; call once per unit of work that changes the queue.

        The version commits with the change, so a snapshot read after a
        commit carries at least that commit's version.
        """
        return await self._increment(doctor_id, queue_date, "last_event_seq")

    async def current_counter(self, doctor_id: UUID, queue_date: date) -> int:
        """Last queue number handed out for (doctor, date), 0 if none."""
        stmt = select(queue_counters.c.last_queue_number).where(
            and_(
                queue_counters.c.doctor_id == doctor_id,
                queue_counters.c.queue_date == queue_date,
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def current_version(self, doctor_id: UUID, queue_date: date) -> int:
        """Latest committed queue version, 0 for a queue never written to."""
        stmt = select(queue_counters.c.last_event_seq).where(
            and_(
                queue_counters.c.doctor_id == doctor_id,
                queue_counters.c.queue_date == queue_date,
            )
        )
        result = await self.db.execute(stmt)
        return result.scalar() or 0

    async def fetch_queue_rows(self, doctor_id: UUID, queue_date: date) -> list[dict[str, Any]]:
        """All appointments of one queue, ordered by queue number."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.appointment_date == queue_date,
                )
            )
            .order_by(appointments.c.queue_number.asc())
        )
        result = await self.db.execute(stmt)
        return [dict(row) for row in result.mappings().all()]

    async def find_in_progress(
        self,
        doctor_id: UUID,
        queue_date: date,
        exclude_id: UUID | None = None,
    ) -> dict | None:
        """The appointment currently being examined, if any."""
        conditions = [
            appointments.c.doctor_id == doctor_id,
            appointments.c.appointment_date == queue_date,
            appointments.c.status == AppointmentStatus.IN_PROGRESS.value,
        ]
        if exclude_id is not None:
            conditions.append(appointments.c.id != exclude_id)

        result = await self.db.execute(select(appointments).where(and_(*conditions)))
        row = result.mappings().first()
        return dict(row) if row else None

    async def find_head_of_waiting(self, doctor_id: UUID, queue_date: date) -> dict | None:
        """The WAITING appointment with the smallest queue number."""
        stmt = (
            select(appointments)
            .where(
                and_(
                    appointments.c.doctor_id == doctor_id,
                    appointments.c.appointment_date == queue_date,
                    appointments.c.status == AppointmentStatus.WAITING.value,
                )
            )
            .order_by(appointments.c.queue_number.asc())
            .limit(1)
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        return dict(row) if row else None

    async def snapshot(self, doctor_id: UUID, queue_date: date) -> QueueSnapshot:
        """
        Derive the full queue view from current store state.

        Returns:
            Snapshot with the waiting list (by queue number), the called list
            (by call order, so recalled patients sit behind those called
            before them), the skipped list, the in-progress entry and counts
        """
        # Version first: the rows read next are at least that recent
        version = await self.current_version(doctor_id, queue_date)
        rows = await self.fetch_queue_rows(doctor_id, queue_date)
        return build_snapshot(doctor_id, queue_date, rows, version=version)

    async def check_consistency(self, doctor_id: UUID, queue_date: date) -> QueueConsistencyReport:
        """
        Re-derive a queue from scratch and report invariant violations.

        Returns:
            Report listing duplicate numbers, concurrent examinations and a
            counter lagging behind issued numbers
        """
        rows = await self.fetch_queue_rows(doctor_id, queue_date)
        counter = await self.current_counter(doctor_id, queue_date)
        violations: list[str] = []

        numbers = Counter(row["queue_number"] for row in rows)
        for number, count in sorted(numbers.items()):
            if count > 1:
                violations.append(f"queue number {number} is used {count} times")

        in_progress = [r for r in rows if r["status"] == AppointmentStatus.IN_PROGRESS.value]
        if len(in_progress) > 1:
            violations.append(f"{len(in_progress)} appointments are in progress")

        highest = max(numbers, default=0)
        if counter < highest:
            violations.append(f"counter {counter} is behind highest queue number {highest}")

        for row in rows:
            if row["status"] == AppointmentStatus.CALLED.value and row["call_order"] is None:
                violations.append(f"called appointment {row['id']} has no call order")

        return QueueConsistencyReport(
            doctor_id=doctor_id,
            date=queue_date,
            consistent=not violations,
            violations=violations,
            highest_queue_number=highest,
            counter_value=counter,
        )


def _entry(row: dict[str, Any]) -> QueueEntry:
    return QueueEntry(
        appointment_id=row["id"],
        patient_id=row["patient_id"],
        queue_number=row["queue_number"],
        appointment_time=row["appointment_time"],
        status=AppointmentStatus(row["status"]),
        call_order=row["call_order"],
    )


def build_snapshot(
    doctor_id: UUID,
    queue_date: date,
    rows: list[dict[str, Any]],
    version: int = 0,
) -> QueueSnapshot:
    """Build a snapshot from appointment rows; order of ``rows`` does not matter."""
    ordered = sorted(rows, key=lambda r: (r["queue_number"], str(r["id"])))

    waiting: list[QueueEntry] = []
    called: list[QueueEntry] = []
    skipped: list[QueueEntry] = []
    in_progress: QueueEntry | None = None
    counts: Counter[str] = Counter()

    for row in ordered:
        status = AppointmentStatus(row["status"])
        counts[status.value] += 1

        if status == AppointmentStatus.WAITING:
            waiting.append(_entry(row))
        elif status == AppointmentStatus.CALLED:
            called.append(_entry(row))
        elif status == AppointmentStatus.SKIPPED:
            skipped.append(_entry(row))
        elif status == AppointmentStatus.IN_PROGRESS and in_progress is None:
            in_progress = _entry(row)

    called.sort(key=lambda e: (e.call_order or 0, e.queue_number))

    return QueueSnapshot(
        doctor_id=doctor_id,
        date=queue_date,
        version=version,
        current=in_progress or (called[-1] if called else None),
        next=waiting[0] if waiting else None,
        in_progress=in_progress,
        waiting_list=waiting,
        called_list=called,
        skipped_list=skipped,
        waiting_count=counts[AppointmentStatus.WAITING.value],
        called_count=counts[AppointmentStatus.CALLED.value],
        skipped_count=counts[AppointmentStatus.SKIPPED.value],
        in_progress_count=counts[AppointmentStatus.IN_PROGRESS.value],
        done_count=counts[AppointmentStatus.DONE.value],
        cancelled_count=counts[AppointmentStatus.CANCELLED.value],
        total=len(ordered),
        generated_at=datetime.now(UTC),
    )
