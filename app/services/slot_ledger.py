"""Slot capacity ledger: admission control for bookings."""

from datetime import UTC, date, datetime
from uuid import UUID

import structlog
from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    InvalidSlotException,
    NotFoundException,
    SlotClosedException,
    SlotFullException,
)
from app.models.schedule_slots import schedule_slots
from app.schemas.schedules import ScheduleSlotResponse

logger = structlog.get_logger()


class SlotLedger:
    """
    Booked-vs-max accounting per schedule slot.

    ``try_reserve`` and ``release`` run inside the caller's transaction and
    never commit; the booking or cancellation that uses them commits or
    rolls back the whole unit. The guarded UPDATE keeps ``booked_count <=
    max_patients`` even across server instances; callers additionally hold
    the slot lock so that in-process contenders queue up instead of racing.
    """

    def __init__(self, db: AsyncSession):
        """Initialize ledger with database session."""
        self.db = db

    async def get_slot(self, slot_id: UUID) -> dict | None:
        """Get a schedule slot row by ID."""
        stmt = select(schedule_slots).where(schedule_slots.c.id == slot_id)
        result = await self.db.execute(stmt)
        row = result.mappings().first()
        return dict(row) if row else None

    async def try_reserve(self, slot_id: UUID) -> dict:
        """
        Take one unit of capacity from a slot.

        Args:
            slot_id: Schedule slot ID

        Returns:
            Slot row after the increment

        Raises:
            InvalidSlotException: If the slot does not exist
            SlotClosedException: If the slot is inactive
            SlotFullException: If the slot has no remaining capacity
        """
        stmt = (
            update(schedule_slots)
            .where(
                and_(
                    schedule_slots.c.id == slot_id,
                    schedule_slots.c.is_active.is_(True),
                    schedule_slots.c.booked_count < schedule_slots.c.max_patients,
                )
            )
            .values(
                booked_count=schedule_slots.c.booked_count + 1,
                updated_at=datetime.now(UTC),
            )
            .returning(schedule_slots)
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()

        if row:
            return dict(row)

        # Nothing updated: find out why
        slot = await self.get_slot(slot_id)
        if slot is None:
            raise InvalidSlotException("Schedule slot not found")
        if not slot["is_active"]:
            raise SlotClosedException()

        logger.info(
            "slot_full",
            slot_id=str(slot_id),
            booked_count=slot["booked_count"],
            max_patients=slot["max_patients"],
        )
        raise SlotFullException()

    async def release(self, slot_id: UUID) -> dict | None:
        """
        Return one unit of capacity to a slot, never going below zero.

        Returns:
            Slot row after the decrement, or None if it was already at zero
        """
        stmt = (
            update(schedule_slots)
            .where(
                and_(
                    schedule_slots.c.id == slot_id,
                    schedule_slots.c.booked_count > 0,
                )
            )
            .values(
                booked_count=schedule_slots.c.booked_count - 1,
                updated_at=datetime.now(UTC),
            )
            .returning(schedule_slots)
        )
        result = await self.db.execute(stmt)
        row = result.mappings().first()

        if row is None:
            logger.warning("slot_release_at_zero", slot_id=str(slot_id))
            return None

        return dict(row)

    async def get_slot_detail(self, slot_id: UUID) -> ScheduleSlotResponse:
        """Get a slot with its remaining capacity."""
        slot = await self.get_slot(slot_id)
        if slot is None:
            raise NotFoundException("Schedule slot not found")
        return ScheduleSlotResponse.from_row(slot)

    async def list_slots(
        self,
        doctor_id: UUID,
        work_date: date,
        include_inactive: bool = False,
    ) -> list[ScheduleSlotResponse]:
        """
        List a doctor's slots for one day, earliest first.

        Args:
            doctor_id: Doctor ID
            work_date: Day to list
            include_inactive: Also return closed slots

        Returns:
            Slots with remaining capacity
        """
        conditions = [
            schedule_slots.c.doctor_id == doctor_id,
            schedule_slots.c.work_date == work_date,
        ]
        if not include_inactive:
            conditions.append(schedule_slots.c.is_active.is_(True))

        stmt = (
            select(schedule_slots)
            .where(and_(*conditions))
            .order_by(schedule_slots.c.start_time.asc(), schedule_slots.c.id.asc())
        )
        result = await self.db.execute(stmt)
        return [ScheduleSlotResponse.from_row(dict(row)) for row in result.mappings().all()]
