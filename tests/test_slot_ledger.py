"""Tests for slot capacity admission control."""

import asyncio
from datetime import time
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from app.core.exceptions import (
    InvalidSlotException,
    SlotClosedException,
    SlotFullException,
)
from app.models.appointments import appointments
from app.schemas.appointments import AppointmentCreate, AppointmentStatus
from app.schemas.auth import Actor, ActorRole
from app.services.appointment_service import AppointmentService
from app.services.slot_ledger import SlotLedger


@pytest.mark.asyncio
async def test_try_reserve_increments_booked_count(db_session, slot):
    """A reservation takes one unit of capacity."""
    ledger = SlotLedger(db_session)

    row = await ledger.try_reserve(slot["id"])
    await db_session.commit()

    assert row["booked_count"] == 1
    detail = await ledger.get_slot_detail(slot["id"])
    assert detail.remaining == slot["max_patients"] - 1
    assert detail.is_full is False


@pytest.mark.asyncio
async def test_try_reserve_full_slot(db_session, doctor, make_slot):
    """A slot at capacity rejects with SlotFull and is left unchanged."""
    full_slot = await make_slot(doctor["id"], max_patients=2, booked_count=2)
    ledger = SlotLedger(db_session)

    with pytest.raises(SlotFullException) as exc_info:
        await ledger.try_reserve(full_slot["id"])
    await db_session.rollback()

    assert exc_info.value.kind == "admission"
    slot_row = await ledger.get_slot(full_slot["id"])
    assert slot_row["booked_count"] == 2


@pytest.mark.asyncio
async def test_try_reserve_closed_slot(db_session, doctor, make_slot):
    """An inactive slot rejects with SlotClosed even when it has room."""
    closed = await make_slot(doctor["id"], is_active=False)
    ledger = SlotLedger(db_session)

    with pytest.raises(SlotClosedException):
        await ledger.try_reserve(closed["id"])


@pytest.mark.asyncio
async def test_try_reserve_unknown_slot(db_session, doctor):
    ledger = SlotLedger(db_session)

    with pytest.raises(InvalidSlotException) as exc_info:
        await ledger.try_reserve(uuid4())

    assert exc_info.value.status_code == 422


@pytest.mark.asyncio
async def test_release_never_goes_below_zero(db_session, slot):
    """Releasing an empty slot is a logged no-op."""
    ledger = SlotLedger(db_session)

    assert await ledger.release(slot["id"]) is None

    await ledger.try_reserve(slot["id"])
    released = await ledger.release(slot["id"])
    await db_session.commit()

    assert released["booked_count"] == 0


@pytest.mark.asyncio
async def test_list_slots_hides_closed_slots(db_session, doctor, make_slot, queue_date):
    """Closed slots are listed only on request, earliest first."""
    late = await make_slot(doctor["id"], start_time=time(13, 0), end_time=time(17, 0))
    early = await make_slot(doctor["id"], start_time=time(8, 0), end_time=time(12, 0))
    await make_slot(doctor["id"], start_time=time(18, 0), end_time=time(19, 0), is_active=False)

    ledger = SlotLedger(db_session)
    open_slots = await ledger.list_slots(doctor["id"], queue_date)
    all_slots = await ledger.list_slots(doctor["id"], queue_date, include_inactive=True)

    assert [s.id for s in open_slots] == [early["id"], late["id"]]
    assert len(all_slots) == 3


@pytest.mark.asyncio
async def test_last_seat_race(session_factory, doctor, make_slot):
    """Concurrent bookings for the last seat: exactly one wins, the rest get SlotFull."""
    last_seat = await make_slot(doctor["id"], max_patients=3, booked_count=2)
    contenders = 8

    async def attempt() -> str:
        async with session_factory() as session:
            service = AppointmentService(session)
            actor = Actor(id=uuid4(), role=ActorRole.PATIENT)
            try:
                await service.book(
                    actor,
                    AppointmentCreate(
                        doctor_id=doctor["id"],
                        schedule_slot_id=last_seat["id"],
                        appointment_date=last_seat["work_date"],
                        appointment_time=last_seat["start_time"],
                    ),
                )
                return "booked"
            except SlotFullException:
                return "full"

    outcomes = await asyncio.gather(*(attempt() for _ in range(contenders)))

    assert outcomes.count("booked") == 1
    assert outcomes.count("full") == contenders - 1

    async with session_factory() as session:
        slot_row = await SlotLedger(session).get_slot(last_seat["id"])
        waiting = await session.execute(
            select(func.count())
            .select_from(appointments)
            .where(appointments.c.status == AppointmentStatus.WAITING.value)
        )

    assert slot_row["booked_count"] == 3
    assert waiting.scalar() == 1
