"""Schedule slot endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import CurrentActor, DatabaseSession
from app.schemas.schedules import ScheduleSlotResponse
from app.services.slot_ledger import SlotLedger

router = APIRouter()


@router.get(
    "/available",
    response_model=list[ScheduleSlotResponse],
    status_code=status.HTTP_200_OK,
    tags=["Schedules"],
    summary="Available slots",
)
async def list_available_slots(
    actor: CurrentActor,
    db: DatabaseSession,
    doctor_id: UUID = Query(...),
    work_date: date = Query(..., alias="date"),
    include_inactive: bool = Query(False),
) -> list[ScheduleSlotResponse]:
    """
    List a doctor's slots for one day with remaining capacity.

    Args:
        actor: Authenticated actor
        db: Database session
        doctor_id: Doctor ID
        work_date: Day to list
        include_inactive: Also list closed slots (staff only)

    Returns:
        Slots, earliest first
    """
    ledger = SlotLedger(db)
    return await ledger.list_slots(
        doctor_id, work_date, include_inactive=include_inactive and actor.is_staff
    )


@router.get(
    "/{slot_id}",
    response_model=ScheduleSlotResponse,
    status_code=status.HTTP_200_OK,
    tags=["Schedules"],
    summary="Get slot by ID",
)
async def get_slot(
    slot_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> ScheduleSlotResponse:
    """Get one slot with its capacity ledger."""
    ledger = SlotLedger(db)
    return await ledger.get_slot_detail(slot_id)
