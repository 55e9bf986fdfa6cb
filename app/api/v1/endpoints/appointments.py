"""Appointment endpoints."""

from datetime import date
from uuid import UUID

from fastapi import APIRouter, Query, status

from app.dependencies import Broadcaster, Cache, CurrentActor, DatabaseSession, StaffActor
from app.schemas.appointments import (
    AppointmentCancel,
    AppointmentCreate,
    AppointmentEventResponse,
    AppointmentFilters,
    AppointmentListResponse,
    AppointmentResponse,
    AppointmentStatus,
    AppointmentStatusUpdate,
    DailyStatsResponse,
)
from app.services.appointment_service import AppointmentService
from app.services.stats_service import StatsService

router = APIRouter()


@router.post(
    "/",
    response_model=AppointmentResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Appointments"],
    summary="Book an appointment",
)
async def create_appointment(
    data: AppointmentCreate,
    actor: CurrentActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """
    Book a schedule slot and join the doctor's queue.

    Args:
        data: Booking data
        actor: Authenticated actor
        db: Database session
        broadcaster: Queue room broadcaster

    Returns:
        Created appointment with its queue number
    """
    service = AppointmentService(db, broadcaster)
    return await service.book(actor, data)


@router.get(
    "/",
    response_model=AppointmentListResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="List appointments",
)
async def list_appointments(
    actor: CurrentActor,
    db: DatabaseSession,
    appointment_date: date | None = Query(None, alias="date"),
    status_filter: AppointmentStatus | None = Query(None, alias="status"),
    doctor_id: UUID | None = Query(None),
    department_id: UUID | None = Query(None),
    room_id: UUID | None = Query(None),
    patient_id: UUID | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> AppointmentListResponse:
    """
    List appointments with filtering.

    Patients only see their own appointments.

    Args:
        actor: Authenticated actor
        db: Database session
        appointment_date: Filter by appointment date
        status_filter: Filter by status
        doctor_id: Filter by doctor ID
        department_id: Filter by department ID
        room_id: Filter by room ID
        patient_id: Filter by patient ID (staff only)
        page: Page number
        page_size: Items per page

    Returns:
        Paginated list of appointments
    """
    filters = AppointmentFilters(
        appointment_date=appointment_date,
        status=status_filter,
        doctor_id=doctor_id,
        department_id=department_id,
        room_id=room_id,
        patient_id=patient_id,
        page=page,
        page_size=page_size,
    )

    service = AppointmentService(db)
    return await service.list_appointments(actor, filters)


@router.get(
    "/stats/daily",
    response_model=DailyStatsResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Daily appointment statistics",
)
async def daily_stats(
    actor: StaffActor,
    db: DatabaseSession,
    cache: Cache,
    day: date = Query(..., alias="date"),
    doctor_id: UUID | None = Query(None),
    department_id: UUID | None = Query(None),
    room_id: UUID | None = Query(None),
) -> DailyStatsResponse:
    """
    Count appointments per status for one day.

    Results may lag the live queue by the stats cache TTL.
    """
    service = StatsService(db, cache)
    return await service.daily_stats(day, doctor_id, department_id, room_id)


@router.get(
    "/{appointment_id}",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Get appointment by ID",
)
async def get_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> AppointmentResponse:
    """
    Get a specific appointment by ID.

    Args:
        appointment_id: Appointment ID
        actor: Authenticated actor
        db: Database session

    Returns:
        Appointment details

    Raises:
        HTTPException: If appointment not found or access denied
    """
    service = AppointmentService(db)
    return await service.get_appointment(appointment_id, actor)


@router.get(
    "/{appointment_id}/events",
    response_model=list[AppointmentEventResponse],
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Appointment audit trail",
)
async def list_appointment_events(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
) -> list[AppointmentEventResponse]:
    """List every recorded transition of an appointment, oldest first."""
    service = AppointmentService(db)
    return await service.list_events(appointment_id, actor)


@router.post(
    "/{appointment_id}/cancel",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Cancel appointment",
)
async def cancel_appointment(
    appointment_id: UUID,
    actor: CurrentActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
    data: AppointmentCancel | None = None,
) -> AppointmentResponse:
    """
    Cancel a waiting appointment and release its slot.

    Args:
        appointment_id: Appointment ID
        actor: Authenticated actor
        db: Database session
        broadcaster: Queue room broadcaster
        data: Optional cancellation reason (required for staff)

    Returns:
        Cancelled appointment
    """
    service = AppointmentService(db, broadcaster)
    return await service.cancel(appointment_id, actor, data.reason if data else None)


@router.patch(
    "/{appointment_id}/status",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Appointments"],
    summary="Update appointment status",
)
async def update_appointment_status(
    appointment_id: UUID,
    data: AppointmentStatusUpdate,
    actor: CurrentActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """
    Apply a lifecycle action (call, start, skip, finish, recall, cancel).

    Args:
        appointment_id: Appointment ID
        data: Action and optional reason
        actor: Authenticated actor
        db: Database session
        broadcaster: Queue room broadcaster

    Returns:
        Updated appointment

    Raises:
        HTTPException: If the transition is not allowed
    """
    service = AppointmentService(db, broadcaster)
    return await service.apply_action(appointment_id, data.action, actor, data.reason)
