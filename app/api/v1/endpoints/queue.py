"""Queue endpoints: snapshot, queue actions and the realtime channel."""

from datetime import date
from typing import Any
from uuid import UUID, uuid4

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from app.core.exceptions import AppException
from app.core.security import actor_from_token
from app.dependencies import Broadcaster, CurrentActor, DatabaseSession, StaffActor
from app.middleware.logging import bind_queue_context
from app.schemas.appointments import AppointmentResponse
from app.schemas.queue import (
    QueueAppointmentAction,
    QueueConsistencyReport,
    QueueKey,
    QueueSkipRequest,
    QueueSnapshot,
)
from app.services.appointment_service import AppointmentService
from app.services.broadcaster import (
    EVENT_ERROR,
    EVENT_LEFT,
    QueueRoomBroadcaster,
    RoomClient,
    room_name,
)

router = APIRouter()
logger = structlog.get_logger()


@router.get(
    "/state",
    response_model=QueueSnapshot,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Queue snapshot",
)
async def get_queue_state(
    actor: CurrentActor,
    db: DatabaseSession,
    doctor_id: UUID = Query(...),
    queue_date: date = Query(..., alias="date"),
) -> QueueSnapshot:
    """
    Get the current queue of one doctor for one day.

    Args:
        actor: Authenticated actor
        db: Database session
        doctor_id: Doctor ID
        queue_date: Queue date

    Returns:
        Queue snapshot
    """
    service = AppointmentService(db)
    return await service.snapshot(doctor_id, queue_date)


@router.post(
    "/call-next",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Call next patient",
)
async def call_next(
    data: QueueKey,
    actor: StaffActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """
    Call the waiting patient with the lowest queue number.

    Raises:
        HTTPException: 409 if nobody is waiting
    """
    service = AppointmentService(db, broadcaster)
    return await service.call_next(data.doctor_id, data.date, actor)


@router.post(
    "/start",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Start examination",
)
async def start_examination(
    data: QueueAppointmentAction,
    actor: StaffActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """
    Start examining a called patient.

    Raises:
        HTTPException: 409 if another examination is in progress
    """
    service = AppointmentService(db, broadcaster)
    return await service.start(data.appointment_id, actor)


@router.post(
    "/finish",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Finish examination",
)
async def finish_examination(
    data: QueueAppointmentAction,
    actor: StaffActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """Finish the examination in progress."""
    service = AppointmentService(db, broadcaster)
    return await service.finish(data.appointment_id, actor)


@router.post(
    "/skip",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Skip called patient",
)
async def skip_patient(
    data: QueueSkipRequest,
    actor: StaffActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """Mark a called patient who did not show up as skipped."""
    service = AppointmentService(db, broadcaster)
    return await service.skip(data.appointment_id, data.reason, actor)


@router.post(
    "/recall",
    response_model=AppointmentResponse,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Recall skipped patient",
)
async def recall_patient(
    data: QueueAppointmentAction,
    actor: StaffActor,
    db: DatabaseSession,
    broadcaster: Broadcaster,
) -> AppointmentResponse:
    """Call a skipped patient again with their original queue number."""
    service = AppointmentService(db, broadcaster)
    return await service.recall(data.appointment_id, actor)


@router.get(
    "/consistency",
    response_model=QueueConsistencyReport,
    status_code=status.HTTP_200_OK,
    tags=["Queue"],
    summary="Queue consistency report",
)
async def queue_consistency(
    actor: StaffActor,
    db: DatabaseSession,
    doctor_id: UUID = Query(...),
    queue_date: date = Query(..., alias="date"),
) -> QueueConsistencyReport:
    """Re-derive a queue from the store and list invariant violations."""
    service = AppointmentService(db)
    return await service.check_consistency(doctor_id, queue_date, actor)


# Realtime channel


def error_frame(kind: str, code: str, message: str) -> dict[str, Any]:
    """Build a ``queue:error`` frame."""
    return {"event": EVENT_ERROR, "data": {"kind": kind, "code": code, "message": message}}


async def handle_client_message(
    broadcaster: QueueRoomBroadcaster,
    client: RoomClient,
    message: Any,
) -> None:
    """
    Process one frame received from a websocket client.

    Replies go through the client's outbox so they are ordered with
    pushed updates.

    Args:
        broadcaster: Room broadcaster
        client: Registered client that sent the frame
        message: Decoded JSON frame
    """
    if not isinstance(message, dict):
        client.enqueue(error_frame("validation", "BadFrame", "Frames must be JSON objects"))
        return

    event = message.get("event")

    if event == "ping":
        client.enqueue({"event": "pong"})
        return

    if event in ("queue:join", "queue:leave"):
        try:
            key = QueueKey.model_validate(message)
        except ValidationError:
            client.enqueue(
                error_frame("validation", "Validation", "doctor_id and date are required")
            )
            return

        if event == "queue:leave":
            broadcaster.leave(key.doctor_id, key.date, client.client_id)
            client.enqueue(
                {"event": EVENT_LEFT, "data": {"room": room_name(key.doctor_id, key.date)}}
            )
            return

        bind_queue_context(key.doctor_id, key.date)
        broadcaster.join(key.doctor_id, key.date, client.client_id)
        await _send_state(broadcaster, client, key.doctor_id, key.date)
        return

    if event == "queue:sync":
        if client.room is None:
            client.enqueue(error_frame("validation", "NotJoined", "Join a queue before syncing"))
            return
        await _send_state(broadcaster, client, *client.room)
        return

    client.enqueue(error_frame("validation", "UnknownEvent", f"Unknown event: {event}"))


async def _send_state(
    broadcaster: QueueRoomBroadcaster,
    client: RoomClient,
    doctor_id: UUID,
    queue_date: date,
) -> None:
    try:
        await broadcaster.send_state(client, doctor_id, queue_date)
    except AppException as e:
        client.enqueue(error_frame(e.kind, e.code, e.message))
    except Exception as e:
        logger.error("ws_snapshot_failed", client_id=client.client_id, error=str(e))
        client.enqueue(
            error_frame("transient", "ServiceUnavailable", "Queue state is temporarily unavailable")
        )


@router.websocket("/ws")
async def queue_websocket(
    websocket: WebSocket,
    broadcaster: Broadcaster,
    token: str | None = Query(None),
) -> None:
    """
    Realtime queue channel.

    Authenticates with ``?token=<jwt>``; join a room with
    ``{"event": "queue:join", "doctor_id": ..., "date": ...}`` and receive a
    ``queue:state`` reply followed by ``queue:updated`` pushes.
    """
    actor = actor_from_token(token) if token else None
    if actor is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    client_id = uuid4().hex
    structlog.contextvars.bind_contextvars(client_id=client_id, actor_id=str(actor.id))
    client = broadcaster.register(client_id, websocket, actor)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                client.enqueue(error_frame("validation", "BadFrame", "Frames must be valid JSON"))
                continue
            await handle_client_message(broadcaster, client, message)
    except WebSocketDisconnect:
        logger.info("ws_client_disconnected", client_id=client_id)
    finally:
        await broadcaster.unregister(client_id)
