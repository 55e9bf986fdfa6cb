"""Tests for queue and schedule endpoints."""

from datetime import time
from typing import Any

import pytest
from httpx import AsyncClient


async def book_via_api(client: AsyncClient, slot: dict, headers: dict) -> dict[str, Any]:
    response = await client.post(
        "/api/v1/appointments/",
        json={
            "doctor_id": str(slot["doctor_id"]),
            "schedule_slot_id": str(slot["id"]),
            "appointment_date": slot["work_date"].isoformat(),
            "appointment_time": "09:00:00",
        },
        headers=headers,
    )
    assert response.status_code == 201, response.json()
    return response.json()


def queue_key(slot: dict) -> dict[str, str]:
    return {"doctor_id": str(slot["doctor_id"]), "date": slot["work_date"].isoformat()}


@pytest.mark.asyncio
async def test_queue_state(
    client: AsyncClient,
    auth_headers: dict,
    slot: dict,
) -> None:
    """Any authenticated actor can read a queue snapshot."""
    booked = await book_via_api(client, slot, auth_headers)

    response = await client.get(
        "/api/v1/queue/state",
        params=queue_key(slot),
        headers=auth_headers,
    )

    assert response.status_code == 200
    data = response.json()
    assert data["waiting_count"] == 1
    assert data["next"]["appointment_id"] == booked["id"]
    assert data["current"] is None


@pytest.mark.asyncio
async def test_full_visit_through_queue_endpoints(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    slot: dict,
) -> None:
    """Call, start and finish the first patient while the second keeps waiting."""
    first = await book_via_api(client, slot, auth_headers)
    second = await book_via_api(client, slot, auth_headers)

    called = await client.post("/api/v1/queue/call-next", json=queue_key(slot), headers=staff_headers)
    assert called.status_code == 200
    assert called.json()["id"] == first["id"]
    assert called.json()["status"] == "CALLED"

    started = await client.post(
        "/api/v1/queue/start", json={"appointment_id": first["id"]}, headers=staff_headers
    )
    assert started.json()["status"] == "IN_PROGRESS"

    state = await client.get("/api/v1/queue/state", params=queue_key(slot), headers=staff_headers)
    assert state.json()["current"]["appointment_id"] == first["id"]
    assert state.json()["next"]["appointment_id"] == second["id"]

    finished = await client.post(
        "/api/v1/queue/finish", json={"appointment_id": first["id"]}, headers=staff_headers
    )
    assert finished.json()["status"] == "DONE"
    assert finished.json()["finished_at"] is not None


@pytest.mark.asyncio
async def test_call_next_on_empty_queue(
    client: AsyncClient,
    staff_headers: dict,
    slot: dict,
) -> None:
    response = await client.post(
        "/api/v1/queue/call-next", json=queue_key(slot), headers=staff_headers
    )

    assert response.status_code == 409
    assert response.json()["code"] == "QueueEmpty"


@pytest.mark.asyncio
async def test_start_while_doctor_busy(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    slot: dict,
) -> None:
    """A second examination cannot start while one is in progress."""
    first = await book_via_api(client, slot, auth_headers)
    second = await book_via_api(client, slot, auth_headers)
    for _ in range(2):
        await client.post("/api/v1/queue/call-next", json=queue_key(slot), headers=staff_headers)
    await client.post(
        "/api/v1/queue/start", json={"appointment_id": first["id"]}, headers=staff_headers
    )

    response = await client.post(
        "/api/v1/queue/start", json={"appointment_id": second["id"]}, headers=staff_headers
    )

    assert response.status_code == 409
    data = response.json()
    assert data["code"] == "DoctorBusy"
    assert data["kind"] == "transition"


@pytest.mark.asyncio
async def test_skip_and_recall(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    slot: dict,
) -> None:
    """A skipped patient comes back with the same queue number."""
    booked = await book_via_api(client, slot, auth_headers)
    await client.post("/api/v1/queue/call-next", json=queue_key(slot), headers=staff_headers)

    skipped = await client.post(
        "/api/v1/queue/skip",
        json={"appointment_id": booked["id"], "reason": "No show after two calls"},
        headers=staff_headers,
    )
    assert skipped.status_code == 200
    assert skipped.json()["status"] == "SKIPPED"

    recalled = await client.post(
        "/api/v1/queue/recall", json={"appointment_id": booked["id"]}, headers=staff_headers
    )
    assert recalled.status_code == 200
    assert recalled.json()["status"] == "CALLED"
    assert recalled.json()["queue_number"] == booked["queue_number"]


@pytest.mark.asyncio
async def test_skip_requires_reason(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    slot: dict,
) -> None:
    booked = await book_via_api(client, slot, auth_headers)
    await client.post("/api/v1/queue/call-next", json=queue_key(slot), headers=staff_headers)

    response = await client.post(
        "/api/v1/queue/skip",
        json={"appointment_id": booked["id"], "reason": "   "},
        headers=staff_headers,
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation"


@pytest.mark.asyncio
async def test_patient_cannot_run_queue(
    client: AsyncClient,
    auth_headers: dict,
    slot: dict,
) -> None:
    response = await client.post(
        "/api/v1/queue/call-next", json=queue_key(slot), headers=auth_headers
    )

    assert response.status_code == 403
    assert response.json()["kind"] == "auth"


@pytest.mark.asyncio
async def test_doctor_runs_only_own_queue(
    client: AsyncClient,
    auth_headers: dict,
    auth_headers_for,
    doctor_actor,
    make_doctor,
    make_slot,
    slot: dict,
) -> None:
    """A doctor login can call its own queue but not a colleague's."""
    await book_via_api(client, slot, auth_headers)
    colleague = await make_doctor()
    colleague_slot = await make_slot(colleague["id"])
    await book_via_api(client, colleague_slot, auth_headers)
    headers = auth_headers_for(doctor_actor)

    own = await client.post("/api/v1/queue/call-next", json=queue_key(slot), headers=headers)
    other = await client.post(
        "/api/v1/queue/call-next", json=queue_key(colleague_slot), headers=headers
    )

    assert own.status_code == 200
    assert other.status_code == 403


@pytest.mark.asyncio
async def test_queue_consistency(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    slot: dict,
) -> None:
    for _ in range(2):
        await book_via_api(client, slot, auth_headers)

    response = await client.get(
        "/api/v1/queue/consistency", params=queue_key(slot), headers=staff_headers
    )

    assert response.status_code == 200
    data = response.json()
    assert data["consistent"] is True
    assert data["highest_queue_number"] == 2


@pytest.mark.asyncio
async def test_available_slots(
    client: AsyncClient,
    auth_headers: dict,
    staff_headers: dict,
    doctor: dict,
    make_slot,
) -> None:
    """Closed slots are hidden from patients even when they ask for them."""
    open_slot = await make_slot(doctor["id"], max_patients=2, booked_count=1)
    await make_slot(
        doctor["id"], start_time=time(13, 0), end_time=time(17, 0), is_active=False
    )
    params = {
        "doctor_id": str(doctor["id"]),
        "date": open_slot["work_date"].isoformat(),
        "include_inactive": "true",
    }

    as_patient = await client.get("/api/v1/schedules/available", params=params, headers=auth_headers)
    as_staff = await client.get("/api/v1/schedules/available", params=params, headers=staff_headers)

    assert as_patient.status_code == 200
    assert len(as_patient.json()) == 1
    assert as_patient.json()[0]["remaining"] == 1
    assert len(as_staff.json()) == 2


@pytest.mark.asyncio
async def test_get_slot(client: AsyncClient, auth_headers: dict, slot: dict) -> None:
    await book_via_api(client, slot, auth_headers)

    response = await client.get(f"/api/v1/schedules/{slot['id']}", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["booked_count"] == 1
    assert data["remaining"] == slot["max_patients"] - 1
    assert data["is_full"] is False
