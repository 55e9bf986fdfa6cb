"""Tests for request correlation and queue log context."""

from uuid import uuid4

import pytest
import structlog
from httpx import AsyncClient
from starlette.requests import Request

from app.middleware.logging import bind_queue_context, queue_context_from_request
from conftest import QUEUE_DATE


def make_request(query_string: bytes) -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/api/v1/queue/state",
            "query_string": query_string,
            "headers": [],
        }
    )


def test_bind_queue_context():
    doctor_id = uuid4()
    structlog.contextvars.clear_contextvars()

    bind_queue_context(doctor_id, QUEUE_DATE)

    context = structlog.contextvars.get_contextvars()
    assert context["doctor_id"] == str(doctor_id)
    assert context["queue_date"] == "2026-10-20"
    structlog.contextvars.clear_contextvars()


def test_queue_context_from_request():
    doctor_id = uuid4()

    request = make_request(f"doctor_id={doctor_id}&date=2026-10-20".encode())

    assert queue_context_from_request(request) == {
        "doctor_id": str(doctor_id),
        "queue_date": "2026-10-20",
    }
    assert queue_context_from_request(make_request(b"page=2")) == {}


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient, staff_headers: dict, slot: dict):
    response = await client.get(
        "/api/v1/queue/state",
        params={"doctor_id": str(slot["doctor_id"]), "date": slot["work_date"].isoformat()},
        headers={**staff_headers, "X-Request-ID": "req-42"},
    )

    assert response.status_code == 200
    assert response.headers["X-Request-ID"] == "req-42"
    assert float(response.headers["X-Process-Time"]) >= 0


@pytest.mark.asyncio
async def test_request_id_is_generated(client: AsyncClient):
    response = await client.get("/api/v1/health")

    assert len(response.headers["X-Request-ID"]) == 32


@pytest.mark.asyncio
async def test_booking_binds_its_queue(slot, book):
    """Log lines emitted while booking carry the doctor and day of the queue."""
    structlog.contextvars.clear_contextvars()

    await book(slot)

    context = structlog.contextvars.get_contextvars()
    assert context["doctor_id"] == str(slot["doctor_id"])
    assert context["queue_date"] == slot["work_date"].isoformat()
