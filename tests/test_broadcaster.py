"""Tests for queue rooms and snapshot fan-out."""

import asyncio
from datetime import date
from typing import Any
from unittest.mock import MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio

from app.services.appointment_service import AppointmentService
from app.services.broadcaster import (
    EVENT_UPDATED,
    QueueRoomBroadcaster,
    parse_room_name,
    room_name,
)

DAY = date(2026, 10, 20)


class FakeConnection:
    """Records every frame pushed to it."""

    def __init__(self) -> None:
        self.frames: asyncio.Queue[Any] = asyncio.Queue()

    async def send_json(self, data: Any) -> None:
        await self.frames.put(data)

    async def next_frame(self, timeout: float = 2.0) -> Any:
        return await asyncio.wait_for(self.frames.get(), timeout)


class StalledConnection:
    """A client that never finishes receiving."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self._never = asyncio.Event()

    async def send_json(self, data: Any) -> None:
        self.started.set()
        await self._never.wait()


class FakeRelay:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, message: dict) -> None:
        self.published.append((channel, message))

    async def listen(self, deliver) -> None:
        await asyncio.Event().wait()


@pytest_asyncio.fixture
async def rooms():
    broadcaster = QueueRoomBroadcaster(MagicMock(), queue_size=2)
    yield broadcaster
    await broadcaster.stop()


def test_room_name_round_trip():
    doctor_id = uuid4()

    name = room_name(doctor_id, DAY)

    assert name == f"queue:{doctor_id}:2026-10-20"
    assert parse_room_name(name) == (doctor_id, DAY)

    with pytest.raises(ValueError):
        parse_room_name(f"stats:{doctor_id}:2026-10-20")


@pytest.mark.asyncio
async def test_join_moves_client_between_rooms(rooms):
    """A client is in at most one room; the last join wins."""
    first_doctor, second_doctor = uuid4(), uuid4()
    rooms.register("c1", FakeConnection())

    rooms.join(first_doctor, DAY, "c1")
    rooms.join(second_doctor, DAY, "c1")

    assert rooms.members(first_doctor, DAY) == set()
    assert rooms.members(second_doctor, DAY) == {"c1"}


@pytest.mark.asyncio
async def test_leave_and_unregister(rooms):
    doctor_id = uuid4()
    rooms.register("c1", FakeConnection())
    rooms.register("c2", FakeConnection())
    rooms.join(doctor_id, DAY, "c1")
    rooms.join(doctor_id, DAY, "c2")

    assert rooms.leave(doctor_id, DAY, "c1") is True
    assert rooms.leave(doctor_id, DAY, "c1") is False

    await rooms.unregister("c2")

    assert rooms.members(doctor_id, DAY) == set()
    assert rooms.rooms == {}
    assert "c2" not in rooms.clients


@pytest.mark.asyncio
async def test_join_unknown_client(rooms):
    with pytest.raises(KeyError):
        rooms.join(uuid4(), DAY, "ghost")


@pytest.mark.asyncio
async def test_deliver_reaches_only_room_members(rooms):
    doctor_id, other_doctor = uuid4(), uuid4()
    member, outsider = FakeConnection(), FakeConnection()
    rooms.register("member", member)
    rooms.register("outsider", outsider)
    rooms.join(doctor_id, DAY, "member")
    rooms.join(other_doctor, DAY, "outsider")

    count = rooms.deliver((doctor_id, DAY), {"event": EVENT_UPDATED, "data": {"n": 1}})

    assert count == 1
    assert (await member.next_frame())["data"] == {"n": 1}
    assert outsider.frames.empty()


@pytest.mark.asyncio
async def test_stalled_client_does_not_block_others(rooms):
    """A stuck consumer loses its oldest frames; other members keep receiving."""
    doctor_id = uuid4()
    stalled, healthy = StalledConnection(), FakeConnection()
    stalled_client = rooms.register("stalled", stalled)
    rooms.register("healthy", healthy)
    rooms.join(doctor_id, DAY, "stalled")
    rooms.join(doctor_id, DAY, "healthy")

    rooms.deliver((doctor_id, DAY), {"n": 1})
    await asyncio.wait_for(stalled.started.wait(), 2.0)

    for n in range(2, 6):
        rooms.deliver((doctor_id, DAY), {"n": n})
        # Let the healthy sender keep up
        await asyncio.sleep(0.01)

    assert stalled_client.dropped == 2
    assert [stalled_client.outbox.get_nowait()["n"] for _ in range(2)] == [4, 5]

    received = [(await healthy.next_frame())["n"] for _ in range(5)]
    assert received == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_notify_pushes_fresh_snapshot(slot, book, broadcaster):
    """After a transition the room receives a snapshot read from the store."""
    connection = FakeConnection()
    broadcaster.register("c1", connection)
    broadcaster.join(slot["doctor_id"], slot["work_date"], "c1")

    await book(slot)
    await broadcaster.drain()

    frame = await connection.next_frame()
    assert frame["event"] == EVENT_UPDATED
    assert frame["data"]["waiting_count"] == 1
    assert frame["data"]["next"]["queue_number"] == 1


@pytest.mark.asyncio
async def test_notify_failure_is_contained():
    """A failing snapshot read is logged, never raised."""
    failing_factory = MagicMock(side_effect=RuntimeError("store unavailable"))
    broadcaster = QueueRoomBroadcaster(failing_factory)
    doctor_id = uuid4()
    broadcaster.register("c1", FakeConnection())
    broadcaster.join(doctor_id, DAY, "c1")

    task = broadcaster.notify(doctor_id, DAY)
    await task

    assert task.exception() is None
    failing_factory.assert_called_once()
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_notify_skips_store_for_empty_room():
    """Without local members or a relay nobody can receive the push."""
    factory = MagicMock()
    broadcaster = QueueRoomBroadcaster(factory)

    await broadcaster.notify(uuid4(), DAY)

    factory.assert_not_called()
    await broadcaster.stop()


@pytest.mark.asyncio
async def test_client_skips_snapshot_frames_older_than_shown():
    """A lower version than one already queued is dropped; other frames pass."""
    rooms = QueueRoomBroadcaster(MagicMock())
    connection = FakeConnection()
    client = rooms.register("c1", connection)
    rooms.join(uuid4(), DAY, "c1")

    assert client.enqueue({"event": EVENT_UPDATED, "data": {"version": 5}}) is True
    assert client.enqueue({"event": EVENT_UPDATED, "data": {"version": 4}}) is False
    assert client.enqueue({"event": EVENT_UPDATED, "data": {"version": 5}}) is True
    assert client.enqueue({"event": "pong"}) is True

    received = [await connection.next_frame() for _ in range(3)]
    assert [frame.get("data", {}).get("version") for frame in received] == [5, 5, None]
    await rooms.stop()


@pytest.mark.asyncio
async def test_joining_another_room_resets_version(rooms):
    client = rooms.register("c1", FakeConnection())
    rooms.join(uuid4(), DAY, "c1")
    client.enqueue({"event": EVENT_UPDATED, "data": {"version": 9}})

    rooms.join(uuid4(), DAY, "c1")

    assert client.last_version == -1
    assert client.enqueue({"event": EVENT_UPDATED, "data": {"version": 1}}) is True


class SlowFirstSnapshot(QueueRoomBroadcaster):
    """Holds on to its first snapshot for a while before handing it back."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.reads = 0
        self.first_read = asyncio.Event()

    async def snapshot(self, doctor_id, queue_date):
        result = await super().snapshot(doctor_id, queue_date)
        self.reads += 1
        if self.reads == 1:
            self.first_read.set()
            await asyncio.sleep(0.2)
        return result


@pytest.mark.asyncio
async def test_pushes_arrive_in_commit_order_despite_slow_read(
    db_session, session_factory, slot, book, staff
):
    """A delayed read of an older state never lands after a newer one."""
    booked = await book(slot)
    slow = SlowFirstSnapshot(session_factory)
    connection = FakeConnection()
    slow.register("c1", connection)
    slow.join(slot["doctor_id"], slot["work_date"], "c1")
    service = AppointmentService(db_session, slow)

    await service.call_next(slot["doctor_id"], slot["work_date"], staff)
    # The next transition commits while the first push is still in flight
    await asyncio.wait_for(slow.first_read.wait(), 2.0)
    await service.start(booked.id, staff)
    await slow.drain()

    frames = [(await connection.next_frame())["data"] for _ in range(2)]
    assert [(f["called_count"], f["in_progress_count"]) for f in frames] == [(1, 0), (0, 1)]
    assert frames[0]["version"] < frames[1]["version"]
    assert connection.frames.empty()
    await slow.stop()


@pytest.mark.asyncio
async def test_relay_publishes_instead_of_local_delivery(session_factory, slot):
    """With a relay, snapshots go through the channel and come back via the listener."""
    relay = FakeRelay()
    broadcaster = QueueRoomBroadcaster(session_factory, relay=relay)
    connection = FakeConnection()
    broadcaster.register("c1", connection)
    broadcaster.join(slot["doctor_id"], slot["work_date"], "c1")

    await broadcaster.notify(slot["doctor_id"], slot["work_date"])

    assert len(relay.published) == 1
    channel, message = relay.published[0]
    assert channel == room_name(slot["doctor_id"], slot["work_date"])
    assert connection.frames.empty()

    # What the pattern subscriber does for every instance
    broadcaster._deliver_relayed(channel, message)
    frame = await connection.next_frame()
    assert frame["event"] == EVENT_UPDATED

    await broadcaster.stop()
