"""Queue room broadcaster: realtime snapshot delivery per (doctor, date)."""

import asyncio
import json
from collections.abc import Callable
from datetime import date
from typing import Any, Protocol
from uuid import UUID

import structlog
from redis import asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.core.locks import KeyedLockRegistry
from app.schemas.auth import Actor
from app.schemas.queue import QueueSnapshot
from app.services.queue_registry import QueueRegistry

logger = structlog.get_logger()

RoomKey = tuple[UUID, date]

EVENT_STATE = "queue:state"
EVENT_UPDATED = "queue:updated"
EVENT_LEFT = "queue:left"
EVENT_ERROR = "queue:error"


def room_name(doctor_id: UUID, queue_date: date) -> str:
    """Channel/room name for a queue."""
    return f"queue:{doctor_id}:{queue_date.isoformat()}"


def parse_room_name(name: str) -> RoomKey:
    """Inverse of ``room_name``."""
    prefix, doctor_id, queue_date = name.split(":", 2)
    if prefix != "queue":
        raise ValueError(f"Not a queue room: {name}")
    return UUID(doctor_id), date.fromisoformat(queue_date)


def snapshot_message(event: str, snapshot: QueueSnapshot) -> dict[str, Any]:
    """Wrap a snapshot into a websocket frame."""
    return {"event": event, "data": snapshot.model_dump(mode="json")}


def frame_version(message: dict[str, Any]) -> int | None:
    """Queue version carried by a snapshot frame, None for other frames."""
    data = message.get("data")
    if isinstance(data, dict) and isinstance(data.get("version"), int):
        return data["version"]
    return None


class RoomConnection(Protocol):
    """Anything that can push a JSON frame to a client (e.g. a WebSocket)."""

    async def send_json(self, data: Any) -> None: ...


class RoomClient:
    """A connected client with its own bounded outbox and sender task."""

    def __init__(
        self,
        client_id: str,
        connection: RoomConnection,
        actor: Actor | None = None,
        queue_size: int | None = None,
    ):
        """Initialize client; call ``start`` to begin delivering."""
        self.client_id = client_id
        self.connection = connection
        self.actor = actor
        self.room: RoomKey | None = None
        # Highest snapshot version queued for this client in its current room
        self.last_version = -1
        self.outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue(
            maxsize=queue_size or settings.broadcast_client_queue_size
        )
        self.dropped = 0
        self._sender: asyncio.Task | None = None

    def start(self) -> None:
        """Start the sender task."""
        if self._sender is None:
            self._sender = asyncio.create_task(self._run_sender())

    async def stop(self) -> None:
        """Stop the sender task, discarding undelivered frames."""
        if self._sender is not None:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None

    def enqueue(self, message: dict[str, Any]) -> bool:
        """
        Queue a frame without blocking.

        Snapshot frames older than one already queued are skipped. When the
        outbox is full the oldest frame is dropped; the client recovers by
        asking for a fresh snapshot.

        Returns:
            False if a frame was skipped or had to be dropped
        """
        version = frame_version(message)
        if version is not None:
            if version < self.last_version:
                logger.debug(
                    "broadcast_stale_frame_skipped",
                    client_id=self.client_id,
                    version=version,
                    last_version=self.last_version,
                )
                return False
            self.last_version = version

        try:
            self.outbox.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.outbox.get_nowait()
            self.outbox.put_nowait(message)
            self.dropped += 1
            logger.warning("broadcast_frame_dropped", client_id=self.client_id, dropped=self.dropped)
            return False

    async def _run_sender(self) -> None:
        while True:
            message = await self.outbox.get()
            try:
                await self.connection.send_json(message)
            except Exception as e:
                # Disconnect cleanup happens in the connection handler
                logger.warning("broadcast_delivery_failed", client_id=self.client_id, error=str(e))
                return


class RedisRelay:
    """Fans room messages out to every server instance through Redis pub/sub."""

    CHANNEL_PATTERN = "queue:*"

    def __init__(self, redis_client: aioredis.Redis):
        """Initialize relay with an asyncio Redis client."""
        self.redis = redis_client

    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        """Publish one message to a room channel."""
        await self.redis.publish(channel, json.dumps(message, default=str))

    async def listen(self, deliver: Callable[[str, dict[str, Any]], Any]) -> None:
        """Forward every room message published by any instance to ``deliver``."""
        pubsub = self.redis.pubsub()
        await pubsub.psubscribe(self.CHANNEL_PATTERN)
        try:
            async for item in pubsub.listen():
                if item.get("type") != "pmessage":
                    continue
                try:
                    deliver(str(item["channel"]), json.loads(item["data"]))
                except (ValueError, KeyError) as e:
                    logger.warning("relay_message_invalid", error=str(e))
        finally:
            await pubsub.aclose()


class QueueRoomBroadcaster:
    """
    Room membership and snapshot fan-out.

    The mutation path only calls ``notify``, which schedules a background
    task; snapshots are computed in their own session after the transition
    has committed, so a slow client or a failing broadcast never affects a
    transition.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        relay: RedisRelay | None = None,
        queue_size: int | None = None,
    ):
        """Initialize broadcaster with a session factory and optional relay."""
        self.session_factory = session_factory
        self.relay = relay
        self.queue_size = queue_size
        self.clients: dict[str, RoomClient] = {}
        self.rooms: dict[RoomKey, set[str]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._listener: asyncio.Task | None = None
        self._room_locks = KeyedLockRegistry()

    # Lifecycle

    async def start(self) -> None:
        """Start listening to other instances when a relay is configured."""
        if self.relay is not None and self._listener is None:
            self._listener = asyncio.create_task(self.relay.listen(self._deliver_relayed))
            logger.info("broadcast_relay_started")

    async def stop(self) -> None:
        """Stop the relay listener and disconnect every client's sender."""
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        await self.drain()
        for client_id in list(self.clients):
            await self.unregister(client_id)

    async def drain(self) -> None:
        """Wait for pending broadcasts to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # Membership

    def register(
        self,
        client_id: str,
        connection: RoomConnection,
        actor: Actor | None = None,
    ) -> RoomClient:
        """Register a connected client and start its sender."""
        client = RoomClient(client_id, connection, actor=actor, queue_size=self.queue_size)
        self.clients[client_id] = client
        client.start()
        logger.info("ws_client_registered", client_id=client_id)
        return client

    async def unregister(self, client_id: str) -> None:
        """Forget a client (disconnect); in-flight transitions are unaffected."""
        client = self.clients.pop(client_id, None)
        if client is None:
            return
        if client.room is not None:
            self._remove_member(client.room, client_id)
        await client.stop()
        logger.info("ws_client_unregistered", client_id=client_id)

    def join(self, doctor_id: UUID, queue_date: date, client_id: str) -> RoomKey:
        """
        Put a client in a room, leaving its previous room (last join wins).

        Raises:
            KeyError: If the client is not registered
        """
        client = self.clients[client_id]
        key: RoomKey = (doctor_id, queue_date)

        if client.room != key:
            if client.room is not None:
                self._remove_member(client.room, client_id)
            client.last_version = -1

        client.room = key
        self.rooms.setdefault(key, set()).add(client_id)
        logger.info("ws_client_joined", client_id=client_id, room=room_name(*key))
        return key

    def leave(self, doctor_id: UUID, queue_date: date, client_id: str) -> bool:
        """
        Remove a client from a room.

        Returns:
            True if the client was a member of that room
        """
        key: RoomKey = (doctor_id, queue_date)
        client = self.clients.get(client_id)
        if client is None or client.room != key:
            return False

        client.room = None
        self._remove_member(key, client_id)
        logger.info("ws_client_left", client_id=client_id, room=room_name(*key))
        return True

    def members(self, doctor_id: UUID, queue_date: date) -> set[str]:
        """Client IDs currently in a room."""
        return set(self.rooms.get((doctor_id, queue_date), ()))

    def _remove_member(self, key: RoomKey, client_id: str) -> None:
        members = self.rooms.get(key)
        if members is None:
            return
        members.discard(client_id)
        if not members:
            del self.rooms[key]

    # Snapshots and fan-out

    async def snapshot(self, doctor_id: UUID, queue_date: date) -> QueueSnapshot:
        """Compute a fresh snapshot in a dedicated session."""
        async with self.session_factory() as session:
            return await QueueRegistry(session).snapshot(doctor_id, queue_date)

    async def send_state(self, client: RoomClient, doctor_id: UUID, queue_date: date) -> None:
        """
        Queue a ``queue:state`` frame for one client.

        Runs under the room's ordering lock so the reply never interleaves
        with an update being pushed to the same room.

        Raises:
            AppException: If the snapshot cannot be computed
            LockTimeoutError: If the room stays busy past the lock timeout
        """
        async with self._room_locks.hold(room_name(doctor_id, queue_date)):
            snapshot = await self.snapshot(doctor_id, queue_date)
            client.enqueue(snapshot_message(EVENT_STATE, snapshot))

    def notify(self, doctor_id: UUID, queue_date: date) -> asyncio.Task:
        """
        Schedule a snapshot push to a room; never blocks the caller.

        Returns:
            The background task (tests and shutdown may await it)
        """
        task = asyncio.create_task(self._publish_fresh(doctor_id, queue_date))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _publish_fresh(self, doctor_id: UUID, queue_date: date) -> None:
        key: RoomKey = (doctor_id, queue_date)
        if self.relay is None and not self.rooms.get(key):
            return

        room = room_name(doctor_id, queue_date)
        try:
            # Read and push as one step per room; pushes leave in commit order
            async with self._room_locks.hold(room):
                snapshot = await self.snapshot(doctor_id, queue_date)
                message = snapshot_message(EVENT_UPDATED, snapshot)

                if self.relay is not None:
                    await self.relay.publish(room, message)
                else:
                    self.deliver(key, message)
        except Exception as e:
            logger.error("broadcast_failed", room=room, error=str(e), exc_info=True)

    def deliver(self, key: RoomKey, message: dict[str, Any]) -> int:
        """
        Enqueue a frame for every local member of a room.

        Returns:
            Number of clients the frame was queued for
        """
        members = self.rooms.get(key, set())
        for client_id in list(members):
            client = self.clients.get(client_id)
            if client is not None:
                client.enqueue(message)
        return len(members)

    def _deliver_relayed(self, channel: str, message: dict[str, Any]) -> None:
        self.deliver(parse_room_name(channel), message)


# Global broadcaster instance
_broadcaster: QueueRoomBroadcaster | None = None


def get_broadcaster() -> QueueRoomBroadcaster:
    """Get or create the process-wide broadcaster."""
    global _broadcaster

    if _broadcaster is None:
        from app.core.redis_client import get_async_redis_client
        from app.database import AsyncSessionLocal

        relay = RedisRelay(get_async_redis_client()) if settings.uses_redis_broadcast else None
        _broadcaster = QueueRoomBroadcaster(AsyncSessionLocal, relay=relay)

    return _broadcaster
