"""Keyed asyncio locks for per-slot and per-queue mutual exclusion."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from uuid import UUID

import structlog

from app.config import settings
from app.core.exceptions import LockTimeoutError

logger = structlog.get_logger()


def slot_lock_key(slot_id: UUID) -> str:
    """Lock key guarding one schedule slot's capacity."""
    return f"slot:{slot_id}"


def queue_lock_key(doctor_id: UUID, queue_date: date) -> str:
    """Lock key guarding one doctor's queue for one day."""
    return f"queue:{doctor_id}:{queue_date.isoformat()}"


class KeyedLockRegistry:
    """
    One asyncio.Lock per key, created on first use and dropped when idle.

    Locks only serialize coroutines inside this process; the store-level
    guards (conditional updates, unique indexes) cover other instances.
    """

    def __init__(self, timeout: float | None = None):
        """Initialize registry with an acquisition timeout in seconds."""
        self.timeout = timeout if timeout is not None else settings.lock_timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, *keys: str) -> AsyncIterator[None]:
        """
        Acquire the locks for ``keys`` in the given order.

        Args:
            keys: Lock keys, outermost first (slot before queue)

        Raises:
            LockTimeoutError: If any lock is not acquired within the timeout
        """
        acquired: list[str] = []
        try:
            for key in keys:
                await self._acquire(key)
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._release(key)

    async def _acquire(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1

        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except TimeoutError:
            self._forget(key)
            logger.warning("lock_acquire_timeout", key=key, timeout=self.timeout)
            raise LockTimeoutError(f"Timed out waiting for lock {key}") from None
        except BaseException:
            self._forget(key)
            raise

    def _release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        remaining = self._users.get(key, 1) - 1
        if remaining <= 0:
            self._users.pop(key, None)
            self._locks.pop(key, None)
        else:
            self._users[key] = remaining


# Global registry shared by all request handlers of this process
_lock_registry: KeyedLockRegistry | None = None


def get_lock_registry() -> KeyedLockRegistry:
    """Get or create the process-wide lock registry."""
    global _lock_registry

    if _lock_registry is None:
        _lock_registry = KeyedLockRegistry()

    return _lock_registry
