import os
import sys
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date, time, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# The app module builds its engine and settings at import time
os.environ.setdefault(
    "DATABASE_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'outpatient_queue_app.db'}"
)
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-not-for-production")
os.environ.setdefault("LOG_FORMAT", "console")

from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import insert  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from app.config import settings  # noqa: E402
from app.core.redis_client import CacheManager  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.database import build_engine, get_db  # noqa: E402
from app.dependencies import get_cache_manager  # noqa: E402
from app.main import app  # noqa: E402
from app.models import doctors, metadata, schedule_slots  # noqa: E402
from app.schemas.appointments import AppointmentCreate, AppointmentResponse  # noqa: E402
from app.schemas.auth import Actor, ActorRole  # noqa: E402
from app.services.appointment_service import AppointmentService  # noqa: E402
from app.services.broadcaster import QueueRoomBroadcaster, get_broadcaster  # noqa: E402

# Test database URL - MUST be different from the service database.
# Unset means a fresh SQLite file per test.
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")

# Additional safety: ensure we're not using the service database
if TEST_DATABASE_URL and settings.database_url == TEST_DATABASE_URL:
    print("\n❌ CRITICAL ERROR: Test database URL is same as the service database!")
    print("This would DROP all queue data during tests.")
    print("Please set TEST_DATABASE_URL to a separate test database in .env")
    sys.exit(1)

QUEUE_DATE = date(2026, 10, 20)


def database_url_for(tmp_path: Path) -> str:
    """Database URL for one test."""
    return TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'queue_test.db'}"


@pytest_asyncio.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test engine with a fresh schema."""
    # NullPool avoids sharing connections between event loops
    test_engine = build_engine(database_url_for(tmp_path), poolclass=NullPool, echo=False)

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test engine."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def broadcaster(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[QueueRoomBroadcaster, None]:
    """In-memory broadcaster reading from the test database."""
    room_broadcaster = QueueRoomBroadcaster(session_factory)
    yield room_broadcaster
    await room_broadcaster.stop()


@pytest.fixture
def mock_redis() -> MagicMock:
    """Redis client double that always misses."""
    redis = MagicMock()
    redis.get.return_value = None
    return redis


@pytest.fixture
def cache_manager(mock_redis: MagicMock) -> CacheManager:
    """Cache manager over the Redis double."""
    return CacheManager(mock_redis)


@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    broadcaster: QueueRoomBroadcaster,
    cache_manager: CacheManager,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_broadcaster] = lambda: broadcaster
    app.dependency_overrides[get_cache_manager] = lambda: cache_manager

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# Reference data


@pytest.fixture
def make_doctor(
    db_session: AsyncSession,
) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Factory inserting a doctors row."""

    async def _make_doctor(**overrides: Any) -> dict[str, Any]:
        values = {
            "id": uuid4(),
            "user_id": uuid4(),
            "department_id": uuid4(),
            "room_id": uuid4(),
            "is_active": True,
        }
        values.update(overrides)
        await db_session.execute(insert(doctors).values(**values))
        await db_session.commit()
        return values

    return _make_doctor


@pytest.fixture
def make_slot(
    db_session: AsyncSession,
) -> Callable[..., Awaitable[dict[str, Any]]]:
    """Factory inserting a schedule_slots row."""

    async def _make_slot(doctor_id: UUID, **overrides: Any) -> dict[str, Any]:
        values = {
            "id": uuid4(),
            "doctor_id": doctor_id,
            "work_date": QUEUE_DATE,
            "start_time": time(8, 0),
            "end_time": time(12, 0),
            "max_patients": 10,
            "booked_count": 0,
            "is_active": True,
        }
        values.update(overrides)
        await db_session.execute(insert(schedule_slots).values(**values))
        await db_session.commit()
        return values

    return _make_slot


@pytest_asyncio.fixture
async def doctor(make_doctor: Callable[..., Awaitable[dict[str, Any]]]) -> dict[str, Any]:
    """An active doctor."""
    return await make_doctor()


@pytest_asyncio.fixture
async def slot(
    doctor: dict[str, Any],
    make_slot: Callable[..., Awaitable[dict[str, Any]]],
) -> dict[str, Any]:
    """A morning slot of the doctor with room for ten patients."""
    return await make_slot(doctor["id"])


# Actors


@pytest.fixture
def patient() -> Actor:
    return Actor(id=uuid4(), role=ActorRole.PATIENT)


@pytest.fixture
def other_patient() -> Actor:
    return Actor(id=uuid4(), role=ActorRole.PATIENT)


@pytest.fixture
def staff() -> Actor:
    return Actor(id=uuid4(), role=ActorRole.STAFF)


@pytest.fixture
def doctor_actor(doctor: dict[str, Any]) -> Actor:
    """The doctor's own login."""
    return Actor(id=doctor["user_id"], role=ActorRole.DOCTOR)


def token_for(actor: Actor) -> str:
    """Issue an access token for an actor."""
    return create_access_token(
        data={"sub": str(actor.id), "role": actor.role.value},
        expires_delta=timedelta(minutes=30),
    )


def headers_for(actor: Actor) -> dict[str, str]:
    """Create authentication headers for an actor."""
    return {"Authorization": f"Bearer {token_for(actor)}"}


@pytest.fixture
def auth_headers(patient: Actor) -> dict[str, str]:
    """Create authentication headers for the patient."""
    return headers_for(patient)


@pytest.fixture
def staff_headers(staff: Actor) -> dict[str, str]:
    """Create authentication headers for staff."""
    return headers_for(staff)


# Booking helper


@pytest.fixture
def book(
    db_session: AsyncSession,
    broadcaster: QueueRoomBroadcaster,
) -> Callable[..., Awaitable[AppointmentResponse]]:
    """Book a slot through the service, as the patient themselves."""

    async def _book(
        slot: dict[str, Any],
        actor: Actor | None = None,
        appointment_time: time | None = None,
    ) -> AppointmentResponse:
        actor = actor or Actor(id=uuid4(), role=ActorRole.PATIENT)
        service = AppointmentService(db_session, broadcaster)
        return await service.book(
            actor,
            AppointmentCreate(
                doctor_id=slot["doctor_id"],
                schedule_slot_id=slot["id"],
                appointment_date=slot["work_date"],
                appointment_time=appointment_time or slot["start_time"],
            ),
        )

    return _book


@pytest.fixture
def auth_headers_for() -> Callable[[Actor], dict[str, str]]:
    """Header factory for any actor."""
    return headers_for


@pytest.fixture
def queue_date() -> date:
    """Day every fixture slot is scheduled on."""
    return QUEUE_DATE
