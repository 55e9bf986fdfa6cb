"""Health check endpoints."""

from fastapi import APIRouter, status
from pydantic import BaseModel

from app.config import settings
from app.core.redis_client import check_redis_connection
from app.database import check_database_connection
from app.dependencies import Broadcaster, LockRegistry

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    environment: str


class DetailedHealthResponse(HealthResponse):
    """Detailed health check response model."""

    database: str
    redis: str
    broadcast_backend: str
    connected_clients: int
    active_rooms: int
    held_locks: int


@router.get(
    "/health",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Basic health check",
)
async def health_check() -> HealthResponse:
    """
    Basic health check endpoint.

    Returns:
        Basic health status
    """
    return HealthResponse(
        status="healthy",
        version=settings.app_version,
        environment=settings.environment,
    )


@router.get(
    "/health/detailed",
    response_model=DetailedHealthResponse,
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Detailed health check",
)
async def detailed_health_check(
    broadcaster: Broadcaster,
    locks: LockRegistry,
) -> DetailedHealthResponse:
    """
    Detailed health check with store, cache and realtime status.

    Redis only degrades the service when it carries the broadcast relay;
    otherwise it is just the stats cache.

    Returns:
        Detailed health status including dependencies
    """
    db_healthy = await check_database_connection()
    redis_healthy = await check_redis_connection()
    degraded = not db_healthy or (settings.uses_redis_broadcast and not redis_healthy)

    return DetailedHealthResponse(
        status="degraded" if degraded else "healthy",
        version=settings.app_version,
        environment=settings.environment,
        database="healthy" if db_healthy else "unhealthy",
        redis="healthy" if redis_healthy else "unhealthy",
        broadcast_backend=settings.broadcast_backend,
        connected_clients=len(broadcaster.clients),
        active_rooms=len(broadcaster.rooms),
        held_locks=len(locks),
    )


@router.get(
    "/ping",
    status_code=status.HTTP_200_OK,
    tags=["Health"],
    summary="Simple ping",
)
async def ping() -> dict[str, str]:
    """
    Simple ping endpoint.

    Returns:
        Pong response
    """
    return {"message": "pong"}
