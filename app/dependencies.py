"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.locks import KeyedLockRegistry, get_lock_registry
from app.core.redis_client import CacheManager, get_redis_client
from app.core.security import actor_from_token
from app.database import get_db
from app.schemas.auth import Actor
from app.services.broadcaster import QueueRoomBroadcaster, get_broadcaster

# Security
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Resolve the acting user from the bearer token.

    Args:
        credentials: Bearer token credentials

    Returns:
        Actor with ID and role

    Raises:
        HTTPException: If token is invalid or expired
    """
    actor = actor_from_token(credentials.credentials)

    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return actor


async def require_staff(
    actor: Annotated[Actor, Depends(get_current_actor)],
) -> Actor:
    """
    Require a doctor, staff or admin actor.

    Raises:
        HTTPException: If the actor is a patient
    """
    if not actor.is_staff:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Clinical staff access required",
        )
    return actor


def get_cache_manager() -> CacheManager:
    """Cache manager over the shared Redis client."""
    return CacheManager(get_redis_client())


# Type aliases for dependency injection
DatabaseSession = Annotated[AsyncSession, Depends(get_db)]
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
StaffActor = Annotated[Actor, Depends(require_staff)]
Cache = Annotated[CacheManager, Depends(get_cache_manager)]
Broadcaster = Annotated[QueueRoomBroadcaster, Depends(get_broadcaster)]
LockRegistry = Annotated[KeyedLockRegistry, Depends(get_lock_registry)]
