"""JWT handling for the identity credential.

Tokens are issued by the identity service; this service only decodes them.
``create_access_token`` is kept for tooling and tests.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from jose import JWTError, jwt

from app.config import settings
from app.schemas.auth import Actor, ActorRole


def create_access_token(
    data: dict[str, Any],
    expires_delta: timedelta | None = None,
) -> str:
    """
    Create a JWT access token.

    Args:
        data: Payload data to encode
        expires_delta: Optional expiration time delta

    Returns:
        Encoded JWT token
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(UTC) + expires_delta
    else:
        expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)

    to_encode.update(
        {
            "exp": expire,
            "iat": datetime.now(UTC),
            "type": "access",
        }
    )

    encoded_jwt = jwt.encode(
        to_encode,
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )

    return encoded_jwt


def decode_access_token(token: str) -> dict[str, Any] | None:
    """
    Decode and validate a JWT access token.

    Args:
        token: JWT token to decode

    Returns:
        Decoded payload or None if invalid
    """
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret_key,
            algorithms=[settings.jwt_algorithm],
        )

        # Verify token type
        if payload.get("type") != "access":
            return None

        return payload
    except JWTError:
        return None


def actor_from_token(token: str) -> Actor | None:
    """
    Resolve an actor from a bearer token.

    Returns:
        Actor, or None if the token is invalid or lacks a usable subject/role
    """
    payload = decode_access_token(token)
    if payload is None:
        return None

    subject = payload.get("sub")
    role = payload.get("role", ActorRole.PATIENT.value)
    if not isinstance(subject, str):
        return None

    try:
        return Actor(id=UUID(subject), role=ActorRole(str(role).lower()))
    except ValueError:
        return None
