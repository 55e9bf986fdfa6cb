"""Bounded retry of transient store and lock failures."""

from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from sqlalchemy.exc import DBAPIError, OperationalError
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from app.config import settings
from app.core.exceptions import LockTimeoutError, ServiceUnavailableException

logger = structlog.get_logger()

T = TypeVar("T")


class TransientStoreError(Exception):
    """A store race that is resolved by running the whole unit again."""


def is_transient(exc: BaseException) -> bool:
    """Tell whether an exception is worth another attempt."""
    if isinstance(exc, (LockTimeoutError, TransientStoreError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        return bool(exc.connection_invalidated)
    return False


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "transient_error_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int | None = None,
    max_wait: float | None = None,
) -> T:
    """
    Run ``operation`` and retry it on transient errors.

    The operation must be a complete unit of work (it rolls back its own
    transaction on failure), so running it again is safe.

    Args:
        operation: Zero-argument coroutine factory
        attempts: Maximum number of attempts
        max_wait: Upper bound of the backoff between attempts, in seconds

    Returns:
        The operation's result

    Raises:
        ServiceUnavailableException: If every attempt failed transiently
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts or settings.db_retry_attempts),
        wait=wait_exponential(
            multiplier=0.05,
            max=max_wait if max_wait is not None else settings.db_retry_max_wait_seconds,
        )
        + wait_random(0, 0.05),
        retry=retry_if_exception(is_transient),
        before_sleep=_log_retry,
    )

    try:
        return await retrying(operation)
    except RetryError as e:
        last = e.last_attempt.exception()
        logger.error("transient_error_exhausted", error=str(last), error_type=type(last).__name__)
        raise ServiceUnavailableException() from last
