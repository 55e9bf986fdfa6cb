"""Logging configuration and request context for the queue service."""

import logging
import sys
import time
import uuid
from collections.abc import Callable
from datetime import date
from typing import Any
from uuid import UUID

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings

# Query parameters naming a doctor's queue for one day
QUEUE_QUERY_PARAMS = {"doctor_id": "doctor_id", "date": "queue_date"}


def configure_logging() -> None:
    """Configure structured logging."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        processors = shared_processors + [
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Configure standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )


def bind_queue_context(doctor_id: UUID, queue_date: date) -> None:
    """Tag every following log line of this task with the queue it concerns."""
    structlog.contextvars.bind_contextvars(
        doctor_id=str(doctor_id),
        queue_date=queue_date.isoformat(),
    )


def queue_context_from_request(request: Request) -> dict[str, Any]:
    """
    Queue identifiers found in the query string.

    Values are logged as sent; validation is left to the endpoint.
    """
    return {
        field: request.query_params[param]
        for param, field in QUEUE_QUERY_PARAMS.items()
        if param in request.query_params
    }


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each HTTP request with its correlation ID and queue context."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable,
    ) -> Response:
        """
        Log request and response details.

        The request ID comes from ``X-Request-ID`` when the caller sends one
        and is echoed back. Queue endpoints that name a doctor and a date in
        the query string have both bound for the whole request; the services
        bind them for body-addressed transitions.

        Args:
            request: Request object
            call_next: Next middleware in chain

        Returns:
            Response object
        """
        logger = structlog.get_logger()

        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            **queue_context_from_request(request),
        )

        start_time = time.time()
        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                duration=time.time() - start_time,
            )
            raise

        duration = time.time() - start_time
        log = logger.warning if response.status_code == 409 else logger.info
        log(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration=duration,
        )

        response.headers["X-Process-Time"] = str(duration)
        response.headers["X-Request-ID"] = request_id

        return response
