"""Error handling middleware.

Every error response shares one shape::

    {"error", "kind", "code", "message", "retryable", "path"}
"""

from typing import Any

import structlog
from fastapi import Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.exceptions import AppException

logger = structlog.get_logger()

_HTTP_KINDS = {
    status.HTTP_400_BAD_REQUEST: "validation",
    status.HTTP_401_UNAUTHORIZED: "auth",
    status.HTTP_403_FORBIDDEN: "auth",
    status.HTTP_404_NOT_FOUND: "not_found",
    status.HTTP_405_METHOD_NOT_ALLOWED: "validation",
}


def _error_body(
    request: Request,
    error: str,
    kind: str,
    code: str,
    message: Any,
    retryable: bool = False,
) -> dict[str, Any]:
    return {
        "error": error,
        "kind": kind,
        "code": code,
        "message": message,
        "retryable": retryable,
        "path": str(request.url),
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handle custom application exceptions.

    Args:
        request: Request object
        exc: Application exception

    Returns:
        JSON error response
    """
    log = logger.error if exc.status_code >= 500 else logger.info
    log(
        "request_rejected",
        path=request.url.path,
        kind=exc.kind,
        code=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(
            request,
            exc.__class__.__name__,
            exc.kind,
            exc.code,
            exc.message,
            exc.retryable,
        ),
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """
    Handle HTTP exceptions.

    Args:
        request: Request object
        exc: HTTP exception

    Returns:
        JSON error response
    """
    kind = _HTTP_KINDS.get(exc.status_code, "internal")
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, "HTTPException", kind, f"HTTP{exc.status_code}", exc.detail),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """
    Handle validation errors.

    Args:
        request: Request object
        exc: Validation exception

    Returns:
        JSON error response with validation details
    """
    body = _error_body(
        request, "ValidationError", "validation", "Validation", "Request validation failed"
    )
    body["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions.

    Args:
        request: Request object
        exc: Exception

    Returns:
        JSON error response
    """
    logger.error("unhandled_exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            request,
            "InternalServerError",
            "internal",
            "Internal",
            "An unexpected error occurred",
        ),
    )
