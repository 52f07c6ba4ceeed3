"""Standardized error handling for the runner API.

This module provides:
1. Custom exception classes for the failure kinds a run can hit
2. Exception handlers for FastAPI
3. Standard error response models

Compile failures, non-zero exits and timeouts are *results*, not errors:
they are reported in the run response body. Only rejected input and
failures of the service itself (workspace, isolation layer) raise.

Usage:
    from crunner.errors import InvalidInputError, WorkspaceError

    raise PayloadTooLargeError(detail="Source exceeds 1048576 bytes", limit=1048576)

    # Register handlers in main.py:
    from crunner.errors import register_exception_handlers
    register_exception_handlers(app)
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ErrorResponse(BaseModel):
    """Standard error response model."""

    error: str
    detail: str | None = None
    error_code: str | None = None
    context: dict[str, Any] | None = None


class APIError(Exception):
    """Base class for API errors."""

    status_code: int = 500
    error: str = "internal_error"
    detail: str = "An unexpected error occurred"

    def __init__(
        self,
        detail: str | None = None,
        error_code: str | None = None,
        **context: Any,
    ) -> None:
        self.detail = detail or self.__class__.detail
        self.error_code = error_code
        self.context = context if context else None
        super().__init__(self.detail)

    def to_response(self) -> ErrorResponse:
        """Convert exception to error response model."""
        return ErrorResponse(
            error=self.error,
            detail=self.detail,
            error_code=self.error_code,
            context=self.context,
        )


class InvalidInputError(APIError):
    """Malformed request, rejected before any workspace exists (400)."""

    status_code = 400
    error = "bad_request"
    detail = "Invalid request"


class PayloadTooLargeError(InvalidInputError):
    """Source or input over the configured ceiling (413)."""

    status_code = 413
    error = "payload_too_large"
    detail = "Payload too large"


class ServiceUnavailableError(APIError):
    """Service unavailable error (503)."""

    status_code = 503
    error = "service_unavailable"
    detail = "Service temporarily unavailable"


class WorkspaceError(APIError):
    """Filesystem failure while allocating or writing a workspace (500)."""

    status_code = 500
    error = "workspace_error"
    detail = "Workspace operation failed"


class IsolationError(APIError):
    """The isolated environment could not be started (500)."""

    status_code = 500
    error = "isolation_error"
    detail = "Failed to start the isolated environment"


class SessionProtocolError(APIError):
    """Message not valid in the interactive session's current state."""

    status_code = 400
    error = "protocol_error"
    detail = "Message not allowed in the current session state"


async def api_error_handler(request: Request, exc: APIError) -> JSONResponse:
    """Handle custom API errors."""
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        "API error: %s (status=%d, path=%s)",
        exc.detail,
        exc.status_code,
        request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(exclude_none=True),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(APIError, api_error_handler)
