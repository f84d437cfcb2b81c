"""Error taxonomy shared by the services and the HTTP layer.

Every error carries a stable ``kind`` and the HTTP status it maps to.
Services raise these; ``register_error_handlers`` turns them into JSON.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class BookSwapError(Exception):
    """Base exception for all BookSwap domain errors."""

    kind = "Error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_response(self) -> Dict[str, Any]:
        error = {"kind": self.kind, "message": self.message}
        error.update(self.details)
        return {"error": error}


class NotFound(BookSwapError):
    """Raised when a trade, book or user does not exist."""
    kind = "NotFound"
    http_status = status.HTTP_404_NOT_FOUND


class Forbidden(BookSwapError):
    """Raised when the caller may not act on the trade or book."""
    kind = "Forbidden"
    http_status = status.HTTP_403_FORBIDDEN


class InvalidState(BookSwapError):
    """Raised when a transition is not legal from the current state."""
    kind = "InvalidState"
    http_status = status.HTTP_409_CONFLICT


class InvalidRequest(BookSwapError):
    """Raised when a required field is missing or malformed."""
    kind = "InvalidRequest"
    http_status = status.HTTP_400_BAD_REQUEST


class Conflict(BookSwapError):
    """Raised for duplicates and for writes that lost a race."""
    kind = "Conflict"
    http_status = status.HTTP_409_CONFLICT


class Unauthorized(BookSwapError):
    """Raised when no valid caller identity is present."""
    kind = "Unauthorized"
    http_status = status.HTTP_401_UNAUTHORIZED


def register_error_handlers(app: FastAPI) -> None:
    """Register the global exception handlers on the FastAPI app."""

    @app.exception_handler(BookSwapError)
    async def bookswap_error_handler(request: Request, exc: BookSwapError):
        logger.warning(f"{exc.kind} on {request.method} {request.url.path}: {exc.message}")
        headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, Unauthorized) else None
        return JSONResponse(status_code=exc.http_status, content=exc.to_response(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={
                "error": {
                    "kind": InvalidRequest.kind,
                    "message": "Invalid request data",
                    "fields": [
                        {
                            "field": ".".join(str(loc) for loc in e["loc"]),
                            "message": e["msg"],
                        }
                        for e in exc.errors()
                    ],
                }
            },
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": {"kind": "Internal", "message": "An unexpected error occurred"}},
        )
