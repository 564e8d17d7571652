"""Takeoff API error handling.

Every error leaves the API in one envelope:

    {"code": ..., "message": ..., "details": {...} | null, "request_id": ...}

Global exception handlers:
- TakeoffHttpError: request-level errors raised by routes
- EngineError: typed engine errors, mapped to a status by error class
- HTTPException: FastAPI/Starlette HTTP exceptions
- RequestValidationError: Pydantic validation errors
- Exception: Catch-all for unhandled exceptions (fail closed, no stack traces)
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from takeoff.errors import (
    ConcurrentAppendError,
    EngineError,
    FormulaConfigError,
    IntegrityViolation,
    SecurityError,
    StoreError,
    UnitError,
    ValidationError,
)

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-Id"

HTTP_STATUS_TO_CODE: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    422: "UNPROCESSABLE_ENTITY",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first.
_ENGINE_ERROR_STATUS: tuple[tuple[type[EngineError], int], ...] = (
    (ValidationError, 422),
    (UnitError, 422),
    (SecurityError, 400),
    (FormulaConfigError, 404),
    (ConcurrentAppendError, 409),
    (IntegrityViolation, 409),
    (StoreError, 503),
)


class ErrorResponse(BaseModel):
    """Error envelope returned by every failing endpoint."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class TakeoffHttpError(Exception):
    """Application-level HTTP error with structured error envelope.

    Attributes:
        status_code: HTTP status code (e.g., 400, 404).
        code: Machine-readable error code (e.g., "INVALID_REQUEST").
        message: Human-readable error message.
        details: Optional dict with additional error context.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def _get_request_id(request: Request) -> str:
    request_id: str | None = getattr(request.state, "request_id", None)
    if request_id is not None:
        return str(request_id)
    header_id = request.headers.get(REQUEST_ID_HEADER)
    if header_id:
        return header_id
    return str(uuid.uuid4())


def make_error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build the error envelope with the request id echoed in a header."""
    request_id = _get_request_id(request)
    body = ErrorResponse(
        code=code, message=message, details=details, request_id=request_id
    ).model_dump()

    response = JSONResponse(status_code=http_status, content=body)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def status_for_engine_error(exc: EngineError) -> int:
    for error_class, status in _ENGINE_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status
    return 500


async def takeoff_http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, TakeoffHttpError)

    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.status_code,
        details=exc.details,
    )


async def engine_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map a typed engine error to its status; context becomes details."""
    assert isinstance(exc, EngineError)

    status = status_for_engine_error(exc)
    if status >= 500:
        logger.error("Engine error %s: %s", exc.code, exc.message)
    details: dict[str, Any] = dict(exc.context)
    if exc.formula_id is not None:
        details["formula_id"] = exc.formula_id
    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=status,
        details=details or None,
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)

    code = HTTP_STATUS_TO_CODE.get(exc.status_code, "ERROR")
    message = str(exc.detail) if exc.detail else f"HTTP {exc.status_code}"
    return make_error_response(request, code=code, message=message, http_status=exc.status_code)


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map Pydantic request validation errors to the envelope.

    Only field paths and messages are exposed, never raw input values.
    """
    assert isinstance(exc, RequestValidationError)

    safe_details: list[dict[str, Any]] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        safe_loc = [str(part) for part in loc if part not in ("body", "query", "path")]
        safe_details.append(
            {
                "field": ".".join(safe_loc) if safe_loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )

    return make_error_response(
        request,
        code="REQUEST_VALIDATION_FAILED",
        message="Request validation failed",
        http_status=422,
        details={"errors": safe_details} if safe_details else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fail closed: 500 with a generic message, exception logged server-side."""
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )
    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
    )
