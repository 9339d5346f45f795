"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes
    • Consistent JSON error response format
    • Automatic logging of unhandled errors
    • Request context in error responses (non-production)

Usage:
    from skyguard.core.errors import (
        SkyGuardError,
        ValidationError,
        RateLimitError,
        register_error_handlers,
    )

    raise ValidationError("Title cannot be empty", field="title")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from skyguard.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SkyGuardError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class ValidationError(SkyGuardError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class RateLimitError(SkyGuardError):
    """Rate limit exceeded (429)."""

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


class AuthRequiredError(SkyGuardError):
    """No authenticated user context (401)."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__(
            message=message,
            status_code=401,
            error_code="AUTH_REQUIRED",
        )


class ForbiddenError(SkyGuardError):
    """Authenticated but not allowed (403)."""

    def __init__(self, message: str = "Administrator role required"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="FORBIDDEN",
        )


class NotFoundError(SkyGuardError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ExternalFetchError(SkyGuardError):
    """External weather API call failed (502)."""

    def __init__(self, service: str, message: str = "", **details: Any):
        super().__init__(
            message=f"External service '{service}' failed: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details={"service": service, **details},
        )


class PersistenceError(SkyGuardError):
    """
    Store write failed (500).

    The caller only ever sees the generic message; the underlying cause is
    logged server-side by whoever raises this.
    """

    def __init__(self, operation: str):
        super().__init__(
            message="Failed to save changes. Please try again later.",
            status_code=500,
            error_code="PERSISTENCE_ERROR",
            details={"operation": operation},
        )


class PartialFanoutError(SkyGuardError):
    """
    Alert committed but fewer recipients were enrolled than resolved.

    Recoverable: the fan-out engine logs it and returns the achieved count.
    """

    def __init__(self, alert_id: str, expected: int, persisted: int):
        super().__init__(
            message=(
                f"Alert {alert_id} enrolled {persisted} of {expected} "
                f"eligible recipients"
            ),
            status_code=500,
            error_code="PARTIAL_FANOUT",
            details={
                "alert_id": alert_id,
                "expected": expected,
                "persisted": persisted,
            },
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body, headers=headers)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SkyGuardError)
    async def handle_skyguard_error(request: Request, exc: SkyGuardError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        headers = None
        if isinstance(exc, RateLimitError):
            headers = {"Retry-After": str(exc.details["retry_after_seconds"])}
        # Persistence failures never leak which table or statement failed
        details = None if isinstance(exc, PersistenceError) else exc.details
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            details, request, headers,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        logger.warning("Request validation failed: %s", exc.errors())
        return _build_error_response(
            422, "VALIDATION_ERROR", "Invalid request",
            {"errors": jsonable_encoder(exc.errors())}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
