"""
Custom exceptions and error handlers for consistent error responses.

Two families live here:

* ``TrackingError`` subclasses are raised inside the tracking service and
  converted to a failed ``ServiceResult`` at the service boundary.
* ``AppException`` subclasses are raised by endpoints and rendered by the
  global exception handlers as ``{"success": false, "error": ...}``.
"""

import enum
import logging

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    """Failure kinds reported by the tracking service."""
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    INTERNAL = "internal"


# Domain errors (service internal)

class TrackingError(Exception):
    """Base class for tracking service failures."""

    kind = ErrorKind.INTERNAL


class TrackingValidationError(TrackingError):
    """A required field is missing or malformed."""

    kind = ErrorKind.VALIDATION


class TrackingNotFoundError(TrackingError):
    """Unknown trip id or no cached location."""

    kind = ErrorKind.NOT_FOUND


class LocationExpiredError(TrackingError):
    """Cached location is older than the configured timeout."""

    kind = ErrorKind.EXPIRED


# HTTP errors

class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class ValidationFailedError(AppException):
    """Raised when the service rejects the supplied data."""

    def __init__(self, message: str = "Validation failed", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION_001",
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, message: str = "Resource not found", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details=details
        )


class ResourceExpiredError(AppException):
    """Raised when the requested resource exists but is stale."""

    def __init__(self, message: str = "Resource expired", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_EXPIRED_001",
            status_code=status.HTTP_410_GONE,
            details=details
        )


class InternalServiceError(AppException):
    """Raised when the service reports an unexpected internal failure."""

    def __init__(self, message: str = "Internal service error", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INTERNAL_001",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


class UpstreamServiceError(AppException):
    """Raised when an upstream API call fails or returns a non-2xx response."""

    def __init__(self, message: str, url: str, status_code: int = None):
        super().__init__(
            message=message,
            error_code="ERR_UPSTREAM_001",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details={"url": url, "upstream_status": status_code}
        )
        self.upstream_status = status_code


_KIND_TO_EXCEPTION = {
    ErrorKind.VALIDATION: ValidationFailedError,
    ErrorKind.NOT_FOUND: ResourceNotFoundError,
    ErrorKind.EXPIRED: ResourceExpiredError,
    ErrorKind.INTERNAL: InternalServiceError,
}


def raise_for_result(result) -> None:
    """Raise the matching AppException for a failed ServiceResult."""
    if result.success:
        return
    exc_class = _KIND_TO_EXCEPTION.get(result.error.kind, InternalServiceError)
    raise exc_class(message=result.error.message, details={"kind": result.error.kind.value})


# Global Exception Handlers

def _error_body(error_code: str, message: str, details: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "success": False,
        "error": message,
        "error_code": error_code,
        "details": details
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.error_code, exc.message, exc.details)
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        404: "ERR_NOT_FOUND",
        405: "ERR_METHOD_NOT_ALLOWED",
        410: "ERR_GONE",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(error_code, exc.detail, {})
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body(
            "ERR_VALIDATION",
            "Validation error",
            {"errors": jsonable_errors(exc)}
        )
    )


def jsonable_errors(exc: RequestValidationError):
    # ctx may carry the original exception object
    return [
        {key: value for key, value in error.items() if key != "ctx"}
        for error in exc.errors()
    ]


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception: %s: %s", type(exc).__name__, exc)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("ERR_INTERNAL_SERVER", "An internal server error occurred", {})
    )
