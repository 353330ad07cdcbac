"""
Error handler middleware and the application's exception taxonomy.

Every error leaves the API as {"error", "correlation_id", "details"}.

Taxonomy used by the booking workflow:
- NotFoundException (404): unknown booking, crew member, assignment, notification
- ValidationException (422): bad input, invalid status transition, crew capacity
- ConflictException (409): concurrent modification, unavailable crew, full slot
- DownstreamUnavailableException (503): database unreachable after retries

Database OperationalErrors are retried by carwash.services.unit_of_work;
exhausted retries surface as DownstreamUnavailableException.
"""
import logging
from typing import Optional, Dict, Any, List
from fastapi import Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from carwash.lib.logging import get_logger

logger = get_logger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(
        self,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class NotFoundException(AppException):
    """Resource not found exception."""

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "resource_id": resource_id},
        )


class UnauthorizedException(AppException):
    """Unauthorized access exception."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(
            message=message,
            status_code=status.HTTP_401_UNAUTHORIZED,
        )


class ForbiddenException(AppException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        super().__init__(
            message=message,
            status_code=status.HTTP_403_FORBIDDEN,
        )


class BadRequestException(AppException):
    """Bad request exception."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_400_BAD_REQUEST,
            details=details or {},
        )


class ConflictException(AppException):
    """Resource conflict exception."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_409_CONFLICT,
            details=details or {},
        )


class ValidationException(AppException):
    """Validation error exception."""

    def __init__(self, message: str, errors: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors or {}},
        )


class DownstreamUnavailableException(AppException):
    """A collaborator (database, upload store) could not be reached."""

    def __init__(self, dependency: str):
        super().__init__(
            message=f"{dependency} is temporarily unavailable",
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"dependency": dependency, "retryable": True},
        )


class ConcurrentModificationException(ConflictException):
    """The booking changed between read and write; the caller must re-read."""

    def __init__(
        self,
        booking_id: str,
        expected: Optional[Dict[str, Any]] = None,
        actual: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=f"Booking '{booking_id}' was modified by another request",
            details={
                "booking_id": booking_id,
                "expected": expected or {},
                "actual": actual or {},
            },
        )


class CrewUnavailableException(ConflictException):
    """Crew member is busy or offline."""

    def __init__(self, crew_ids: List[str], reason: str = "busy or offline"):
        super().__init__(
            message=f"Crew not available ({reason}): {', '.join(crew_ids)}",
            details={"crew_ids": crew_ids, "reason": reason},
        )


class InvalidTransitionException(ValidationException):
    """Requested status does not follow the booking lifecycle."""

    def __init__(self, current: str, target: str, allowed: Optional[List[str]] = None):
        super().__init__(
            message=f"Cannot move booking from '{current}' to '{target}'",
            errors={"current": current, "target": target, "allowed": allowed or []},
        )


class CrewCapacityExceededException(ValidationException):
    """Assignment would put more crew on a booking than allowed."""

    def __init__(self, booking_id: str, requested: int, limit: int):
        super().__init__(
            message=f"Booking '{booking_id}' can take at most {limit} crew members",
            errors={"booking_id": booking_id, "requested": requested, "limit": limit},
        )


# Exception handlers
def _error_response(
    request: Request,
    status_code: int,
    error: Any,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """Render the {"error", "correlation_id", "details"} envelope."""
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "details": details or {},
        },
        headers=headers,
    )


def _request_extra(request: Request, **fields: Any) -> Dict[str, Any]:
    return {
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
        "path": request.url.path,
        "method": request.method,
        **fields,
    }


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """
    Handler for the AppException taxonomy.

    Client errors log at WARNING, 5xx at ERROR.
    """
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"Request failed: {exc.message}",
        extra=_request_extra(request, status_code=exc.status_code, details=exc.details),
    )
    return _error_response(request, exc.status_code, exc.message, exc.details)


async def validation_exception_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Handler for request body/query/path validation errors."""
    errors: List[Dict[str, Any]] = [
        {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
        for err in exc.errors()
    ]
    logger.warning("Request validation failed", extra=_request_extra(request, errors=errors))
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        "Validation error",
        {"errors": errors},
    )


async def http_exception_handler(
    request: Request,
    exc: StarletteHTTPException,
) -> JSONResponse:
    """Handler for Starlette HTTP exceptions (unknown routes, wrong methods)."""
    logger.warning(
        f"HTTP {exc.status_code}: {exc.detail}",
        extra=_request_extra(request, status_code=exc.status_code),
    )
    return _error_response(
        request,
        exc.status_code,
        exc.detail,
        headers=getattr(exc, "headers", None),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception: {exc}", extra=_request_extra(request), exc_info=True)
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")
