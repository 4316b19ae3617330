"""
Centralized error handling and user-friendly error messages.
"""
import logging
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError, SQLAlchemyError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error."""
    code = "server_error"

    def __init__(self, message: str | None = None, status_code: int = 500, details: dict | None = None):
        self.message = message or get_error_message(self.code)
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(AppError):
    """Validation error."""
    code = "validation_error"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


class InvalidReferenceError(AppError):
    """Malformed record reference (e.g. an unusable program offering id)."""
    code = "invalid_reference"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


class UnauthorizedError(AppError):
    """Unauthorized access error."""
    code = "unauthorized"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=401, details=details)


class NotFoundError(AppError):
    """Resource not found error."""
    code = "not_found"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=404, details=details)


class ProfileRequiredError(NotFoundError):
    """No applicant profile is linked to the caller; one must be created first."""
    code = "profile_required"


class OfferingNotFoundError(NotFoundError):
    code = "offering_not_found"


class ConflictError(AppError):
    """Request is well-formed but the current state forbids it."""
    code = "conflict"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=409, details=details)


class NotOpenError(ConflictError):
    code = "not_open"


class CapacityExceededError(ConflictError):
    code = "capacity_exceeded"


class InvalidTransitionError(AppError):
    """Requested status can't follow the application's current one."""
    code = "invalid_transition"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=400, details=details)


class StoreUnavailableError(AppError):
    """Backing store failed or timed out. Safe to retry."""
    code = "store_unavailable"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=503, details=details)


class DuplicateApplicationError(AppError):
    """
    The store rejected a second application for the same (profile, offering).
    Raised inside the upsert critical section and resolved there by retrying.
    """
    code = "already_applied"

    def __init__(self, message: str | None = None, details: dict | None = None):
        super().__init__(message, status_code=409, details=details)


# User-friendly error messages
ERROR_MESSAGES = {
    # Identity
    "unauthorized": "Please login to access this feature.",
    "session_invalid": "Your session is invalid or has expired. Please login again.",

    # Profiles
    "profile_required": "Student profile not found. Please complete your profile before applying.",

    # Offerings
    "offering_not_found": "Program offering not found.",
    "invalid_reference": "Program offering is required.",
    "not_open": "Program offering is not open for application.",
    "capacity_exceeded": "Program offering capacity has been reached.",

    # Applications
    "invalid_transition": "This application can no longer be changed to the requested status.",
    "invalid_status": "Invalid application status.",
    "already_applied": "You have already applied to this program offering.",

    # General
    "not_found": "The requested resource was not found.",
    "conflict": "The request conflicts with the current state of the resource.",
    "store_unavailable": "The admission service is temporarily unavailable. Please try again shortly.",
    "server_error": "Something went wrong on our end. Please try again later.",
    "database_error": "Database connection issue. Please try again later.",
    "validation_error": "Please check your input and try again.",
}


def get_error_message(error_key: str, default: str | None = None) -> str:
    """Get a user-friendly error message."""
    return ERROR_MESSAGES.get(error_key, default or ERROR_MESSAGES["server_error"])


def create_error_response(
    status_code: int,
    message: str,
    code: str | None = None,
    details: dict | None = None
) -> JSONResponse:
    """Create a standardized error response."""
    content = {
        "success": False,
        "error": message,
    }

    if code:
        content["code"] = code

    if details:
        content["details"] = details

    return JSONResponse(
        status_code=status_code,
        content=content
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the JSON error handlers on an app (used by main and by tests)."""

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return create_error_response(exc.status_code, exc.message, code=exc.code, details=exc.details)

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTPException with user-friendly messages."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": exc.detail,
                "status_code": exc.status_code,
            },
        )

    @app.exception_handler(OperationalError)
    async def sqlalchemy_operational_error_handler(request: Request, exc: OperationalError):
        """Handle database operational errors."""
        logger.exception("Database OperationalError: %s", exc)
        return create_error_response(503, get_error_message("database_error"), code="store_unavailable")

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
        """Handle general database errors."""
        logger.exception("Database SQLAlchemyError: %s", exc)
        return create_error_response(500, get_error_message("database_error"), code="database_error")

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unexpected errors globally."""
        logger.exception("Unhandled exception: %s", exc)
        return create_error_response(500, get_error_message("server_error"), code="server_error")
