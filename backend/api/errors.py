"""
PromptTuner - Standardized Error Handling
=========================================

Custom exception classes and error response formatting.
Provides consistent error handling across the API.
"""

from typing import Optional, List
from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog

logger = structlog.get_logger(__name__)


# =============================================================================
# Error Response Models
# =============================================================================

class ErrorDetail(BaseModel):
    """Detailed error information."""
    field: Optional[str] = None
    message: str
    code: Optional[str] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""
    error: str
    message: str
    status_code: int
    details: Optional[List[ErrorDetail]] = None
    request_id: Optional[str] = None


# =============================================================================
# Custom Exception Classes
# =============================================================================

class AppException(Exception):
    """Base exception for application errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[List[ErrorDetail]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert exception to error response."""
        return ErrorResponse(
            error=self.error_code,
            message=self.message,
            status_code=self.status_code,
            details=self.details,
            request_id=request_id,
        )


class NotFoundError(AppException):
    """Resource not found error."""

    def __init__(
        self,
        resource: str = "Resource",
        resource_id: Optional[str] = None,
    ):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            status_code=404,
            error_code="NOT_FOUND",
        )


class ValidationError(AppException):
    """Validation error."""

    def __init__(
        self,
        message: str = "Validation failed",
        details: Optional[List[ErrorDetail]] = None,
    ):
        super().__init__(
            message=message,
            status_code=400,
            error_code="VALIDATION_ERROR",
            details=details,
        )


class ConflictError(AppException):
    """The resource changed underneath the request."""

    def __init__(self, message: str = "Resource was modified concurrently"):
        super().__init__(
            message=message,
            status_code=409,
            error_code="CONFLICT",
        )


class ExternalServiceError(AppException):
    """Error from external service (LLM, etc.)."""

    def __init__(
        self,
        service: str,
        message: str,
        original_error: Optional[str] = None,
    ):
        details = None
        if original_error:
            details = [ErrorDetail(message=original_error, code="EXTERNAL_ERROR")]
        super().__init__(
            message=f"{service} error: {message}",
            status_code=502,
            error_code="EXTERNAL_SERVICE_ERROR",
            details=details,
        )


class ConfigurationError(AppException):
    """Configuration error."""

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        details = None
        if missing:
            details = [
                ErrorDetail(field=name, message="not configured", code="MISSING_SETTING")
                for name in missing
            ]
        super().__init__(
            message=message,
            status_code=500,
            error_code="CONFIGURATION_ERROR",
            details=details,
        )


# =============================================================================
# Exception Handlers for FastAPI
# =============================================================================

def _request_id(request: Request) -> Optional[str]:
    return request.headers.get("X-Request-ID")


def _envelope(response: ErrorResponse) -> JSONResponse:
    return JSONResponse(
        status_code=response.status_code,
        content=response.model_dump(exclude_none=True),
    )


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render an AppException as the standard error envelope."""
    request_id = _request_id(request)
    logger.warning(
        "Request rejected",
        error_code=exc.error_code,
        message=exc.message,
        status_code=exc.status_code,
        request_id=request_id,
        path=request.url.path,
    )
    return _envelope(exc.to_response(request_id))


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Body or query parameters failed pydantic validation."""
    details = [
        ErrorDetail(
            field=".".join(str(part) for part in error.get("loc", ()) if part != "body") or None,
            message=error.get("msg", "invalid value"),
            code=error.get("type"),
        )
        for error in exc.errors()
    ]
    logger.info("Invalid request payload", path=request.url.path, errors=len(details))
    return _envelope(ErrorResponse(
        error="VALIDATION_ERROR",
        message=f"Validation failed: {len(details)} error(s)",
        status_code=422,
        details=details,
        request_id=_request_id(request),
    ))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTPException instances."""
    request_id = _request_id(request)
    logger.warning(
        "HTTP error",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        path=request.url.path,
    )
    return _envelope(ErrorResponse(
        error=_status_code_to_error(exc.status_code),
        message=str(exc.detail),
        status_code=exc.status_code,
        request_id=request_id,
    ))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything not raised as an AppException is a 500."""
    request_id = _request_id(request)
    logger.exception(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        path=request.url.path,
    )
    return _envelope(ErrorResponse(
        error="INTERNAL_ERROR",
        message="An internal error occurred",
        status_code=500,
        request_id=request_id,
    ))


def _status_code_to_error(status_code: int) -> str:
    """Convert HTTP status code to error string."""
    error_map = {
        400: "BAD_REQUEST",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        422: "VALIDATION_ERROR",
        500: "INTERNAL_ERROR",
        502: "BAD_GATEWAY",
    }
    return error_map.get(status_code, "UNKNOWN_ERROR")


def register_exception_handlers(app) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
