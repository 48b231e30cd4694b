"""
Middleware and exception handlers for the QueryStream FastAPI application.

This module contains:
- HTTP middleware for request/response processing
- Centralized exception handlers for all custom exceptions
- Logging and tracing

Exception Handling Strategy:
- All QueryStreamException subclasses are caught and converted to JSON responses
- Each exception type carries its own HTTP status code
- Responses include trace_id for debugging
- Streaming endpoints report failures as a terminal `error` event instead,
  once the stream has started

Usage in main.py:
    from .api.middleware import register_exception_handlers
    register_exception_handlers(app)
"""

from datetime import datetime, timezone
from typing import Callable, Dict

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..utils.logging import get_module_logger
from ..utils.tracing import generate_trace_id, set_trace_id, current_trace_id
from ..domain.responses import ErrorResponse
from ..domain.errors import QueryStreamException

# Initialize logger for this module
logger = get_module_logger()


# =============================================================================
# Middleware Functions
# =============================================================================


async def trace_id_middleware(request: Request, call_next: Callable) -> Response:
    """
    Middleware to generate and manage trace IDs for each request.

    - Extracts trace_id from X-Trace-ID header if provided
    - Generates a new UUID trace_id if not provided
    - Sets trace_id in context for the entire request lifecycle
    - Adds trace_id to response headers
    """
    trace_id = request.headers.get("X-Trace-ID") or generate_trace_id()
    set_trace_id(trace_id)

    response = await call_next(request)
    response.headers["X-Trace-ID"] = trace_id

    return response


async def logging_middleware(request: Request, call_next: Callable) -> Response:
    """
    Middleware to log HTTP requests and responses.

    For streaming endpoints the duration covers the time to the response
    headers, not the whole stream.
    """
    start_time = datetime.now(timezone.utc)
    trace_id = current_trace_id()

    logger.info(
        "HTTP request started",
        method=request.method,
        url=str(request.url),
        user_id=request.headers.get("x-user-id"),
        client_ip=request.client.host if request.client else None,
        trace_id=trace_id
    )

    response = await call_next(request)

    duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
    response.headers["X-Process-Time"] = str(round(duration_ms, 2))

    logger.info(
        "HTTP request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
        trace_id=trace_id
    )

    return response


# =============================================================================
# Exception Handlers
# =============================================================================


def _create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Dict | None = None
) -> JSONResponse:
    """
    Create a standardized JSON error response.

    All error responses follow this structure:
    {
        "error": "error_code",
        "message": "Human readable message",
        "details": {...},  // Optional additional context
        "trace_id": "uuid",
        "timestamp": "ISO8601"
    }
    """
    error_response = ErrorResponse(
        error=error_code.lower(),
        message=message,
        details=details,
        trace_id=current_trace_id(),
        timestamp=datetime.now(timezone.utc)
    )

    return JSONResponse(
        status_code=status_code,
        content=error_response.model_dump(mode="json", exclude_none=True)
    )


async def querystream_exception_handler(request: Request, exc: QueryStreamException) -> JSONResponse:
    """
    Handler for all QueryStreamException subclasses.

    Maps exception attributes to HTTP response:
    - exc.http_status -> HTTP status code
    - exc.error_code -> error field in response
    - exc.message -> message field in response
    - exc.details plus the event fields (e.g. limitReached) -> details
    """
    log_level = "warning" if exc.http_status < 500 else "error"
    getattr(logger, log_level)(
        f"{exc.__class__.__name__}: {exc.message}",
        error_code=exc.error_code,
        http_status=exc.http_status,
        details=exc.details,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id()
    )

    details = {**exc.details, **exc.event_fields()}
    return _create_error_response(
        status_code=exc.http_status,
        error_code=exc.error_code,
        message=exc.message,
        details=details or None
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handler for FastAPI/Pydantic validation errors.

    Converts Pydantic validation errors to standardized format:
    - HTTP 422 Unprocessable Entity
    - Details include field-level error information
    """
    errors = [
        {
            "field": ".".join(str(loc) for loc in error["loc"]),
            "message": error["msg"],
            "type": error["type"]
        }
        for error in exc.errors()
    ]

    logger.warning(
        "Request validation failed",
        error_count=len(errors),
        errors=errors,
        url=str(request.url),
        method=request.method,
        trace_id=current_trace_id()
    )

    return _create_error_response(
        status_code=422,
        error_code="VALIDATION_ERROR",
        message="Request validation failed",
        details={"errors": errors}
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """
    Handler for Starlette/FastAPI HTTP exceptions.

    Converts standard HTTP exceptions to standardized format.
    """
    trace_id = current_trace_id()

    # Map status codes to error codes
    error_code_map = {
        400: "BAD_REQUEST",
        401: "UNAUTHORIZED",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
        409: "CONFLICT",
        429: "RATE_LIMIT_EXCEEDED",
        500: "INTERNAL_ERROR",
        502: "BAD_GATEWAY",
        503: "SERVICE_UNAVAILABLE",
        504: "GATEWAY_TIMEOUT",
    }

    error_code = error_code_map.get(exc.status_code, "HTTP_ERROR")

    log_level = "warning" if exc.status_code < 500 else "error"
    getattr(logger, log_level)(
        f"HTTP {exc.status_code}: {exc.detail}",
        error_code=error_code,
        http_status=exc.status_code,
        url=str(request.url),
        method=request.method,
        trace_id=trace_id
    )

    return _create_error_response(
        status_code=exc.status_code,
        error_code=error_code,
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code} error"
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global fallback handler for unhandled exceptions.

    - Logs full error details for debugging
    - Returns generic 500 error to client (no internal details exposed)
    - Always includes trace_id for correlation
    """
    trace_id = current_trace_id()

    logger.error(
        "Unhandled exception occurred",
        error=str(exc),
        error_type=type(exc).__name__,
        url=str(request.url),
        method=request.method,
        trace_id=trace_id,
        exc_info=True  # Include stack trace in logs
    )

    # Don't expose internal error details to client
    return _create_error_response(
        status_code=500,
        error_code="INTERNAL_ERROR",
        message="An internal server error occurred. Please try again later."
    )


# =============================================================================
# Exception Handler Registration
# =============================================================================


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register all exception handlers with the FastAPI application.

    Exception handling priority (first match wins):
    1. QueryStreamException subclasses
    2. RequestValidationError (Pydantic)
    3. StarletteHTTPException (FastAPI/Starlette)
    4. General Exception (fallback)

    Usage:
        app = FastAPI()
        register_exception_handlers(app)
    """
    # FastAPI uses this for any exception that inherits from QueryStreamException
    app.add_exception_handler(QueryStreamException, querystream_exception_handler)  # type: ignore[arg-type]

    app.add_exception_handler(RequestValidationError, validation_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)  # type: ignore[arg-type]

    # Fallback handler for any unhandled exceptions
    app.add_exception_handler(Exception, general_exception_handler)  # type: ignore[arg-type]

    logger.info(
        "Exception handlers registered",
        handlers=[
            "QueryStreamException",
            "RequestValidationError",
            "StarletteHTTPException",
            "Exception (fallback)"
        ]
    )


# =============================================================================
# OpenAPI Error Response Models (for documentation)
# =============================================================================

# These are used in route decorators to document error responses
# Example usage in routes:
#   @app.post("/endpoint", responses=ERROR_RESPONSES)

_EXAMPLE_TRACE_ID = "550e8400-e29b-41d4-a716-446655440000"
_EXAMPLE_TIMESTAMP = "2024-01-15T10:30:00Z"


def _error_example(description: str, error: str, message: str, details: Dict | None = None) -> Dict:
    example = {"error": error, "message": message, "trace_id": _EXAMPLE_TRACE_ID, "timestamp": _EXAMPLE_TIMESTAMP}
    if details:
        example["details"] = details
    return {"description": description, "content": {"application/json": {"example": example}}}


ERROR_RESPONSES = {
    400: _error_example(
        "Bad Request - The request was malformed or not allowed",
        "retry_not_allowed",
        "This message cannot be retried",
    ),
    401: _error_example(
        "Unauthorized - The X-User-Id header is missing or unknown",
        "unauthorized",
        "Unauthorized",
    ),
    403: _error_example(
        "Forbidden - The caller's plan does not include this feature",
        "plan_upgrade_required",
        "Deep analysis requires the Growth plan or higher",
        {"required_plan": "growth", "upgradeRequired": True, "requiredPlan": "growth"},
    ),
    404: _error_example(
        "Not Found - The requested resource was not found",
        "message_not_found",
        "Message not found",
    ),
    422: _error_example(
        "Validation Error - Request validation failed",
        "validation_error",
        "Request validation failed",
        {"errors": [{"field": "body.question", "message": "Field required", "type": "missing"}]},
    ),
    429: _error_example(
        "Quota Exceeded - The daily query limit of the plan was reached",
        "quota_exceeded",
        "Daily query limit reached (3 queries)",
        {"limit": 3, "used": 3, "limitReached": True, "currentUsage": 3},
    ),
    500: _error_example(
        "Internal Server Error - An unexpected error occurred",
        "internal_error",
        "An internal server error occurred. Please try again later.",
    ),
    503: _error_example(
        "Service Unavailable - A required service is not available",
        "cache_error",
        "Query cache is unavailable",
    ),
}
