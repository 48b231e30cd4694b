"""
Custom exception hierarchy for the QueryStream system.

Every exception carries:
- a machine-readable error code
- the HTTP status used by the JSON exception handlers
- structured details for logs and API responses

Streaming endpoints do not raise to the client; the orchestrators convert
exceptions into a terminal `error` event via `to_event_payload()`, whose
structured flags (upgradeRequired, limitReached, queriesNeeded, ...) let a UI
choose a remedy without matching on the message text.

Usage:
    raise QuotaExceededError(limit=3, used=3)
    raise QueryExecutionError("relation \"userz\" does not exist", attempted_sql=sql)
"""

from typing import Any, Dict, Optional


class QueryStreamException(Exception):
    """
    Base exception for all QueryStream errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (e.g., "QUOTA_EXCEEDED")
        http_status: HTTP status code to return (default: 500)
        details: Optional dictionary with additional error context
    """

    error_code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code
        if http_status:
            self.http_status = http_status

    def event_fields(self) -> Dict[str, Any]:
        """Structured fields added to the stream `error` event."""
        return {}

    def to_event_payload(self) -> Dict[str, Any]:
        """Build the payload of a terminal `error` stream event."""
        payload: Dict[str, Any] = {
            "message": self.message,
            "errorCode": self.error_code,
        }
        payload.update(self.event_fields())
        return payload


# =============================================================================
# Client Errors (4xx)
# =============================================================================


class BadRequestError(QueryStreamException):
    """
    Raised when the request is malformed or invalid.

    HTTP Status: 400 Bad Request
    """

    error_code = "BAD_REQUEST"
    http_status = 400


class NotFoundError(QueryStreamException):
    """
    Raised when a requested resource is not found.

    HTTP Status: 404 Not Found
    """

    error_code = "NOT_FOUND"
    http_status = 404


class UnauthorizedError(QueryStreamException):
    """
    Raised when the caller identity is missing or unknown.

    HTTP Status: 401 Unauthorized
    """

    error_code = "UNAUTHORIZED"
    http_status = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class QuotaExceededError(QueryStreamException):
    """
    Raised when today's usage counter has reached the plan limit.

    HTTP Status: 429 Too Many Requests
    """

    error_code = "QUOTA_EXCEEDED"
    http_status = 429

    def __init__(self, limit: int, used: int):
        super().__init__(
            f"Daily query limit reached ({limit} queries)",
            details={"limit": limit, "used": used},
        )
        self.limit = limit
        self.used = used

    def event_fields(self) -> Dict[str, Any]:
        return {
            "limitReached": True,
            "limit": self.limit,
            "currentUsage": self.used,
        }


class InsufficientQuotaError(QueryStreamException):
    """
    Raised when an operation costs more units than remain today.

    HTTP Status: 429 Too Many Requests
    """

    error_code = "INSUFFICIENT_QUOTA"
    http_status = 429

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient queries for deep analysis. Need {required}, have {available} remaining.",
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available

    def event_fields(self) -> Dict[str, Any]:
        return {
            "queriesNeeded": self.required,
            "queriesAvailable": self.available,
        }


class PlanUpgradeRequiredError(QueryStreamException):
    """
    Raised when the caller's plan tier does not include a feature.

    HTTP Status: 403 Forbidden
    """

    error_code = "PLAN_UPGRADE_REQUIRED"
    http_status = 403

    def __init__(self, message: str, required_plan: str):
        super().__init__(message, details={"required_plan": required_plan})
        self.required_plan = required_plan

    def event_fields(self) -> Dict[str, Any]:
        return {"upgradeRequired": True, "requiredPlan": self.required_plan}


class ConnectionNotFoundError(NotFoundError):
    """Raised when a connection id is unknown or owned by another user."""

    error_code = "CONNECTION_NOT_FOUND"

    def __init__(self, connection_id: str):
        super().__init__("Database connection not found", details={"connection_id": connection_id})


class SessionNotFoundError(NotFoundError):
    """Raised when a chat session is unknown or owned by another user."""

    error_code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        super().__init__("Session not found", details={"session_id": session_id})


class MessageNotFoundError(NotFoundError):
    """Raised when a chat message is unknown or owned by another user."""

    error_code = "MESSAGE_NOT_FOUND"

    def __init__(self, message_id: str):
        super().__init__("Message not found", details={"message_id": message_id})


class RetryNotAllowedError(BadRequestError):
    """Raised when a message is not flagged retryable or was already retried."""

    error_code = "RETRY_NOT_ALLOWED"


# =============================================================================
# SQL Errors (4xx/5xx)
# =============================================================================


class SQLValidationError(QueryStreamException):
    """
    Base class for safety gate rejections.

    HTTP Status: 422 Unprocessable Entity
    """

    error_code = "SQL_VALIDATION_ERROR"
    http_status = 422


class DangerousOperationError(SQLValidationError):
    """Raised when generated SQL contains a write/DDL/DCL keyword."""

    error_code = "DANGEROUS_OPERATION"

    def __init__(self, keyword: str):
        super().__init__(
            "Dangerous SQL operation detected. Only SELECT queries are allowed.",
            details={"keyword": keyword},
        )
        self.keyword = keyword


class NotSelectError(SQLValidationError):
    """Raised when generated SQL does not start with SELECT."""

    error_code = "NOT_SELECT"


class SQLGenerationError(QueryStreamException):
    """
    Raised when the SQL generator call fails.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "SQL_GENERATION_FAILED"
    http_status = 503


class QueryExecutionError(QueryStreamException):
    """
    Raised when executing validated SQL against the target database fails.

    Carries the raw driver message and the attempted SQL so the caller can
    show diagnostics and offer a single retry.

    HTTP Status: 500 Internal Server Error
    """

    error_code = "QUERY_EXECUTION_ERROR"
    http_status = 500

    def __init__(
        self,
        driver_message: str,
        attempted_sql: str,
        can_retry: bool = True,
        retry_message_id: Optional[str] = None,
    ):
        super().__init__(
            f"Query execution failed: {driver_message}",
            details={"driver_message": driver_message, "attempted_sql": attempted_sql},
        )
        self.driver_message = driver_message
        self.attempted_sql = attempted_sql
        self.can_retry = can_retry
        self.retry_message_id = retry_message_id

    def event_fields(self) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            "sql": self.attempted_sql,
            "driverMessage": self.driver_message,
            "canRetry": self.can_retry,
        }
        if self.retry_message_id:
            fields["retryMessageId"] = self.retry_message_id
        return fields


# =============================================================================
# Infrastructure Errors (5xx)
# =============================================================================


class ConfigurationError(QueryStreamException):
    """
    Raised when configuration is invalid or missing.

    HTTP Status: 500 Internal Server Error
    """

    error_code = "CONFIGURATION_ERROR"
    http_status = 500


class DatabaseConnectionError(QueryStreamException):
    """
    Raised when the target database cannot be reached.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "DATABASE_CONNECTION_ERROR"
    http_status = 503


class DatabaseQueryError(QueryStreamException):
    """
    Raised when the target database rejects or aborts a statement.

    The message is the driver's own text; repositories wrap it into the
    pipeline-facing error for their step.

    HTTP Status: 500 Internal Server Error
    """

    error_code = "DATABASE_QUERY_ERROR"
    http_status = 500


class UnsupportedDialectError(QueryStreamException):
    """
    Raised when no driver is available for a connection's dialect.

    HTTP Status: 501 Not Implemented
    """

    error_code = "UNSUPPORTED_DIALECT"
    http_status = 501


class SchemaIntrospectionError(QueryStreamException):
    """
    Raised when the schema of a target database cannot be read.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "SCHEMA_INTROSPECTION_FAILED"
    http_status = 503


class LLMError(QueryStreamException):
    """
    Raised when LLM operations fail.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "LLM_ERROR"
    http_status = 503


class InterpretationError(QueryStreamException):
    """
    Raised when the interpreter call fails.

    HTTP Status: 503 Service Unavailable
    """

    error_code = "INTERPRETATION_FAILED"
    http_status = 503


class DeepAnalysisStepError(QueryStreamException):
    """
    Raised when one follow-up step of a deep analysis fails.

    The whole analysis fails with it: nothing is persisted or charged.
    """

    error_code = "DEEP_ANALYSIS_STEP_FAILED"
    http_status = 500

    def __init__(self, step_number: int, question: str, reason: str):
        super().__init__(
            f"Deep analysis step {step_number} failed: {reason}",
            details={"step_number": step_number, "question": question, "reason": reason},
        )
        self.step_number = step_number
        self.question = question
        self.reason = reason

    def event_fields(self) -> Dict[str, Any]:
        return {"failedStep": self.step_number, "failedQuestion": self.question}


class CacheError(QueryStreamException):
    """
    Raised when the shared query cache is unreachable.

    Callers treat it as a miss; it never fails a pipeline run.
    """

    error_code = "CACHE_ERROR"
    http_status = 503


class InternalError(QueryStreamException):
    """
    Raised for invariant violations inside the pipeline.

    HTTP Status: 500 Internal Server Error
    """

    error_code = "INTERNAL_ERROR"
    http_status = 500
