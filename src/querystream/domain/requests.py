"""
API request models for the QueryStream system.

These models define the structure for all incoming API requests,
ensuring type safety and validation at API boundaries. Bodies use camelCase
keys (connectionId, sessionId); snake_case names are accepted as well.

All fields include detailed descriptions that appear in Swagger/OpenAPI documentation.
"""

from typing import Optional

from pydantic import Field

from .types import CamelModel, Rows


class ChatStreamRequest(CamelModel):
    """Request model for one streamed natural-language question."""

    question: str = Field(
        ...,
        description="Natural language question about the connected database. "
                    "Example: 'How many failed transactions did we have yesterday?'",
        min_length=1,
        max_length=2000,
    )
    connection_id: str = Field(
        ...,
        description="Identifier of the target database connection owned by the caller.",
        min_length=1,
    )
    session_id: Optional[str] = Field(
        default=None,
        description="Existing chat session to continue. "
                    "Continuing a session requires the growth or enterprise plan. "
                    "If omitted, a new session is created and announced with a session_created event.",
    )


class DeepAnalysisRequest(CamelModel):
    """
    Request model for a multi-step deep analysis of a previous answer.

    The caller passes back the artifacts of the turn being analysed.
    """

    question: str = Field(..., description="Original question of the analysed turn", min_length=1)
    sql: str = Field(..., description="SQL that produced the analysed results", min_length=1)
    results: Rows = Field(..., description="Result rows of the analysed turn")
    connection_id: str = Field(..., description="Connection the turn ran against", min_length=1)
    session_id: str = Field(..., description="Session the analysis is appended to", min_length=1)


class RetryRequest(CamelModel):
    """Request model for re-running the SQL of a failed turn."""

    message_id: str = Field(
        ...,
        description="Assistant message flagged canRetry by a failed execution "
                    "(the retryMessageId of the error event).",
        min_length=1,
    )


class FilterRequest(CamelModel):
    """Request model for filtering a result set with a plain-language expression."""

    results: Rows = Field(..., description="Rows to filter (not modified)")
    expression: str = Field(
        ...,
        alias="filter",
        description="Filter expression. Examples: 'amount > 100', "
                    "'status = failed and merchant contains acme', 'top 5'.",
        json_schema_extra={"example": "amount > 100"},
    )
