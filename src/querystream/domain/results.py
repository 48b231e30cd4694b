"""
Value objects produced by the pipeline stages.

All of them are CamelModels: their payload form is what stream events,
cache entries and persisted metadata carry.
"""

from typing import Any, List, Optional

from pydantic import Field

from .base_enums import DatabaseDialect, SuggestionCategory
from .types import CamelModel, Rows


class ExecutionResult(CamelModel):
    """Query execution result with metadata."""

    rows: Rows = Field(..., description="Result rows, capped for presentation")
    column_names: List[str] = Field(default_factory=list, description="Column names in result set")
    row_count: int = Field(..., description="True number of rows the query returned")
    execution_time_ms: int = Field(..., description="Query execution time in milliseconds")
    was_limited: bool = Field(default=False, description="Whether rows were cut to the presentation cap")


class Suggestion(CamelModel):
    """A follow-up question offered after a result."""

    question: str
    description: str
    category: SuggestionCategory


class CachedQueryResult(CamelModel):
    """
    Everything needed to replay a past answer without any external call.

    `cached_at` is the Unix time (seconds) the entry was written.
    """

    sql: str
    results: Rows = Field(default_factory=list)
    interpretation: str = ""
    suggestions: List[Suggestion] = Field(default_factory=list)
    execution_time_ms: int = 0
    row_count: int = 0
    dialect: Optional[DatabaseDialect] = None
    cached_at: float = 0.0
    from_cache: bool = False


class FilterCondition(CamelModel):
    """One parsed comparison of a filter expression."""

    column: str
    operator: str = Field(..., description="One of >, <, =, !=, contains")
    value: Any


class FilterResult(CamelModel):
    rows: Rows
    message: str
    conditions: List[FilterCondition] = Field(default_factory=list)
    limit: Optional[int] = Field(default=None, description="Top-N limit applied after the conditions")


class DeepAnalysisStep(CamelModel):
    """Result of one follow-up query inside a deep analysis."""

    step_number: int
    question: str
    purpose: str
    sql: str
    results: Rows = Field(default_factory=list)
    row_count: int = 0
    insights: str = ""


class UsageSnapshot(CamelModel):
    """Today's usage for one user. `limit` and `remaining` are None when unlimited."""

    used: int
    limit: Optional[int] = None
    remaining: Optional[int] = None


class RetryOutcome(CamelModel):
    """Result of re-running a failed turn's SQL."""

    message_id: str
    retry_of: str
    sql: str
    results: Rows = Field(default_factory=list)
    row_count: int = 0
    execution_time_ms: int = 0
    interpretation: str = ""
    suggestions: List[Suggestion] = Field(default_factory=list)
    usage_remaining: Optional[int] = None
