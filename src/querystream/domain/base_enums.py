from enum import Enum


class PlanTier(str, Enum):
    FREE = "free"
    STARTER = "starter"
    GROWTH = "growth"
    ENTERPRISE = "enterprise"


class DatabaseDialect(str, Enum):
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MSSQL = "mssql"
    SQLITE = "sqlite"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SuggestionCategory(str, Enum):
    DRILL_DOWN = "drill-down"
    TIME_BASED = "time-based"
    COMPARISON = "comparison"
    RELATED = "related"


class PipelineStage(str, Enum):
    """Stages of one streaming pipeline run, in forward order."""
    INITIALIZING = "initializing"
    USAGE_CHECK = "usage_check"
    CACHE_LOOKUP = "cache_lookup"
    SCHEMA_RESOLVE = "schema_resolve"
    SQL_GENERATING = "sql_generating"
    SQL_VALIDATING = "sql_validating"
    SQL_EXECUTING = "sql_executing"
    RESULTS_CACHING = "results_caching"
    INTERPRETING = "interpreting"
    SUGGESTION_GENERATING = "suggestion_generating"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED = "failed"


class StreamEventType(str, Enum):
    """Event names sent over the SSE stream."""
    # Chat pipeline
    STATUS = "status"
    SESSION_CREATED = "session_created"
    USER_MESSAGE = "user_message"
    CACHED_RESULT = "cached_result"
    SQL_CHUNK = "sql_chunk"
    SQL_GENERATED = "sql_generated"
    SQL_EXECUTING = "sql_executing"
    RESULTS = "results"
    INTERPRETATION_START = "interpretation_start"
    INTERPRETATION_CHUNK = "interpretation_chunk"
    INTERPRETATION_COMPLETE = "interpretation_complete"
    INFORMATIONAL_MESSAGE = "informational_message"

    # Deep analysis
    STEP_START = "step_start"
    STEP_PROGRESS = "step_progress"
    STEP_COMPLETE = "step_complete"
    COMPREHENSIVE_INSIGHTS_START = "comprehensive_insights_start"
    COMPREHENSIVE_INSIGHTS_CHUNK = "comprehensive_insights_chunk"
    COMPREHENSIVE_INSIGHTS_COMPLETE = "comprehensive_insights_complete"

    # Terminal
    COMPLETE = "complete"
    ERROR = "error"
