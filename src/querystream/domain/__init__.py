"""
Domain package for the QueryStream system.

This package contains all domain models, entities, and value objects
used throughout the application for type safety and validation.
"""

from .base_enums import (
    DatabaseDialect,
    MessageRole,
    PipelineStage,
    PlanTier,
    StreamEventType,
    SuggestionCategory,
)
from .chat import ChatMessage, ChatSession, NewMessage
from .connections import ConnectionDescriptor, UserAccount
from .events import StreamEvent
from .pipeline import PipelineRun
from .requests import ChatStreamRequest, DeepAnalysisRequest, FilterRequest, RetryRequest
from .responses import (
    CacheClearResponse,
    CacheStatsResponse,
    ErrorResponse,
    HealthResponse,
    QueryCacheStats,
    SchemaCacheStats,
)
from .results import (
    CachedQueryResult,
    DeepAnalysisStep,
    ExecutionResult,
    FilterCondition,
    FilterResult,
    RetryOutcome,
    Suggestion,
    UsageSnapshot,
)
from .schema_context import ColumnInfo, ForeignKeyInfo, SchemaContext, TableInfo

__all__ = [
    # Enums
    "DatabaseDialect",
    "MessageRole",
    "PipelineStage",
    "PlanTier",
    "StreamEventType",
    "SuggestionCategory",

    # Accounts and chat
    "UserAccount",
    "ConnectionDescriptor",
    "ChatSession",
    "ChatMessage",
    "NewMessage",

    # Schema
    "ColumnInfo",
    "ForeignKeyInfo",
    "TableInfo",
    "SchemaContext",

    # Pipeline
    "PipelineRun",
    "StreamEvent",
    "ExecutionResult",
    "CachedQueryResult",
    "Suggestion",
    "FilterCondition",
    "FilterResult",
    "DeepAnalysisStep",
    "UsageSnapshot",
    "RetryOutcome",

    # Requests
    "ChatStreamRequest",
    "DeepAnalysisRequest",
    "RetryRequest",
    "FilterRequest",

    # Responses
    "HealthResponse",
    "ErrorResponse",
    "SchemaCacheStats",
    "QueryCacheStats",
    "CacheStatsResponse",
    "CacheClearResponse",
]
