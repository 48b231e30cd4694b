"""
API response models for the QueryStream system.

These models define the structure for all outgoing JSON responses,
ensuring consistent response formats and type safety. Streaming endpoints
answer with SSE events instead (see domain.events).
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .types import CamelModel


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str = Field(..., description="Health status", examples=["healthy", "degraded"])
    timestamp: datetime = Field(..., description="Health check timestamp")
    version: str = Field(..., description="Application version")
    query_cache_backend: str = Field(..., description="Query result cache backend (memory or redis)")
    query_cache_status: str = Field(..., description="Query result cache status")


class ErrorResponse(BaseModel):
    """Response model for error responses."""

    error: str = Field(..., description="Error type or category")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Additional error details"
    )
    trace_id: Optional[str] = Field(
        default=None,
        description="Trace ID for debugging"
    )
    timestamp: datetime = Field(..., description="Error timestamp")


class SchemaCacheStats(CamelModel):
    size: int = Field(..., description="Number of live schema entries")
    keys: List[str] = Field(default_factory=list, description="Connection ids with a live schema entry")


class QueryCacheStats(CamelModel):
    backend: str = Field(..., description="memory or redis")
    size: int = Field(..., description="Number of live query result entries")
    available: bool = Field(default=True, description="False when the shared cache could not be reached")


class CacheStatsResponse(CamelModel):
    """Response model for cache inspection."""

    schema_cache: SchemaCacheStats
    query_cache: QueryCacheStats


class CacheClearResponse(CamelModel):
    """Response model for cache invalidation."""

    message: str
    connection_id: Optional[str] = None
    schema_entries_removed: int = 0
    query_entries_removed: int = 0
