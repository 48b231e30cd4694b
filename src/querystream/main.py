"""
Main FastAPI application for the QueryStream system.

This module sets up the FastAPI application with proper logging,
tracing, and error handling middleware, and wires the shared components
(clients, caches, in-memory stores) into app.state.
"""

import asyncio
from contextlib import aclosing, asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, Union

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from .utils.logging import configure_logging, get_module_logger
from .utils.tracing import get_trace_id
from .domain.events import StreamEvent
from .domain.responses import (
    CacheClearResponse,
    CacheStatsResponse,
    HealthResponse,
    QueryCacheStats,
    SchemaCacheStats,
)
from .domain.requests import (
    ChatStreamRequest,
    DeepAnalysisRequest,
    FilterRequest,
    RetryRequest,
)
from .domain.results import FilterResult, RetryOutcome
from .api.middleware import (
    trace_id_middleware,
    logging_middleware,
    register_exception_handlers,
    ERROR_RESPONSES,
)
from .api.dependencies import (
    AccountServiceDep,
    ChatStreamServiceDep,
    DeepAnalysisServiceDep,
    OptionalLLMClientDep,
    OptionalQueryCacheDep,
    QueryCacheDep,
    ResultFilterDep,
    RetryServiceDep,
    SchemaCacheDep,
    SettingsDep,
    UserIdDep,
)
from .config import get_settings
from .infrastructure.cache import RedisQueryResultCache, SchemaContextCache, build_query_cache
from .infrastructure.database_client import DatabaseClient
from .infrastructure.llm_client import LLMClient
from .repositories.account_repository import (
    InMemoryConnectionRepository,
    InMemoryUserDirectory,
    load_account_seed,
)
from .repositories.chat_repository import InMemoryChatRepository
from .repositories.usage_repository import InMemoryUsageRepository
from .services.account_service import AccountService
from .services.usage_service import UsageService

VERSION = "0.1.0"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

# Configure logging on module import
configure_logging()
logger = get_module_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting QueryStream API server", version=VERSION)

    # Load settings once at startup
    settings = get_settings()
    app.state.settings = settings
    logger.info("Settings loaded successfully")

    # Initialize LLM client
    llm_client = LLMClient(settings.llm)
    try:
        await llm_client.connect()
        logger.info("LLM client connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect LLM client: {e}")
        # Continue without LLM - health check will report status

    # Target databases are opened per query
    db_client = DatabaseClient(settings.database)

    # Caches
    schema_cache = SchemaContextCache(ttl_minutes=settings.cache.schema_ttl_minutes)
    query_cache = build_query_cache(settings.cache)
    cleanup_task = asyncio.create_task(
        schema_cache.run_cleanup_loop(settings.cache.schema_cleanup_interval_minutes)
    )
    logger.info("Caches initialized", query_cache_backend=query_cache.backend_name)

    # Accounts, sessions and usage
    seed = load_account_seed(settings.accounts.seed_file)
    users = InMemoryUserDirectory(seed.users)
    connections = InMemoryConnectionRepository(seed.connections)

    # Store shared components in app state for dependency injection
    # Note: orchestrator services are created per request in dependencies.py
    app.state.llm_client = llm_client
    app.state.db_client = db_client
    app.state.schema_cache = schema_cache
    app.state.query_cache = query_cache
    app.state.chat_repository = InMemoryChatRepository()
    app.state.account_service = AccountService(users, connections, schema_cache, query_cache)
    app.state.usage_service = UsageService(InMemoryUsageRepository())

    yield

    # Shutdown
    logger.info("Shutting down QueryStream API server")

    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass

    await query_cache.close()
    logger.info("Query cache closed")

    await llm_client.close()
    logger.info("LLM client closed")


# Create FastAPI application
app = FastAPI(
    title="QueryStream API",
    description="Streaming natural language to SQL answers with schema and result caching",
    version=VERSION,
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register middleware in correct order (last registered = first executed)
app.middleware("http")(logging_middleware)
app.middleware("http")(trace_id_middleware)

# Register all exception handlers (QueryStreamException, ValidationError, HTTPException, etc.)
register_exception_handlers(app)


async def _sse_stream(request: Request, events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    """
    Encode stream events as SSE frames.

    Stops when the client disconnects; closing the event iterator cancels
    the pipeline at its current step.
    """
    async with aclosing(events) as stream:
        async for event in stream:
            if await request.is_disconnected():
                logger.info("Client disconnected, stopping stream", trace_id=get_trace_id())
                break
            yield event.to_sse()


# API Routes
@app.get("/", tags=["Root"])
async def root(settings: SettingsDep) -> Dict[str, Union[str, None]]:
    """
    Root endpoint returning basic API information.

    **Response**: Dict with message, version, trace_id, log_level
    """

    trace_id = get_trace_id()
    logger.info("Root endpoint accessed", trace_id=trace_id)

    return {
        "message": "QueryStream API",
        "version": VERSION,
        "trace_id": trace_id,
        "log_level": settings.app.log_level
    }


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health(
    llm_client: OptionalLLMClientDep,
    query_cache: OptionalQueryCacheDep,
) -> HealthResponse:
    """
    Health check endpoint.

    **Response Model**: `HealthResponse`
    - status: Overall health (healthy/degraded)
    - query_cache_backend, query_cache_status
    """

    trace_id = get_trace_id()
    logger.info("Health check endpoint accessed", trace_id=trace_id)

    llm_healthy = bool(llm_client and llm_client.is_connected())

    backend = "not_configured"
    cache_status = "not_configured"
    if query_cache is not None:
        backend = query_cache.backend_name
        cache_status = "healthy"
        if isinstance(query_cache, RedisQueryResultCache) and not await query_cache.ping():
            cache_status = "unavailable"

    overall_status = "healthy" if llm_healthy and cache_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall_status,
        timestamp=datetime.now(timezone.utc),
        version=VERSION,
        query_cache_backend=backend,
        query_cache_status=cache_status,
    )


# -------------------------
# Chat Endpoints
# -------------------------

@app.post(
    "/api/v1/chat/stream",
    tags=["Chat"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [422]},
    },
)
async def chat_stream(
    request: Request,
    body: ChatStreamRequest,
    service: ChatStreamServiceDep,
    user_id: UserIdDep,
) -> StreamingResponse:
    """
    Answer a natural language question as a Server-Sent Events stream.

    The pipeline checks the daily quota, replays a cached answer when the
    same question was asked recently on the same connection, and otherwise
    generates SQL, validates it as read-only, executes it and streams an
    interpretation with follow-up suggestions.

    **Request Model**: `ChatStreamRequest`
    - question: Natural language question
    - connectionId: Target database connection
    - sessionId: Session to continue (growth/enterprise plans)

    **Events** (in order, for a cold cache):
    - status, session_created (new sessions only), user_message
    - sql_chunk*, sql_generated, sql_executing, results
    - interpretation_start, interpretation_chunk*, interpretation_complete
    - complete {sessionId, queriesUsed, usageRemaining, canContinue, fromCache}

    A cache hit emits `cached_result` then `complete`. Every stream ends with
    exactly one `complete` or `error` event; errors carry `errorCode` and
    remedy flags (limitReached, upgradeRequired, canRetry).

    **Headers**: `X-User-Id` identifies the caller.
    """
    logger.info("Chat stream requested", connection_id=body.connection_id, trace_id=get_trace_id())
    return StreamingResponse(
        _sse_stream(request, service.run(user_id, body)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post(
    "/api/v1/chat/deep-analysis",
    tags=["Chat"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [422]},
    },
)
async def deep_analysis(
    request: Request,
    body: DeepAnalysisRequest,
    service: DeepAnalysisServiceDep,
    user_id: UserIdDep,
) -> StreamingResponse:
    """
    Run a multi-step deep analysis of a previous answer as an SSE stream.

    Runs three follow-up questions derived from the answer, then streams an
    executive summary. Costs three queries, charged only if every step
    succeeds. Requires the growth or enterprise plan.

    **Events**:
    - status
    - per step: step_start, step_progress*, step_complete
    - comprehensive_insights_start, comprehensive_insights_chunk*,
      comprehensive_insights_complete
    - complete {sessionId, queriesUsed, usageRemaining}
    """
    logger.info("Deep analysis requested", session_id=body.session_id, trace_id=get_trace_id())
    return StreamingResponse(
        _sse_stream(request, service.run(user_id, body)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post(
    "/api/v1/chat/retry",
    response_model=RetryOutcome,
    response_model_by_alias=True,
    tags=["Chat"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [400, 401, 404, 422, 429, 500]},
    },
)
async def retry_message(
    body: RetryRequest,
    service: RetryServiceDep,
    user_id: UserIdDep,
) -> RetryOutcome:
    """
    Re-run the SQL of a turn whose execution failed.

    Only messages flagged `canRetry` by a failed execution qualify, and each
    can be retried once. A successful retry is charged one query.

    **Possible Errors**:
    - 400: Message is not retryable (or was already retried)
    - 404: Unknown message
    - 429: Daily query limit reached
    - 500: Execution failed again
    """
    trace_id = get_trace_id()
    logger.info("Retry requested", message_id=body.message_id, trace_id=trace_id)

    outcome = await service.retry(user_id, body.message_id)

    logger.info("Retry completed", message_id=outcome.message_id, row_count=outcome.row_count, trace_id=trace_id)
    return outcome


# -------------------------
# Result Endpoints
# -------------------------

@app.post(
    "/api/v1/results/filter",
    response_model=FilterResult,
    response_model_by_alias=True,
    tags=["Results"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [422]},
    },
)
async def filter_results(body: FilterRequest, result_filter: ResultFilterDep) -> FilterResult:
    """
    Filter a result set with a plain-language expression.

    Runs locally over the given rows: no model call, no query, no charge.

    **Examples**: `amount > 100`, `status = failed and merchant contains acme`,
    `top 5`, `only over 1000`.
    """
    result = result_filter.apply(body.results, body.expression)
    logger.info(
        "Results filtered",
        input_rows=len(body.results),
        output_rows=len(result.rows),
        trace_id=get_trace_id(),
    )
    return result


# -------------------------
# Cache Endpoints
# -------------------------

@app.get(
    "/api/v1/cache",
    response_model=CacheStatsResponse,
    response_model_by_alias=True,
    tags=["Cache"],
)
async def cache_stats(schema_cache: SchemaCacheDep, query_cache: QueryCacheDep) -> CacheStatsResponse:
    """
    Inspect the schema context cache and the query result cache.

    The query cache reports `available: false` when a shared (redis) cache
    cannot be reached.
    """
    return CacheStatsResponse(
        schema_cache=SchemaCacheStats(**schema_cache.stats()),
        query_cache=QueryCacheStats(**await query_cache.stats()),
    )


@app.delete(
    "/api/v1/cache",
    response_model=CacheClearResponse,
    response_model_by_alias=True,
    tags=["Cache"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [503]},
    },
)
async def clear_caches(schema_cache: SchemaCacheDep, query_cache: QueryCacheDep) -> CacheClearResponse:
    """
    Clear both caches for every connection.

    **Possible Errors**:
    - 503: Shared query cache unreachable
    """
    trace_id = get_trace_id()
    schema_removed = schema_cache.clear()
    query_removed = await query_cache.clear_all()

    logger.info("All caches cleared", schema_removed=schema_removed, query_removed=query_removed, trace_id=trace_id)
    return CacheClearResponse(
        message="All caches cleared",
        schema_entries_removed=schema_removed,
        query_entries_removed=query_removed,
    )


@app.delete(
    "/api/v1/cache/{connection_id}",
    response_model=CacheClearResponse,
    response_model_by_alias=True,
    tags=["Cache"],
    responses={
        **{k: v for k, v in ERROR_RESPONSES.items() if k in [503]},
    },
)
async def invalidate_connection_cache(connection_id: str, accounts: AccountServiceDep) -> CacheClearResponse:
    """
    Invalidate the cached schema and answers of one connection.

    Use after the connection's schema or data changed.

    **Possible Errors**:
    - 503: Shared query cache unreachable
    """
    schema_removed, query_removed = await accounts.invalidate_connection(connection_id)

    logger.info(
        "Connection caches invalidated",
        connection_id=connection_id,
        schema_removed=schema_removed,
        query_removed=query_removed,
        trace_id=get_trace_id(),
    )
    return CacheClearResponse(
        message=f"Caches invalidated for connection {connection_id}",
        connection_id=connection_id,
        schema_entries_removed=schema_removed,
        query_entries_removed=query_removed,
    )



# FastAPI app is ready to be imported and run by uvicorn or other ASGI servers
# Use scripts/run_dev.py for development or uvicorn querystream.main:app
