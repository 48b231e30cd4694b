"""
FastAPI dependencies for dependency injection.

Long-lived components (clients, caches, in-memory stores) are created once
in the application lifespan and kept on app.state. The orchestrator
services are assembled per request from those shared components:

    API → Service → Repository → Infrastructure

Routes should depend on services, not infrastructure clients directly.
"""

from typing import Annotated, Optional

from fastapi import Depends, Header, Request

from ..config import Settings
from ..infrastructure.cache.query_cache import QueryResultCache
from ..infrastructure.cache.schema_cache import SchemaContextCache
from ..infrastructure.llm_client import LLMClient
from ..repositories.interpretation import InterpretationRepository
from ..repositories.schema_repository import SchemaRepository
from ..repositories.sql_execution import SQLExecutionRepository
from ..repositories.sql_generation import SQLGenerationRepository
from ..services.account_service import AccountService
from ..services.chat_stream_service import ChatStreamService
from ..services.deep_analysis_service import DeepAnalysisService
from ..services.result_filter import NaturalLanguageFilter
from ..services.retry_service import RetryService
from ..services.schema_service import SchemaService
from ..services.suggestions import SuggestionEngine
from ..services.usage_service import UsageService


def _state(request: Request, name: str):
    if not hasattr(request.app.state, name):
        raise RuntimeError(f"{name} not initialized")
    return getattr(request.app.state, name)


def get_settings(request: Request) -> Settings:
    """
    Dependency to get the settings from app state.

    Raises:
        RuntimeError: If settings are not initialized
    """
    return _state(request, "settings")


def get_user_id(x_user_id: Annotated[Optional[str], Header()] = None) -> Optional[str]:
    """Caller identity from the X-User-Id header (validated by the services)."""
    return x_user_id


# Optional dependency getters for health checks
def get_llm_client_optional(request: Request) -> LLMClient | None:
    """Get LLM client if available, None otherwise."""
    return getattr(request.app.state, "llm_client", None)


def get_query_cache_optional(request: Request) -> QueryResultCache | None:
    """Get query result cache if available, None otherwise."""
    return getattr(request.app.state, "query_cache", None)


def get_schema_cache(request: Request) -> SchemaContextCache:
    return _state(request, "schema_cache")


def get_query_cache(request: Request) -> QueryResultCache:
    return _state(request, "query_cache")


def get_account_service(request: Request) -> AccountService:
    return _state(request, "account_service")


def get_usage_service(request: Request) -> UsageService:
    return _state(request, "usage_service")


def get_schema_service(request: Request) -> SchemaService:
    """
    Dependency to get a SchemaService instance.

    Builds SchemaService → SchemaRepository → DatabaseClient (shared), backed
    by the shared schema context cache.

    Raises:
        RuntimeError: If the database client or schema cache is not initialized
    """
    db_client = _state(request, "db_client")
    settings = get_settings(request)
    schema_repo = SchemaRepository(db_client, schema=settings.database.default_schema)
    return SchemaService(schema_repository=schema_repo, cache=get_schema_cache(request))


def get_chat_stream_service(request: Request) -> ChatStreamService:
    """
    Dependency to get a ChatStreamService instance.

    Repository tree:
    ChatStreamService (orchestrator)
      ├── AccountService (shared)
      ├── UsageService (shared)
      ├── SchemaService (schema cache + introspection)
      ├── QueryResultCache (shared)
      ├── ChatRepository (shared)
      ├── SQLGenerationRepository (LLM-based generation)
      ├── SQLExecutionRepository (read-only execution)
      ├── InterpretationRepository (LLM narrative)
      └── SuggestionEngine (rule based)

    Raises:
        RuntimeError: If required clients are not initialized
    """
    settings = get_settings(request)
    llm_client = _state(request, "llm_client")
    db_client = _state(request, "db_client")

    return ChatStreamService(
        account_service=get_account_service(request),
        usage_service=get_usage_service(request),
        schema_service=get_schema_service(request),
        query_cache=get_query_cache(request),
        chat_repository=_state(request, "chat_repository"),
        sql_generation_repository=SQLGenerationRepository(llm_client=llm_client, config=settings.llm),
        sql_execution_repository=SQLExecutionRepository(db_client, row_cap=settings.pipeline.result_row_cap),
        interpretation_repository=InterpretationRepository(llm_client=llm_client, config=settings.llm),
        suggestion_engine=SuggestionEngine(),
        config=settings.pipeline,
    )


def get_deep_analysis_service(request: Request) -> DeepAnalysisService:
    """
    Dependency to get a DeepAnalysisService instance.

    Raises:
        RuntimeError: If required clients are not initialized
    """
    settings = get_settings(request)
    llm_client = _state(request, "llm_client")
    db_client = _state(request, "db_client")

    return DeepAnalysisService(
        account_service=get_account_service(request),
        usage_service=get_usage_service(request),
        schema_service=get_schema_service(request),
        chat_repository=_state(request, "chat_repository"),
        sql_generation_repository=SQLGenerationRepository(llm_client=llm_client, config=settings.llm),
        sql_execution_repository=SQLExecutionRepository(db_client, row_cap=settings.pipeline.result_row_cap),
        interpretation_repository=InterpretationRepository(llm_client=llm_client, config=settings.llm),
        suggestion_engine=SuggestionEngine(),
        config=settings.pipeline,
    )


def get_retry_service(request: Request) -> RetryService:
    settings = get_settings(request)
    llm_client = _state(request, "llm_client")
    db_client = _state(request, "db_client")

    return RetryService(
        account_service=get_account_service(request),
        usage_service=get_usage_service(request),
        chat_repository=_state(request, "chat_repository"),
        sql_execution_repository=SQLExecutionRepository(db_client, row_cap=settings.pipeline.result_row_cap),
        interpretation_repository=InterpretationRepository(llm_client=llm_client, config=settings.llm),
        suggestion_engine=SuggestionEngine(),
        config=settings.pipeline,
    )


def get_result_filter() -> NaturalLanguageFilter:
    return NaturalLanguageFilter()


# Type aliases for cleaner dependency injection
# Service dependencies (used in API routes)
ChatStreamServiceDep = Annotated[ChatStreamService, Depends(get_chat_stream_service)]
DeepAnalysisServiceDep = Annotated[DeepAnalysisService, Depends(get_deep_analysis_service)]
RetryServiceDep = Annotated[RetryService, Depends(get_retry_service)]
AccountServiceDep = Annotated[AccountService, Depends(get_account_service)]
ResultFilterDep = Annotated[NaturalLanguageFilter, Depends(get_result_filter)]
SchemaCacheDep = Annotated[SchemaContextCache, Depends(get_schema_cache)]
QueryCacheDep = Annotated[QueryResultCache, Depends(get_query_cache)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
UserIdDep = Annotated[Optional[str], Depends(get_user_id)]

# Optional client dependencies (used in health checks)
OptionalLLMClientDep = Annotated[LLMClient | None, Depends(get_llm_client_optional)]
OptionalQueryCacheDep = Annotated[QueryResultCache | None, Depends(get_query_cache_optional)]
