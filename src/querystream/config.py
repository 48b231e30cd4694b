"""
Configuration module for the QueryStream application.

This module defines all configuration classes using Pydantic BaseModel and BaseSettings.
Configuration is loaded from environment variables with nested delimiter "__".

Example .env:
    LLM__OPENROUTER_API_KEY=sk-xxx
    CACHE__BACKEND=redis
    CACHE__REDIS_URL=redis://localhost:6379/0
    PIPELINE__RESULT_ROW_CAP=100

Usage:
    from querystream.config import get_settings
    settings = get_settings()
    print(settings.cache.query_ttl_minutes)
"""

from functools import lru_cache
from typing import Optional

from querystream.config_constants import (
    CacheBackend,
    LogFormat,
    LogLevel,
    OPENROUTER_LLM_MODELS,
    OPEN_ROUTER_API_URL,
)

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# TARGET DATABASE CONFIGURATION
# =============================================================================

class DatabaseConfig(BaseModel):
    """
    Settings applied when connecting to a user's target database.

    Connections are opened per execution and closed right after, so there
    is no pool configuration here.
    """

    # Maximum time (seconds) to wait when establishing a new connection
    connection_timeout_seconds: int = 10

    # Default PostgreSQL schema used for introspection and execution
    default_schema: str = "public"

    # Application name sent to PostgreSQL (visible in pg_stat_activity)
    application_name: str = "querystream"

    # If True, user queries run inside a read-only transaction
    # Second line of defense behind the SQL safety gate
    enforce_read_only: bool = True


# =============================================================================
# LLM CONFIGURATION (OpenRouter)
# =============================================================================

class LLMConfig(BaseModel):
    """
    LLM client configuration for SQL generation and interpretation.

    Uses OpenRouter API to access various LLM providers. The model is
    picked per plan tier; temperatures differ for SQL and narrative text.
    """

    # OpenRouter API key (get from https://openrouter.ai/keys)
    openrouter_api_key: str

    # OpenRouter API base URL (don't change unless using proxy)
    base_url: str = OPEN_ROUTER_API_URL

    # Model used when no plan-specific model applies
    default_model: str = OPENROUTER_LLM_MODELS.GEMINI_20_FLASH

    # Per-plan models, cheaper tiers get faster models
    free_model: str = OPENROUTER_LLM_MODELS.GEMINI_20_FLASH
    starter_model: str = OPENROUTER_LLM_MODELS.GEMINI_25_FLASH_LITE
    growth_model: str = OPENROUTER_LLM_MODELS.GEMINI_25_FLASH
    enterprise_model: str = OPENROUTER_LLM_MODELS.GEMINI_25_PRO

    # Sampling temperature for SQL generation (low = deterministic)
    sql_temperature: float = 0.1

    # Sampling temperature for interpretations and summaries
    interpretation_temperature: float = 0.7

    # Nucleus sampling parameter (0.0-1.0)
    top_p: float = 0.9

    # Maximum tokens in LLM response
    max_tokens: int = 2048

    # Maximum characters allowed in LLM input (prompt + system prompt)
    # Protects against context window overflow; adjust per model limits
    max_input_chars: int = 50000

    # Maximum time (seconds) to wait for LLM response
    timeout_seconds: int = 60

    # Number of retry attempts on transient LLM errors (rate limits, timeouts)
    max_retries: int = 3


# =============================================================================
# CACHE CONFIGURATION
# =============================================================================

class CacheConfig(BaseModel):
    """
    Schema context cache and query result cache settings.

    The query result cache can live in-process (single instance) or in
    Redis when several API processes share one cache.
    """

    # "memory" for a per-process cache, "redis" for a shared one
    backend: CacheBackend = CacheBackend.MEMORY

    # Schema context validity window (minutes), measured from insertion
    schema_ttl_minutes: int = 120

    # Interval (minutes) between background sweeps of expired schema entries
    # Set to 0 to rely on lazy eviction only
    schema_cleanup_interval_minutes: int = 30

    # Query result bundle validity window (minutes)
    query_ttl_minutes: int = 30

    # Redis connection URL (only used with backend=redis)
    redis_url: str = "redis://localhost:6379/0"

    # Key prefix for cached query bundles in Redis
    redis_key_prefix: str = "query:"

    # Maximum time (seconds) to wait for Redis connect / socket operations
    redis_timeout_seconds: int = 5


# =============================================================================
# PIPELINE CONFIGURATION
# =============================================================================

class PipelineConfig(BaseModel):
    """
    Configuration for the streaming query pipeline and deep analysis.
    """

    # Maximum rows presented downstream (events, cache, persisted turns)
    # The true row count is still reported
    result_row_cap: int = 100

    # SQL execution timeout (seconds)
    execution_timeout_seconds: int = 10

    # Number of previous messages included as conversation context
    conversation_context_messages: int = 10

    # Maximum characters of the question used as a new session title
    session_title_max_chars: int = 50

    # Number of follow-up questions run by deep analysis
    deep_analysis_follow_ups: int = 3

    # Query units charged for one deep analysis
    deep_analysis_cost: int = 3


# =============================================================================
# ACCOUNTS CONFIGURATION
# =============================================================================

class AccountsConfig(BaseModel):
    """
    Source of users and target database connections.

    Both are owned by external systems; the bundled in-memory directory
    can be seeded from a JSON file for local runs and demos.
    """

    # Path to a JSON file with "users" and "connections" arrays (optional)
    seed_file: Optional[str] = None


# =============================================================================
# SERVER CONFIGURATION
# =============================================================================

class ServerConfig(BaseModel):
    """
    FastAPI/Uvicorn server configuration.

    Used by run_dev.py and run_prod.py scripts.
    """

    # Network interface to bind (0.0.0.0 = all interfaces)
    host: str = "0.0.0.0"

    # Port number to listen on
    port: int = 8000

    # Python module path for FastAPI app
    app_module: str = "querystream.main:app"

    # Enable hot reload on code changes (development only)
    reload: bool = True

    # Number of worker processes (production only, ignored with reload=True)
    workers: int = 1


# =============================================================================
# APPLICATION CONFIGURATION
# =============================================================================

class AppConfig(BaseModel):
    """
    General application settings.
    """

    # Logging level: DEBUG, INFO, WARNING, ERROR
    # DEBUG: verbose, includes SQL and prompts (development)
    # INFO: normal operation logging (production)
    log_level: LogLevel = LogLevel.INFO

    # Log output format
    # json: pretty-printed JSON records (default, machine readable)
    # console: single colored line per record (local development)
    log_format: LogFormat = LogFormat.JSON


# =============================================================================
# ROOT SETTINGS (Environment Loading)
# =============================================================================

class Settings(BaseSettings):
    """
    Root settings class that loads all configuration from environment.

    Environment variables use "__" (double underscore) as nested delimiter.
    Example: CACHE__QUERY_TTL_MINUTES sets settings.cache.query_ttl_minutes

    Required environment variables (no defaults):
    - LLM__OPENROUTER_API_KEY
    """

    # Target database connection settings
    database: DatabaseConfig = DatabaseConfig()

    # LLM client settings (OpenRouter)
    llm: LLMConfig

    # Schema and query result caches
    cache: CacheConfig = CacheConfig()

    # Streaming pipeline settings
    pipeline: PipelineConfig = PipelineConfig()

    # Users and connections source
    accounts: AccountsConfig = AccountsConfig()

    # FastAPI server settings
    server: ServerConfig = ServerConfig()

    # Application-wide settings
    app: AppConfig = AppConfig()

    model_config = SettingsConfigDict(
        env_file=".env",            # Load from .env file in project root
        env_file_encoding="utf-8",  # UTF-8 encoding for .env file
        case_sensitive=False,       # ENV_VAR and env_var are equivalent
        env_nested_delimiter="__",  # Use __ for nested config (CACHE__BACKEND)
        extra="ignore",
    )


# =============================================================================
# SINGLETON ACCESSOR
# =============================================================================

@lru_cache
def get_settings() -> Settings:
    """
    Get cached Settings instance (singleton pattern).

    Settings are loaded once and cached for the lifetime of the application.

    Returns:
        Settings instance with all configuration loaded from environment
    """
    return Settings()  # type: ignore[call-arg]
