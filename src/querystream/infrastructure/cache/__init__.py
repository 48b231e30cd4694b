"""
Schema context and query result caches.
"""

from querystream.config import CacheConfig
from querystream.config_constants import CacheBackend

from .query_cache import (
    InMemoryQueryResultCache,
    QueryResultCache,
    RedisQueryResultCache,
    normalize_question,
)
from .schema_cache import SchemaContextCache


def build_query_cache(config: CacheConfig) -> QueryResultCache:
    """Create the query result cache selected by `cache.backend`."""
    if config.backend == CacheBackend.REDIS:
        return RedisQueryResultCache.from_url(
            config.redis_url,
            ttl_minutes=config.query_ttl_minutes,
            key_prefix=config.redis_key_prefix,
            timeout_seconds=config.redis_timeout_seconds,
        )
    return InMemoryQueryResultCache(
        ttl_minutes=config.query_ttl_minutes,
        key_prefix=config.redis_key_prefix,
    )


__all__ = [
    "QueryResultCache",
    "InMemoryQueryResultCache",
    "RedisQueryResultCache",
    "SchemaContextCache",
    "build_query_cache",
    "normalize_question",
]
