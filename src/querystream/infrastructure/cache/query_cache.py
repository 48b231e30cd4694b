"""
Query result cache.

Stores complete answer bundles (SQL, capped rows, interpretation,
suggestions) keyed by connection and normalized question, so a repeated
question is answered without any model or database call.

Key format:
    query:{quoted connection_id}:{normalized question}

The connection id is percent-quoted (no `:` or glob characters survive),
so one connection's keys never share a prefix with another's.

Normalization lowercases, trims and collapses whitespace runs, so
"Show   Users " and "show users" share one entry.

Two backends share one interface:
- InMemoryQueryResultCache: per-process dict, injected clock
- RedisQueryResultCache: shared across API processes (redis.asyncio)

Redis failures never fail a pipeline run: reads degrade to a miss and
writes to a no-op. Explicit clears raise CacheError so admin callers see
that nothing was removed.
"""

import re
import time
from urllib.parse import quote
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from querystream.domain.errors import CacheError
from querystream.domain.results import CachedQueryResult
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

DEFAULT_KEY_PREFIX = "query:"

_WHITESPACE = re.compile(r"\s+")
_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


def normalize_question(question: str) -> str:
    return _WHITESPACE.sub(" ", question.strip().lower())


def quote_connection_id(connection_id: str) -> str:
    return quote(connection_id, safe="")


def escape_glob(text: str) -> str:
    """Escape Redis glob metacharacters for a literal SCAN match."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class QueryResultCache(ABC):
    """Interface shared by the in-memory and Redis backends."""

    backend_name: str = "abstract"

    def __init__(self, ttl_minutes: int = 30, key_prefix: str = DEFAULT_KEY_PREFIX):
        self.default_ttl_seconds = ttl_minutes * 60
        self.key_prefix = key_prefix

    def key(self, question: str, connection_id: str) -> str:
        return f"{self.key_prefix}{quote_connection_id(connection_id)}:{normalize_question(question)}"

    def connection_prefix(self, connection_id: str) -> str:
        return f"{self.key_prefix}{quote_connection_id(connection_id)}:"

    def _ttl_seconds(self, ttl_minutes: Optional[float]) -> int:
        if ttl_minutes is None:
            return self.default_ttl_seconds
        return max(1, int(ttl_minutes * 60))

    @abstractmethod
    async def get(self, key: str) -> Optional[CachedQueryResult]:
        """Return a copy of the bundle marked from_cache, or None on miss/expiry."""

    @abstractmethod
    async def set(self, key: str, bundle: CachedQueryResult, ttl_minutes: Optional[float] = None) -> None:
        ...

    @abstractmethod
    async def clear_for_connection(self, connection_id: str) -> int:
        """Remove every entry of one connection. Returns the number removed."""

    @abstractmethod
    async def clear_all(self) -> int:
        ...

    @abstractmethod
    async def stats(self) -> Dict[str, object]:
        ...

    async def close(self) -> None:
        return None


@dataclass
class _MemoryEntry:
    bundle: CachedQueryResult
    stored_at: float
    ttl_seconds: int


class InMemoryQueryResultCache(QueryResultCache):
    """
    Per-process cache. An entry is live while its age is below its TTL.

    Expiry runs on the monotonic `clock`; `cached_at` records `wall_clock`.
    Every write sweeps expired entries, so abandoned questions do not pile up.
    """

    backend_name = "memory"

    def __init__(
        self,
        ttl_minutes: int = 30,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        super().__init__(ttl_minutes=ttl_minutes, key_prefix=key_prefix)
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: Dict[str, _MemoryEntry] = {}

    def cleanup(self) -> int:
        """Purge expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if now - e.stored_at >= e.ttl_seconds]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Query cache cleanup", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    async def get(self, key: str) -> Optional[CachedQueryResult]:
        entry = self._entries.get(key)
        if entry is None:
            logger.info("Query cache MISS", cache_key=key, trace_id=current_trace_id())
            return None

        if self._clock() - entry.stored_at >= entry.ttl_seconds:
            del self._entries[key]
            logger.info("Query cache EXPIRED", cache_key=key, trace_id=current_trace_id())
            return None

        logger.info("Query cache HIT", cache_key=key, trace_id=current_trace_id())
        return entry.bundle.model_copy(update={"from_cache": True}, deep=True)

    async def set(self, key: str, bundle: CachedQueryResult, ttl_minutes: Optional[float] = None) -> None:
        self.cleanup()
        now = self._clock()
        stored = bundle.model_copy(update={"cached_at": self._wall_clock(), "from_cache": False}, deep=True)
        ttl_seconds = self._ttl_seconds(ttl_minutes)
        self._entries[key] = _MemoryEntry(bundle=stored, stored_at=now, ttl_seconds=ttl_seconds)
        logger.info("Query cache CACHED", cache_key=key, ttl_seconds=ttl_seconds, trace_id=current_trace_id())

    async def clear_for_connection(self, connection_id: str) -> int:
        prefix = self.connection_prefix(connection_id)
        keys = [key for key in self._entries if key.startswith(prefix)]
        for key in keys:
            del self._entries[key]
        logger.info("Query cache cleared for connection", connection_id=connection_id, removed=len(keys))
        return len(keys)

    async def clear_all(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Query cache CLEARED", removed=count)
        return count

    async def stats(self) -> Dict[str, object]:
        self.cleanup()
        return {"backend": self.backend_name, "size": len(self._entries), "available": True}


class RedisQueryResultCache(QueryResultCache):
    """
    Shared cache on Redis.

    Entries are JSON bundles written with SETEX, so expiry is enforced by
    Redis itself. Clears scan by key prefix.
    """

    backend_name = "redis"

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_minutes: int = 30,
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ):
        super().__init__(ttl_minutes=ttl_minutes, key_prefix=key_prefix)
        self._client = client

    @classmethod
    def from_url(
        cls,
        url: str,
        ttl_minutes: int = 30,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        timeout_seconds: int = 5,
    ) -> "RedisQueryResultCache":
        client = aioredis.Redis.from_url(
            url,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
            health_check_interval=30,
            retry_on_timeout=True,
            decode_responses=True,
        )
        return cls(client, ttl_minutes=ttl_minutes, key_prefix=key_prefix)

    async def get(self, key: str) -> Optional[CachedQueryResult]:
        try:
            raw = await self._client.get(key)
        except RedisError as e:
            logger.warning("Query cache read failed, treating as miss", cache_key=key, error=str(e), trace_id=current_trace_id())
            return None

        if not raw:
            logger.info("Query cache MISS", cache_key=key, trace_id=current_trace_id())
            return None

        try:
            bundle = CachedQueryResult.model_validate_json(raw)
        except ValueError as e:
            logger.warning("Discarding unreadable query cache entry", cache_key=key, error=str(e))
            return None

        logger.info("Query cache HIT", cache_key=key, trace_id=current_trace_id())
        return bundle.model_copy(update={"from_cache": True})

    async def set(self, key: str, bundle: CachedQueryResult, ttl_minutes: Optional[float] = None) -> None:
        stored = bundle.model_copy(update={"cached_at": time.time(), "from_cache": False})
        ttl_seconds = self._ttl_seconds(ttl_minutes)
        try:
            await self._client.setex(key, ttl_seconds, stored.model_dump_json(by_alias=True))
        except RedisError as e:
            logger.warning("Query cache write failed", cache_key=key, error=str(e), trace_id=current_trace_id())
            return
        logger.info("Query cache CACHED", cache_key=key, ttl_seconds=ttl_seconds, trace_id=current_trace_id())

    async def _delete_matching(self, pattern: str) -> int:
        removed = 0
        try:
            batch = []
            async for key in self._client.scan_iter(match=pattern, count=500):
                batch.append(key)
                if len(batch) >= 500:
                    removed += await self._client.delete(*batch)
                    batch = []
            if batch:
                removed += await self._client.delete(*batch)
        except RedisError as e:
            raise CacheError("Query cache is unavailable", details={"pattern": pattern, "error": str(e)}) from e
        return removed

    async def clear_for_connection(self, connection_id: str) -> int:
        removed = await self._delete_matching(f"{escape_glob(self.connection_prefix(connection_id))}*")
        logger.info("Query cache cleared for connection", connection_id=connection_id, removed=removed)
        return removed

    async def clear_all(self) -> int:
        removed = await self._delete_matching(f"{escape_glob(self.key_prefix)}*")
        logger.info("Query cache CLEARED", removed=removed)
        return removed

    async def stats(self) -> Dict[str, object]:
        try:
            size = 0
            async for _ in self._client.scan_iter(match=f"{escape_glob(self.key_prefix)}*", count=500):
                size += 1
        except RedisError as e:
            logger.warning("Query cache stats unavailable", error=str(e))
            return {"backend": self.backend_name, "size": 0, "available": False}
        return {"backend": self.backend_name, "size": size, "available": True}

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
