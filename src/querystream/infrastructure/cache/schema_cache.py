"""
Schema context cache.

Introspecting a target database costs several round trips, so each
connection's SchemaContext is kept in process memory for a fixed window
measured from insertion. Expired entries are evicted lazily on read and by
periodic sweeps (`cleanup`).

One instance is created in the app lifespan and injected where needed.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from querystream.domain.schema_context import SchemaContext
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()

Clock = Callable[[], float]


@dataclass
class _SchemaEntry:
    context: SchemaContext
    stored_at: float
    ttl_seconds: float


class SchemaContextCache:
    """
    In-process TTL cache of SchemaContext keyed by connection id.

    Not locked: all access happens on the event loop thread, and two
    concurrent misses for one connection both introspect and the last
    write wins.
    """

    def __init__(self, ttl_minutes: int = 120, clock: Clock = time.monotonic):
        self.default_ttl_seconds = ttl_minutes * 60
        self._clock = clock
        self._entries: Dict[str, _SchemaEntry] = {}

    def _is_expired(self, entry: _SchemaEntry, now: float) -> bool:
        return now - entry.stored_at >= entry.ttl_seconds

    def get(self, connection_id: str) -> Optional[SchemaContext]:
        entry = self._entries.get(connection_id)
        if entry is None:
            logger.debug("Schema cache MISS", connection_id=connection_id, trace_id=current_trace_id())
            return None

        now = self._clock()
        if self._is_expired(entry, now):
            del self._entries[connection_id]
            logger.info(
                "Schema cache EXPIRED",
                connection_id=connection_id,
                age_seconds=round(now - entry.stored_at, 1),
                trace_id=current_trace_id(),
            )
            return None

        logger.debug(
            "Schema cache HIT",
            connection_id=connection_id,
            age_seconds=round(now - entry.stored_at, 1),
            trace_id=current_trace_id(),
        )
        return entry.context

    def set(self, connection_id: str, context: SchemaContext, ttl_minutes: Optional[float] = None) -> None:
        ttl_seconds = ttl_minutes * 60 if ttl_minutes is not None else self.default_ttl_seconds
        self._entries[connection_id] = _SchemaEntry(context=context, stored_at=self._clock(), ttl_seconds=ttl_seconds)
        logger.info(
            "Schema cache CACHED",
            connection_id=connection_id,
            tables=len(context.tables),
            ttl_seconds=ttl_seconds,
            trace_id=current_trace_id(),
        )

    def invalidate(self, connection_id: str) -> bool:
        """Drop one connection's entry. Returns True if one existed."""
        removed = self._entries.pop(connection_id, None) is not None
        logger.info("Schema cache INVALIDATED", connection_id=connection_id, removed=removed, trace_id=current_trace_id())
        return removed

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Schema cache CLEARED", entries=count, trace_id=current_trace_id())
        return count

    def cleanup(self) -> int:
        """Purge expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.info("Schema cache cleanup", removed=len(expired), remaining=len(self._entries))
        return len(expired)

    def stats(self) -> Dict[str, object]:
        """Live entry count and keys (expired entries are purged first)."""
        self.cleanup()
        keys: List[str] = sorted(self._entries)
        return {"size": len(keys), "keys": keys}

    async def run_cleanup_loop(self, interval_minutes: int) -> None:
        """Sweep expired entries forever; cancelled at shutdown."""
        while True:
            await asyncio.sleep(interval_minutes * 60)
            self.cleanup()
