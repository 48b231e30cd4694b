"""
Usage Repository.

Daily query counters keyed by user and UTC date.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Tuple


class UsageRepository(ABC):
    """Interface for per-day usage counters."""

    @abstractmethod
    async def get_count(self, user_id: str, day: date) -> int:
        ...

    @abstractmethod
    async def increment(self, user_id: str, day: date, delta: int) -> int:
        """Atomically add `delta` and return the new count."""


class InMemoryUsageRepository(UsageRepository):
    def __init__(self):
        self._counts: Dict[Tuple[str, str], int] = {}
        self._lock = asyncio.Lock()

    async def get_count(self, user_id: str, day: date) -> int:
        return self._counts.get((user_id, day.isoformat()), 0)

    async def increment(self, user_id: str, day: date, delta: int) -> int:
        key = (user_id, day.isoformat())
        async with self._lock:
            self._counts[key] = self._counts.get(key, 0) + delta
            return self._counts[key]
