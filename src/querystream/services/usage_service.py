"""
Usage Service.

Enforces the daily query quota of each plan tier. Days are UTC calendar
dates; counters live in the UsageRepository.
"""

from datetime import date, datetime, timezone
from typing import Callable, Optional

from querystream.domain.connections import UserAccount
from querystream.domain.errors import InsufficientQuotaError, QuotaExceededError
from querystream.domain.plans import daily_query_limit
from querystream.domain.results import UsageSnapshot
from querystream.repositories.usage_repository import UsageRepository
from querystream.utils.logging import get_module_logger
from querystream.utils.tracing import current_trace_id

logger = get_module_logger()


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class UsageService:
    """
    Quota checks and charges.

    Checks never charge; callers charge once, after the billable work has
    succeeded.
    """

    def __init__(self, repository: UsageRepository, today: Callable[[], date] = _utc_today):
        self.repository = repository
        self._today = today

    async def snapshot(self, user: UserAccount) -> UsageSnapshot:
        used = await self.repository.get_count(user.id, self._today())
        limit = daily_query_limit(user.plan)
        remaining: Optional[int] = None if limit is None else max(0, limit - used)
        return UsageSnapshot(used=used, limit=limit, remaining=remaining)

    async def check(self, user: UserAccount) -> UsageSnapshot:
        """
        Verify at least one query is left today.

        Raises:
            QuotaExceededError: If today's count has reached the plan limit
        """
        usage = await self.snapshot(user)
        if usage.limit is not None and usage.used >= usage.limit:
            logger.info(
                "Quota exceeded",
                user_id=user.id,
                plan=user.plan.value,
                used=usage.used,
                limit=usage.limit,
                trace_id=current_trace_id(),
            )
            raise QuotaExceededError(limit=usage.limit, used=usage.used)
        return usage

    async def require(self, user: UserAccount, units: int) -> UsageSnapshot:
        """
        Verify `units` queries are left today.

        Raises:
            InsufficientQuotaError: If fewer than `units` remain
        """
        usage = await self.snapshot(user)
        if usage.remaining is not None and usage.remaining < units:
            logger.info(
                "Insufficient quota",
                user_id=user.id,
                plan=user.plan.value,
                required=units,
                available=usage.remaining,
                trace_id=current_trace_id(),
            )
            raise InsufficientQuotaError(required=units, available=usage.remaining)
        return usage

    async def charge(self, user: UserAccount, units: int = 1) -> UsageSnapshot:
        """Add `units` to today's counter and return the new usage."""
        used = await self.repository.increment(user.id, self._today(), units)
        limit = daily_query_limit(user.plan)
        logger.info("Usage charged", user_id=user.id, units=units, used=used, trace_id=current_trace_id())
        return UsageSnapshot(used=used, limit=limit, remaining=None if limit is None else max(0, limit - used))
