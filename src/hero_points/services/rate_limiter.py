from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

from ..db.base import BaseDBManager
from ..errors import RateLimited
from ..models.base import utcnow
from ..models.ledger import LedgerReason

if TYPE_CHECKING:  # pragma: no cover
    from ..config import Settings
    from ..logging.audit_logger import AuditLogger


@dataclass(frozen=True)
class RateLimitPolicy:
    max_count: int
    window: timedelta


def default_policies(settings: "Settings") -> Dict[LedgerReason, RateLimitPolicy]:
    return {
        LedgerReason.REWARDED_VIDEO: RateLimitPolicy(
            max_count=settings.REWARDED_VIDEO_MAX,
            window=timedelta(seconds=settings.REWARDED_VIDEO_WINDOW_SECONDS),
        ),
        LedgerReason.REFRESH_QUOTE: RateLimitPolicy(
            max_count=settings.REFRESH_QUOTE_MAX,
            window=timedelta(seconds=settings.REFRESH_QUOTE_WINDOW_SECONDS),
        ),
    }


class RateLimiter:
    """
    Sliding-window limiter over ledger rows.

    The count is taken from the ledger itself (entries for the user and
    reason in the trailing window), so there is no separate counter to
    drift and no fixed bucket boundary to burst across. Rejected attempts
    never create ledger rows and so never consume quota.
    """

    def __init__(
        self,
        db: BaseDBManager,
        policies: Mapping[LedgerReason, RateLimitPolicy],
        audit: Optional["AuditLogger"] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._policies = dict(policies)
        self._audit = audit
        self._clock = clock

    def policy_for(self, reason: LedgerReason) -> Optional[RateLimitPolicy]:
        return self._policies.get(LedgerReason(reason))

    async def allow(
        self,
        user_id: str,
        reason: LedgerReason,
        window: timedelta,
        max_count: int,
    ) -> bool:
        since = self._clock() - window
        count = await self._db.count_ledger_entries(user_id, LedgerReason(reason), since)
        return count < max_count

    async def check(self, user_id: str, reason: LedgerReason) -> None:
        """Raise RateLimited if the reason's policy is exhausted for the user."""
        policy = self.policy_for(reason)
        if policy is None:
            return
        if await self.allow(user_id, reason, policy.window, policy.max_count):
            return
        raise RateLimited(
            f"Rate limit exceeded for {LedgerReason(reason).value}",
            retry_after_seconds=await self._retry_after(user_id, reason, policy),
        )

    async def enforce(
        self, user_id: str, reason: LedgerReason, correlation_id: Optional[str] = None
    ) -> None:
        """`check`, plus an audit record when the request is rejected."""
        try:
            await self.check(user_id, reason)
        except RateLimited as exc:
            if self._audit is not None:
                await self._audit.log_rejection(
                    message="Rate limit exceeded",
                    details={
                        "reason": LedgerReason(reason).value,
                        "retry_after_seconds": exc.retry_after_seconds,
                    },
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
            raise

    async def _retry_after(
        self, user_id: str, reason: LedgerReason, policy: RateLimitPolicy
    ) -> int:
        now = self._clock()
        earliest = await self._db.earliest_ledger_entry_time(
            user_id, LedgerReason(reason), now - policy.window
        )
        if earliest is None:
            return 1
        remaining = (earliest + policy.window - now).total_seconds()
        return max(1, math.ceil(remaining))
