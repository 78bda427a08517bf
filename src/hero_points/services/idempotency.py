from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import NoReturn, Optional

from ..db.base import BaseDBManager
from ..errors import DuplicateEvent
from ..logging.audit_logger import AuditLogger
from ..models.ledger import LedgerEntry, LedgerReason


class IdempotencyStatus(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class IdempotencyCheck:
    status: IdempotencyStatus
    prior: Optional[LedgerEntry] = None

    @property
    def is_duplicate(self) -> bool:
        return self.status is IdempotencyStatus.DUPLICATE


class IdempotencyGuard:
    """
    Detects replays of external events before any work is done for them.

    The reservation itself is the unique (user_id, reason, dedup_key) key
    on the ledger: the first append for a key wins and every later one,
    concurrent or not, resolves to that entry.
    """

    def __init__(self, db: BaseDBManager, audit: AuditLogger) -> None:
        self._db = db
        self._audit = audit

    async def check_and_reserve(
        self, user_id: str, reason: LedgerReason, dedup_key: str
    ) -> IdempotencyCheck:
        prior = await self._db.find_ledger_entry(user_id, LedgerReason(reason), dedup_key)
        if prior is None:
            return IdempotencyCheck(status=IdempotencyStatus.FRESH)
        return IdempotencyCheck(status=IdempotencyStatus.DUPLICATE, prior=prior)

    async def ensure_fresh(
        self,
        user_id: str,
        reason: LedgerReason,
        dedup_key: str,
        message: str,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Raise DuplicateEvent carrying the prior entry if already applied."""
        check = await self.check_and_reserve(user_id, reason, dedup_key)
        if check.prior is not None:
            await self.reject_duplicate(
                user_id, reason, dedup_key, check.prior, message, correlation_id
            )

    async def reject_duplicate(
        self,
        user_id: str,
        reason: LedgerReason,
        dedup_key: str,
        prior: LedgerEntry,
        message: str,
        correlation_id: Optional[str] = None,
    ) -> NoReturn:
        await self._audit.log_rejection(
            message=message,
            details={
                "reason": LedgerReason(reason).value,
                "dedup_key": dedup_key,
                "prior_entry_id": prior.id,
            },
            user_id=user_id,
            correlation_id=correlation_id,
        )
        raise DuplicateEvent(message, prior_entry_id=prior.id, balance=prior.balance_after)
