from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from ..db.base import BaseDBManager, DuplicateRecordError, TransientStoreError
from ..errors import (
    InsufficientBalance,
    Internal,
    RateLimited,
    StoreUnavailable,
    ValidationError,
)
from ..logging.audit_logger import AuditLogger
from ..models.audit import AuditEventType
from ..models.base import utcnow
from ..models.ledger import LedgerEntry, LedgerReason
from .rate_limiter import RateLimiter


logger = logging.getLogger(__name__)

OnApplied = Callable[[LedgerEntry], Awaitable[Any]]


@dataclass(frozen=True)
class AppendResult:
    entry: LedgerEntry
    balance: int
    replayed: bool = False
    waived: bool = False
    compensation: Optional[LedgerEntry] = None
    side_effect: Any = None


@dataclass(frozen=True)
class BalanceReconciliation:
    user_id: str
    cached_balance: int
    ledger_balance: int

    @property
    def drift(self) -> int:
        return self.cached_balance - self.ledger_balance

    @property
    def consistent(self) -> bool:
        return self.drift == 0


class LedgerService:
    """
    Append-only HP ledger and balance projector.

    `append` is the only writer of `Profile.hp_balance`. Each append runs
    under the store's per-user lock and inside one transaction that covers
    the balance update, the ledger row(s), the audit row and any caller
    supplied side effect (e.g. a payment record).
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        rate_limiter: Optional[RateLimiter] = None,
        premium_waivers: Optional[Mapping[LedgerReason, LedgerReason]] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = 3,
    ) -> None:
        self._db = db
        self._audit = audit
        self._rate_limiter = rate_limiter
        # debit reason -> reason of the compensating credit for premium users
        self._premium_waivers: Dict[LedgerReason, LedgerReason] = dict(premium_waivers or {})
        self._clock = clock
        self._max_attempts = max_attempts

    async def append(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason | str,
        meta: Optional[Mapping[str, Any]] = None,
        dedup_key: Optional[str] = None,
        correlation_id: Optional[str] = None,
        on_applied: Optional[OnApplied] = None,
    ) -> AppendResult:
        """
        Append one signed entry and return it with the resulting balance.

        Replaying a (user, reason, dedup_key) that was already applied is a
        no-op returning the prior result with `replayed=True`.
        Raises InsufficientBalance for a debit that would go below zero,
        unless the reason is waived for premium users.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
            raise ValidationError("delta must be a non-zero integer")
        try:
            reason = LedgerReason(reason)
        except ValueError as exc:
            raise ValidationError(f"unknown ledger reason: {reason}") from exc
        meta = dict(meta or {})

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._append_once(
                    user_id, delta, reason, meta, dedup_key, correlation_id, on_applied
                )
            except DuplicateRecordError:
                # A concurrent writer committed the same event (or a side effect) first.
                if dedup_key is not None:
                    prior = await self._prior_result(user_id, reason, dedup_key)
                    if prior is not None:
                        return prior
                if attempt == self._max_attempts:
                    raise Internal("conflicting concurrent write; retry the request")
            except TransientStoreError as exc:
                if attempt == self._max_attempts:
                    raise StoreUnavailable("ledger store busy; retry the request") from exc
                logger.warning(
                    "transient ledger conflict, retrying",
                    extra={"user_id": user_id, "attempt": attempt},
                )
            except InsufficientBalance as exc:
                await self._audit.log_rejection(
                    message="Insufficient HP balance",
                    details={
                        "reason": reason.value,
                        "requested": -delta,
                        "balance": exc.current_hp,
                    },
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise
            except RateLimited:
                await self._audit.log_rejection(
                    message="Rate limit exceeded",
                    details={"reason": reason.value},
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                raise
        raise Internal("ledger append did not complete")  # pragma: no cover

    async def _append_once(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        meta: Dict[str, Any],
        dedup_key: Optional[str],
        correlation_id: Optional[str],
        on_applied: Optional[OnApplied],
    ) -> AppendResult:
        async with self._db.user_lock(user_id):
            async with self._db.transaction():
                if dedup_key is not None:
                    prior = await self._prior_result(user_id, reason, dedup_key)
                    if prior is not None:
                        return prior

                if self._rate_limiter is not None:
                    await self._rate_limiter.check(user_id, reason)

                now = self._clock()
                waiver = self._premium_waivers.get(reason) if delta < 0 else None
                if waiver is not None:
                    profile = await self._db.get_profile(user_id)
                    if profile is not None and profile.premium_active(now):
                        return await self._append_waived(
                            user_id, delta, reason, waiver, meta, dedup_key,
                            correlation_id, on_applied, now,
                        )

                new_balance = await self._db.apply_balance_delta(
                    user_id, delta, floor=0 if delta < 0 else None
                )
                if new_balance is None:
                    profile = await self._db.get_profile(user_id)
                    raise InsufficientBalance(
                        "Insufficient HP balance",
                        required_hp=-delta,
                        current_hp=profile.hp_balance if profile else 0,
                    )

                entry = await self._db.add_ledger_entry(
                    LedgerEntry(
                        user_id=user_id,
                        delta=delta,
                        reason=reason,
                        dedup_key=dedup_key,
                        meta=meta,
                        balance_after=new_balance,
                        correlation_id=correlation_id,
                        created_at=now,
                    )
                )
                side_effect = await on_applied(entry) if on_applied else None

                await self._audit.log_event(
                    AuditEventType.LEDGER,
                    message="HP credited" if delta > 0 else "HP debited",
                    details={
                        "entry_id": entry.id,
                        "delta": delta,
                        "reason": reason.value,
                        "new_balance": new_balance,
                    },
                    user_id=user_id,
                    correlation_id=correlation_id,
                )
                return AppendResult(entry=entry, balance=new_balance, side_effect=side_effect)

    async def _append_waived(
        self,
        user_id: str,
        delta: int,
        reason: LedgerReason,
        waiver: LedgerReason,
        meta: Dict[str, Any],
        dedup_key: Optional[str],
        correlation_id: Optional[str],
        on_applied: Optional[OnApplied],
        now: datetime,
    ) -> AppendResult:
        # Net-zero pair: the debit is recorded, then refunded. Touching the
        # profile row keeps premium appends serialized with other writers.
        balance = await self._db.apply_balance_delta(user_id, 0)
        if balance is None:
            raise Internal("premium balance touch returned no balance")
        debit = await self._db.add_ledger_entry(
            LedgerEntry(
                user_id=user_id,
                delta=delta,
                reason=reason,
                dedup_key=dedup_key,
                meta=meta,
                balance_after=balance + delta,
                correlation_id=correlation_id,
                created_at=now,
            )
        )
        compensation = await self._db.add_ledger_entry(
            LedgerEntry(
                user_id=user_id,
                delta=-delta,
                reason=waiver,
                dedup_key=dedup_key,
                meta={**meta, "original_cost": -delta, "waived_reason": reason.value},
                balance_after=balance,
                correlation_id=correlation_id,
                created_at=now,
            )
        )
        side_effect = await on_applied(debit) if on_applied else None

        await self._audit.log_event(
            AuditEventType.LEDGER,
            message="HP debit waived for premium user",
            details={
                "entry_id": debit.id,
                "compensation_id": compensation.id,
                "delta": delta,
                "reason": reason.value,
                "new_balance": balance,
            },
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return AppendResult(
            entry=debit,
            balance=balance,
            waived=True,
            compensation=compensation,
            side_effect=side_effect,
        )

    async def _prior_result(
        self, user_id: str, reason: LedgerReason, dedup_key: str
    ) -> Optional[AppendResult]:
        prior = await self._db.find_ledger_entry(user_id, reason, dedup_key)
        if prior is None:
            return None
        waiver = self._premium_waivers.get(reason) if prior.delta < 0 else None
        if waiver is not None:
            compensation = await self._db.find_ledger_entry(user_id, waiver, dedup_key)
            if compensation is not None:
                return AppendResult(
                    entry=prior,
                    balance=compensation.balance_after,
                    replayed=True,
                    waived=True,
                    compensation=compensation,
                )
        return AppendResult(entry=prior, balance=prior.balance_after, replayed=True)

    # Balance projection
    async def get_balance(self, user_id: str) -> int:
        profile = await self._db.get_profile(user_id)
        return profile.hp_balance if profile else 0

    async def project_balance(
        self, user_id: str, as_of: Optional[datetime] = None
    ) -> int:
        """Balance derived from the ledger alone, as of `as_of` (inclusive)."""
        return await self._db.sum_ledger_deltas(user_id, until=as_of)

    async def reconcile(self, user_id: str) -> BalanceReconciliation:
        async with self._db.user_lock(user_id):
            result = BalanceReconciliation(
                user_id=user_id,
                cached_balance=await self.get_balance(user_id),
                ledger_balance=await self.project_balance(user_id),
            )
        if not result.consistent:
            logger.error(
                "HP balance drift detected",
                extra={"user_id": user_id, "drift": result.drift},
            )
            await self._audit.log_error(
                message="HP balance drift detected",
                details={
                    "cached_balance": result.cached_balance,
                    "ledger_balance": result.ledger_balance,
                },
                user_id=user_id,
            )
        return result

    async def get_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[LedgerEntry]:
        return await self._db.get_ledger_entries(user_id, limit=limit, offset=offset)
