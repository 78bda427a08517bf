from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, NoReturn, Optional

from ..db.base import BaseDBManager
from ..errors import DuplicateEvent, ValidationError, VerificationFailed
from ..logging.audit_logger import AuditLogger
from ..models.base import utcnow
from ..models.ledger import LedgerEntry, LedgerReason
from ..models.profile import Profile
from ..verifiers.ad_reward import AdRewardClaim, AdRewardVerifier
from ..verifiers.iap import IAPReceiptVerifier, PurchaseClaim
from .idempotency import IdempotencyGuard
from .ledger_service import AppendResult, LedgerService
from .payment_recorder import PaymentRecorder
from .rate_limiter import RateLimiter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RefreshOutcome:
    cost_hp: int
    balance: int
    is_premium: bool
    replayed: bool = False


class PointsService:
    """
    User-triggered HP flows: rewarded video, paid refresh and IAP packs.

    Each flow is authenticated before it gets here, then runs the same
    pipeline: rate limit, verify, idempotency check, one atomic append that
    also carries the event's payment record.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        ledger: LedgerService,
        rate_limiter: RateLimiter,
        guard: IdempotencyGuard,
        payments: PaymentRecorder,
        ad_verifier: AdRewardVerifier,
        iap_verifier: IAPReceiptVerifier,
        refresh_cost_hp: int = 10,
        clock: Callable[[], Any] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._ledger = ledger
        self._rate_limiter = rate_limiter
        self._guard = guard
        self._payments = payments
        self._ad_verifier = ad_verifier
        self._iap_verifier = iap_verifier
        self._refresh_cost_hp = refresh_cost_hp
        self._clock = clock

    async def get_account(self, user_id: str) -> Profile:
        profile = await self._db.get_profile(user_id)
        return profile or Profile(id=user_id)

    async def is_premium(self, user_id: str) -> bool:
        profile = await self._db.get_profile(user_id)
        return bool(profile and profile.premium_active(self._clock()))

    async def claim_ad_reward(
        self,
        user_id: str,
        claim: AdRewardClaim,
        correlation_id: Optional[str] = None,
    ) -> AppendResult:
        reason = LedgerReason.REWARDED_VIDEO
        await self._rate_limiter.enforce(user_id, reason, correlation_id)

        result = await self._ad_verifier.verify(claim)
        event = result.event
        if not result.valid or event is None:
            await self._reject_verification(
                user_id, reason, result.failure_reason, correlation_id,
                ad_network=claim.ad_network,
            )

        await self._guard.ensure_fresh(
            user_id, reason, event.verification_id,
            "Duplicate verification ID", correlation_id,
        )

        async def record_revenue(entry: LedgerEntry) -> Any:
            return await self._payments.record_daily_ad_revenue(
                event.ad_network.value,
                entry.created_at.date(),
                event.revenue_cents,
                correlation_id=correlation_id,
            )

        applied = await self._ledger.append(
            user_id,
            event.hp_amount,
            reason,
            meta=event.ledger_meta(),
            dedup_key=event.verification_id,
            correlation_id=correlation_id,
            on_applied=record_revenue,
        )
        if applied.replayed:
            # Lost a race with a concurrent callback for the same token.
            await self._guard.reject_duplicate(
                user_id, reason, event.verification_id, applied.entry,
                "Duplicate verification ID", correlation_id,
            )
        return applied

    async def spend_refresh(
        self,
        user_id: str,
        idempotency_key: str,
        device_id: str,
        correlation_id: Optional[str] = None,
    ) -> RefreshOutcome:
        """
        Debit the refresh cost, or record a waived debit for premium users.

        Retrying with the same idempotency key returns the first outcome.
        """
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")
        reason = LedgerReason.REFRESH_QUOTE

        # A replay must answer with its first result even when the quota is
        # exhausted by later refreshes.
        check = await self._guard.check_and_reserve(user_id, reason, idempotency_key)
        if not check.is_duplicate:
            await self._rate_limiter.enforce(user_id, reason, correlation_id)

        applied = await self._ledger.append(
            user_id,
            -self._refresh_cost_hp,
            reason,
            meta={"device_id": device_id, "idempotency_key": idempotency_key},
            dedup_key=idempotency_key,
            correlation_id=correlation_id,
        )
        return RefreshOutcome(
            cost_hp=0 if applied.waived else -applied.entry.delta,
            balance=applied.balance,
            is_premium=applied.waived,
            replayed=applied.replayed,
        )

    async def verify_purchase(
        self,
        user_id: str,
        claim: PurchaseClaim,
        correlation_id: Optional[str] = None,
    ) -> AppendResult:
        reason = LedgerReason.IAP_PURCHASE
        package = self._iap_verifier.lookup_package(claim.product_id)
        dedup_key = self._iap_verifier.dedup_key(claim)

        await self._guard.ensure_fresh(
            user_id, reason, dedup_key, "Transaction already processed", correlation_id
        )

        result = await self._iap_verifier.verify(claim)
        event = result.event
        if not result.valid or event is None:
            await self._reject_verification(
                user_id, reason, result.failure_reason, correlation_id,
                product_id=package.product_id, platform=claim.platform,
            )

        async def record_payment(entry: LedgerEntry) -> Any:
            return await self._payments.record_iap(
                user_id,
                event.platform.value,
                event.package.price_cents,
                event.dedup_key,
                correlation_id=correlation_id,
            )

        try:
            applied = await self._ledger.append(
                user_id,
                event.package.hp_amount,
                reason,
                meta=event.ledger_meta(),
                dedup_key=event.dedup_key,
                correlation_id=correlation_id,
                on_applied=record_payment,
            )
        except DuplicateEvent as exc:
            await self._audit.log_rejection(
                message=exc.message,
                details={"reason": reason.value, "dedup_key": event.dedup_key},
                user_id=user_id,
                correlation_id=correlation_id,
            )
            raise
        if applied.replayed:
            await self._guard.reject_duplicate(
                user_id, reason, event.dedup_key, applied.entry,
                "Transaction already processed", correlation_id,
            )
        logger.info(
            "IAP credited: %s HP for %s", event.package.hp_amount, event.package.product_id
        )
        return applied

    async def _reject_verification(
        self,
        user_id: str,
        reason: LedgerReason,
        failure_reason: Optional[str],
        correlation_id: Optional[str],
        **details: Any,
    ) -> NoReturn:
        message = failure_reason or "Verification failed"
        await self._audit.log_rejection(
            message=message,
            details={"reason": reason.value, **details},
            user_id=user_id,
            correlation_id=correlation_id,
        )
        raise VerificationFailed(message)
