from __future__ import annotations

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Optional

from ..db.base import BaseDBManager
from ..errors import DuplicateEvent
from ..logging.audit_logger import AuditLogger
from ..models.audit import AuditEventType
from ..models.base import utcnow
from ..models.payment import PaymentKind, PaymentRecord


def round_cents(value: Decimal) -> int:
    """Half-up rounding to whole cents."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


class PaymentRecorder:
    """
    Persists gross/fee/net per external revenue event.

    Records are keyed by (kind, provider, provider_ref). Recording the same
    key twice returns the existing row; nothing is ever updated. Call these
    inside the transaction of the event they belong to.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        platform_fee_rate: Decimal = Decimal("0.15"),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._platform_fee_rate = Decimal(platform_fee_rate)
        self._clock = clock

    def platform_fee(self, price_cents: int) -> int:
        return round_cents(Decimal(price_cents) * self._platform_fee_rate)

    async def record(
        self,
        kind: PaymentKind,
        gross_cents: int,
        fee_cents: int,
        provider: str,
        provider_ref: str,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentRecord:
        existing = await self._db.find_payment_record(kind, provider, provider_ref)
        if existing is not None:
            return existing

        record = await self._db.add_payment_record(
            PaymentRecord(
                user_id=user_id,
                kind=kind,
                gross_cents=gross_cents,
                fee_cents=fee_cents,
                provider=provider,
                provider_ref=provider_ref,
                created_at=self._clock(),
            )
        )
        await self._audit.log_event(
            AuditEventType.PAYMENT,
            message="Payment recorded",
            details={
                "payment_id": record.id,
                "kind": kind.value,
                "provider": provider,
                "provider_ref": provider_ref,
                "gross_cents": record.gross_cents,
                "fee_cents": record.fee_cents,
                "net_cents": record.net_cents,
            },
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return record

    async def record_iap(
        self,
        user_id: str,
        platform: str,
        price_cents: int,
        provider_ref: str,
        correlation_id: Optional[str] = None,
    ) -> PaymentRecord:
        """A store receipt can only ever be redeemed by one account."""
        existing = await self._db.find_payment_record(
            PaymentKind.IAP_POINTS, platform, provider_ref
        )
        if existing is not None and existing.user_id != user_id:
            raise DuplicateEvent("Purchase already redeemed by another account")
        return await self.record(
            PaymentKind.IAP_POINTS,
            gross_cents=price_cents,
            fee_cents=self.platform_fee(price_cents),
            provider=platform,
            provider_ref=provider_ref,
            user_id=user_id,
            correlation_id=correlation_id,
        )

    async def record_subscription_invoice(
        self,
        user_id: Optional[str],
        amount_paid_cents: int,
        fee_cents: int,
        invoice_id: str,
        provider: str = "stripe",
        correlation_id: Optional[str] = None,
    ) -> PaymentRecord:
        return await self.record(
            PaymentKind.SUBSCRIPTION,
            gross_cents=amount_paid_cents,
            fee_cents=fee_cents,
            provider=provider,
            provider_ref=invoice_id,
            user_id=user_id,
            correlation_id=correlation_id,
        )

    async def record_daily_ad_revenue(
        self,
        ad_network: str,
        day: date,
        revenue_cents: int,
        user_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Ensure the single aggregate ad row for (network, day) exists.

        The first reward of the day creates it; later rewards that day
        return it unchanged.
        """
        return await self.record(
            PaymentKind.AD,
            gross_cents=revenue_cents,
            fee_cents=0,
            provider=ad_network,
            provider_ref=f"daily_{day.isoformat()}_{ad_network}",
            user_id=user_id,
            correlation_id=correlation_id,
        )
