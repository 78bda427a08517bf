from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Tuple

from ..db.base import BaseDBManager, DuplicateRecordError
from ..errors import Internal, ValidationError
from ..logging.audit_logger import AuditLogger
from ..models.audit import AuditEventType
from ..models.base import utcnow
from ..models.payment import CharityPayout, PaymentKind
from .payment_recorder import round_cents


logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class SettlementResult:
    payout: CharityPayout
    already_closed: bool = False

    @property
    def month_label(self) -> str:
        return self.payout.month.strftime("%Y-%m")

    def summary(self) -> Dict[str, object]:
        return {
            "subscription_revenue_cents": self.payout.subscription_revenue_cents,
            "iap_revenue_cents": self.payout.iap_revenue_cents,
            "ad_revenue_cents": self.payout.ad_revenue_cents,
            "total_net_cents": self.payout.net_cents,
            "charity_share_cents": self.payout.charity_share_cents,
            "charity_percentage": float(Decimal(self.payout.share_percent) * 100),
        }


def month_bounds(month: date) -> Tuple[datetime, datetime]:
    """Half-open UTC window [first day of month, first day of next month)."""
    start = datetime.combine(month.replace(day=1), time.min, tzinfo=timezone.utc)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def previous_month(now: datetime) -> date:
    first = now.date().replace(day=1)
    if first.month == 1:
        return first.replace(year=first.year - 1, month=12)
    return first.replace(month=first.month - 1)


def parse_month(value: str) -> date:
    match = _MONTH_RE.match(value.strip())
    if not match:
        raise ValidationError("month must be formatted as YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValidationError("month must be between 01 and 12")
    return date(year, month, 1)


class SettlementService:
    """
    Monthly charity settlement.

    Sums net revenue across all payment kinds for a fully elapsed month and
    writes exactly one CharityPayout for it. Closing an already closed month
    returns the stored payout unchanged; the unique month key settles races
    between concurrent runs.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        share_percent: Decimal = Decimal("0.5"),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not Decimal(0) <= Decimal(share_percent) <= Decimal(1):
            raise ValueError("share_percent must be between 0 and 1")
        self._db = db
        self._audit = audit
        self._share_percent = Decimal(share_percent)
        self._clock = clock

    def default_month(self) -> date:
        return previous_month(self._clock())

    async def close_month(
        self, month: Optional[date] = None, correlation_id: Optional[str] = None
    ) -> SettlementResult:
        month = (month or self.default_month()).replace(day=1)
        start, end = month_bounds(month)
        if end > self._clock():
            raise ValidationError(
                f"month {month.strftime('%Y-%m')} has not fully elapsed yet"
            )

        existing = await self._db.get_charity_payout(month)
        if existing is not None:
            logger.info("month already closed", extra={"month": month.isoformat()})
            return SettlementResult(payout=existing, already_closed=True)

        totals = await self._db.sum_net_cents_by_kind(start, end)
        total_net = sum(totals.values())
        share_cents = round_cents(Decimal(total_net) * self._share_percent)
        now = self._clock()

        payout = CharityPayout(
            month=month,
            net_cents=total_net,
            charity_share_cents=share_cents,
            subscription_revenue_cents=totals.get(PaymentKind.SUBSCRIPTION, 0),
            iap_revenue_cents=totals.get(PaymentKind.IAP_POINTS, 0),
            ad_revenue_cents=totals.get(PaymentKind.AD, 0),
            share_percent=str(self._share_percent),
            tx_ref=f"monthly_{month.strftime('%Y-%m')}_{int(now.timestamp() * 1000)}",
            created_at=now,
        )

        try:
            async with self._db.transaction():
                payout = await self._db.add_charity_payout(payout)
                await self._audit.log_event(
                    AuditEventType.SETTLEMENT,
                    message="Month closed",
                    details={
                        "month": month.isoformat(),
                        "payout_id": payout.id,
                        "net_cents": total_net,
                        "charity_share_cents": share_cents,
                        "by_kind": {k.value: v for k, v in totals.items()},
                    },
                    correlation_id=correlation_id,
                )
        except DuplicateRecordError:
            # Lost the race against a concurrent run.
            existing = await self._db.get_charity_payout(month)
            if existing is None:
                raise Internal("charity payout conflict without a stored payout")
            return SettlementResult(payout=existing, already_closed=True)

        logger.info(
            "month %s closed: net=%s charity=%s", month.strftime("%Y-%m"), total_net, share_cents
        )
        return SettlementResult(payout=payout)
