from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from ..db.base import BaseDBManager
from ..errors import ValidationError
from ..logging.audit_logger import AuditLogger
from ..models.audit import AuditEventType
from ..models.base import utcnow
from ..models.profile import Subscription, SubscriptionStatus
from ..verifiers.stripe_api import first_item, stripe_field


def _from_epoch(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


@dataclass(frozen=True)
class SubscriptionSnapshot:
    subscription_id: str
    customer_id: str
    status: str
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None

    @classmethod
    def from_stripe(cls, obj: Any) -> "SubscriptionSnapshot":
        item = first_item(obj, "items")
        # Newer API versions moved the period end onto subscription items.
        period_end = stripe_field(obj, "current_period_end") or stripe_field(
            item, "current_period_end"
        )
        customer = stripe_field(obj, "customer")
        if not isinstance(customer, str):
            customer = stripe_field(customer, "id")
        return cls(
            subscription_id=str(stripe_field(obj, "id") or ""),
            customer_id=str(customer or ""),
            status=str(stripe_field(obj, "status") or ""),
            price_id=stripe_field(item, "price", "id"),
            current_period_end=_from_epoch(period_end),
        )


class SubscriptionService:
    """
    Mirrors payment-processor subscription state onto profiles.

    This is the only writer of the premium flag; the ledger only reads it.
    """

    def __init__(
        self,
        db: BaseDBManager,
        audit: AuditLogger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._db = db
        self._audit = audit
        self._clock = clock

    async def link_customer(self, user_id: str, customer_id: str) -> None:
        await self._db.link_stripe_customer(user_id, customer_id)

    async def resolve_user(self, customer_id: str) -> Optional[str]:
        if not customer_id:
            return None
        profile = await self._db.get_profile_by_customer(customer_id)
        return profile.id if profile else None

    async def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        return await self._db.get_subscription(user_id)

    async def is_premium(self, user_id: str) -> bool:
        profile = await self._db.get_profile(user_id)
        return bool(profile and profile.premium_active(self._clock()))

    async def sync(
        self,
        snapshot: SubscriptionSnapshot,
        correlation_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Store the snapshot and set the user's premium flag from it.

        Returns None when no profile is linked to the snapshot's customer.
        """
        if not snapshot.subscription_id or not snapshot.customer_id:
            raise ValidationError("subscription is missing its id or customer")
        try:
            status = SubscriptionStatus(snapshot.status)
        except ValueError as exc:
            raise ValidationError(f"unknown subscription status: {snapshot.status}") from exc

        user_id = await self.resolve_user(snapshot.customer_id)
        if user_id is None:
            await self._audit.log_error(
                message="Profile not found for customer",
                details={
                    "customer_id": snapshot.customer_id,
                    "subscription_id": snapshot.subscription_id,
                },
                correlation_id=correlation_id,
            )
            return None

        now = self._clock()
        subscription = await self._db.upsert_subscription(
            Subscription(
                user_id=user_id,
                provider="stripe",
                provider_subscription_id=snapshot.subscription_id,
                status=status,
                price_id=snapshot.price_id,
                current_period_end=snapshot.current_period_end,
                updated_at=now,
            )
        )

        profile = await self._db.get_profile(user_id)
        active = status.grants_premium
        premium_since = None
        if active:
            already = profile is not None and profile.is_premium and profile.premium_since
            premium_since = profile.premium_since if already else now
        await self._db.set_premium_status(
            user_id,
            is_premium=active,
            premium_since=premium_since,
            premium_until=snapshot.current_period_end if active else None,
        )

        await self._audit.log_event(
            AuditEventType.SUBSCRIPTION,
            message="Subscription synchronized",
            details={
                "subscription_id": snapshot.subscription_id,
                "status": status.value,
                "is_premium": active,
                "current_period_end": (
                    snapshot.current_period_end.isoformat()
                    if snapshot.current_period_end
                    else None
                ),
            },
            user_id=user_id,
            correlation_id=correlation_id,
        )
        return subscription
