from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class Profile(DBSerializableModel):
    """
    Per-user HP state.

    ``hp_balance`` is a denormalized cache of the ledger sum; only the
    ledger service writes it, in the same transaction as the entry that
    defines it. Premium fields are owned by subscription sync.
    """

    collection_name: ClassVar[str] = "profiles"

    id: str
    hp_balance: int = 0
    is_premium: bool = False
    premium_since: Optional[datetime] = None
    premium_until: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def premium_active(self, now: datetime) -> bool:
        if not self.is_premium:
            return False
        return self.premium_until is None or self.premium_until > now


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"

    @property
    def grants_premium(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class Subscription(DBSerializableModel):
    """
    Latest known state of a user's payment-processor subscription.
    """

    collection_name: ClassVar[str] = "subscriptions"
    unique_together: ClassVar[list] = [("user_id",)]

    id: Optional[str] = Field(default=None)
    user_id: str
    provider: str = "stripe"
    provider_subscription_id: str
    status: SubscriptionStatus
    price_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
