from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import ClassVar, Optional

from pydantic import Field, model_validator

from .base import DBSerializableModel, utcnow


class PaymentKind(str, Enum):
    SUBSCRIPTION = "subscription"
    IAP_POINTS = "iap_points"
    AD = "ad"


class PaymentRecord(DBSerializableModel):
    """
    One external monetary event. ``net_cents`` is always gross minus fee.
    """

    collection_name: ClassVar[str] = "payments"
    unique_together: ClassVar[list] = [("kind", "provider", "provider_ref")]

    id: Optional[str] = Field(default=None)
    user_id: Optional[str] = Field(
        default=None, description="Null for aggregate ad-revenue rows."
    )
    kind: PaymentKind
    gross_cents: int
    fee_cents: int = 0
    net_cents: int = 0
    provider: str
    provider_ref: str
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _derive_net(self) -> "PaymentRecord":
        if self.gross_cents < 0 or self.fee_cents < 0:
            raise ValueError("gross_cents and fee_cents must be non-negative")
        self.net_cents = self.gross_cents - self.fee_cents
        return self


class CharityPayout(DBSerializableModel):
    """
    Terminal settlement record for one calendar month.
    """

    collection_name: ClassVar[str] = "charity_payouts"
    unique_together: ClassVar[list] = [("month",)]

    id: Optional[str] = Field(default=None)
    month: date = Field(description="First day of the settled month.")
    net_cents: int
    charity_share_cents: int
    subscription_revenue_cents: int = 0
    iap_revenue_cents: int = 0
    ad_revenue_cents: int = 0
    share_percent: str = Field(description="Share applied, kept as a decimal string.")
    tx_ref: str
    created_at: datetime = Field(default_factory=utcnow)
