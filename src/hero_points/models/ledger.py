from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import Field

from .base import DBSerializableModel, utcnow


class LedgerReason(str, Enum):
    """
    Closed set of reasons a ledger entry may carry.

    Rate-limit and premium-waiver policies are keyed by these values.
    """

    REWARDED_VIDEO = "rewarded_video"
    IAP_PURCHASE = "iap_purchase"
    PREMIUM_UNLIMITED = "premium_unlimited"
    REFRESH_QUOTE = "refresh_quote"


class LedgerEntry(DBSerializableModel):
    """
    One immutable, signed HP movement.

    Entries are only ever inserted. ``balance_after`` is the cached profile
    balance right after the entry's transaction committed its delta.
    """

    collection_name: ClassVar[str] = "hp_ledger"
    unique_together: ClassVar[list] = [("user_id", "reason", "dedup_key")]

    id: Optional[str] = Field(default=None)
    user_id: str
    delta: int
    reason: LedgerReason
    dedup_key: Optional[str] = Field(
        default=None,
        description="Identifier of the external event this entry applies; unique per user and reason.",
    )
    meta: Dict[str, Any] = Field(default_factory=dict)
    balance_after: int
    correlation_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_credit(self) -> bool:
        return self.delta > 0
