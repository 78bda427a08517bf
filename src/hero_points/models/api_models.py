from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AdRewardCallbackRequest(BaseModel):
    server_verification_id: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    ad_network: str = Field(min_length=1)
    ecpm_cents: Optional[int] = Field(default=None, ge=0)


class RefreshRequest(BaseModel):
    idempotency_key: str = Field(min_length=1)
    device_id: str = Field(min_length=1)


class PurchaseVerifyRequest(BaseModel):
    receipt_data: str = Field(min_length=1)
    platform: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    device_id: str = Field(min_length=1)
    transaction_id: Optional[str] = None


class SettleMonthRequest(BaseModel):
    month: Optional[str] = Field(
        default=None, description="Month to close as YYYY-MM; defaults to the previous month."
    )


class HPAwardResponse(BaseModel):
    success: bool = True
    hp_awarded: int
    new_balance: int
    message: str


class RefreshResponse(BaseModel):
    success: bool = True
    cost_hp: int
    new_balance: int
    is_premium: bool


class BalanceResponse(BaseModel):
    user_id: str
    hp_balance: int
    is_premium: bool
    premium_until: Optional[datetime] = None


class LedgerEntryOut(BaseModel):
    id: str
    delta: int
    reason: str
    balance_after: int
    meta: Dict[str, Any]
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    user_id: str
    entries: List[LedgerEntryOut]
    limit: int
    offset: int


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False


class SettlementSummary(BaseModel):
    subscription_revenue_cents: int
    iap_revenue_cents: int
    ad_revenue_cents: int
    total_net_cents: int
    charity_share_cents: int
    charity_percentage: float


class SettleMonthResponse(BaseModel):
    success: bool = True
    month: str
    summary: SettlementSummary
    payout_id: str
    already_closed: bool = False
