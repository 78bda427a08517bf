from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from ..models.api_models import (
    AdRewardCallbackRequest,
    BalanceResponse,
    HPAwardResponse,
    LedgerEntryOut,
    LedgerHistoryResponse,
    PurchaseVerifyRequest,
    RefreshRequest,
    RefreshResponse,
    SettleMonthRequest,
    SettleMonthResponse,
    SettlementSummary,
    WebhookAck,
)
from ..services.settlement_service import parse_month
from ..verifiers.ad_reward import AdRewardClaim
from ..verifiers.iap import PurchaseClaim
from .dependencies import AuthContext, get_auth_context, get_services, require_cron_secret


router = APIRouter(tags=["hero-points"])


@router.post("/rewards/ad-callback", response_model=HPAwardResponse)
async def ad_reward_callback(
    payload: AdRewardCallbackRequest,
    auth: AuthContext = Depends(get_auth_context),
    services=Depends(get_services),
) -> HPAwardResponse:
    applied = await services.points.claim_ad_reward(
        auth.user_id,
        AdRewardClaim(
            verification_id=payload.server_verification_id,
            device_id=payload.device_id,
            ad_network=payload.ad_network,
            ecpm_cents=payload.ecpm_cents,
        ),
        correlation_id=auth.correlation_id,
    )
    return HPAwardResponse(
        hp_awarded=applied.entry.delta,
        new_balance=applied.balance,
        message=f"Earned {applied.entry.delta} HP from rewarded video",
    )


@router.post("/points/refresh", response_model=RefreshResponse)
async def refresh_quote(
    payload: RefreshRequest,
    auth: AuthContext = Depends(get_auth_context),
    services=Depends(get_services),
) -> RefreshResponse:
    outcome = await services.points.spend_refresh(
        auth.user_id,
        idempotency_key=payload.idempotency_key,
        device_id=payload.device_id,
        correlation_id=auth.correlation_id,
    )
    return RefreshResponse(
        cost_hp=outcome.cost_hp,
        new_balance=outcome.balance,
        is_premium=outcome.is_premium,
    )


@router.post("/purchases/verify", response_model=HPAwardResponse)
async def verify_purchase(
    payload: PurchaseVerifyRequest,
    auth: AuthContext = Depends(get_auth_context),
    services=Depends(get_services),
) -> HPAwardResponse:
    applied = await services.points.verify_purchase(
        auth.user_id,
        PurchaseClaim(
            receipt_data=payload.receipt_data,
            platform=payload.platform,
            product_id=payload.product_id,
            device_id=payload.device_id,
            transaction_id=payload.transaction_id,
        ),
        correlation_id=auth.correlation_id,
    )
    return HPAwardResponse(
        hp_awarded=applied.entry.delta,
        new_balance=applied.balance,
        message=f"Purchased {applied.entry.delta} HP",
    )


@router.get("/points/balance", response_model=BalanceResponse)
async def get_balance(
    auth: AuthContext = Depends(get_auth_context),
    services=Depends(get_services),
) -> BalanceResponse:
    profile = await services.points.get_account(auth.user_id)
    return BalanceResponse(
        user_id=auth.user_id,
        hp_balance=profile.hp_balance,
        is_premium=await services.points.is_premium(auth.user_id),
        premium_until=profile.premium_until,
    )


@router.get("/points/ledger", response_model=LedgerHistoryResponse)
async def get_ledger(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    services=Depends(get_services),
) -> LedgerHistoryResponse:
    entries = await services.ledger.get_history(auth.user_id, limit=limit, offset=offset)
    return LedgerHistoryResponse(
        user_id=auth.user_id,
        entries=[
            LedgerEntryOut(
                id=entry.id or "",
                delta=entry.delta,
                reason=entry.reason.value,
                balance_after=entry.balance_after,
                meta=entry.meta,
                created_at=entry.created_at,
            )
            for entry in entries
        ],
        limit=limit,
        offset=offset,
    )


@router.post("/webhooks/payment-provider", response_model=WebhookAck)
async def payment_provider_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    services=Depends(get_services),
) -> WebhookAck:
    # The signature covers the exact bytes received, so read the raw body.
    payload = await request.body()
    outcome = await services.webhooks.handle(payload, stripe_signature)
    return WebhookAck(duplicate=outcome.duplicate)


@router.post(
    "/admin/settle-month",
    response_model=SettleMonthResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def settle_month(
    payload: Optional[SettleMonthRequest] = None,
    services=Depends(get_services),
) -> SettleMonthResponse:
    month = parse_month(payload.month) if payload and payload.month else None
    result = await services.settlement.close_month(month)
    return SettleMonthResponse(
        month=result.month_label,
        summary=SettlementSummary(**result.summary()),
        payout_id=result.payout.id or "",
        already_closed=result.already_closed,
    )
