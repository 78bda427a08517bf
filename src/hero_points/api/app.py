"""
Application factory wiring the HP stack onto a FastAPI app.

    uvicorn hero_points.api.app:create_app --factory
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import Settings, get_settings
from ..db.base import BaseDBManager
from ..db.memory import InMemoryDBManager
from ..db.mongo import MongoDBManager
from ..errors import HeroPointsError, RateLimited
from ..logging.audit_logger import AuditLogger, configure_logging
from ..models.base import utcnow
from ..models.ledger import LedgerReason
from ..services.idempotency import IdempotencyGuard
from ..services.ledger_service import LedgerService
from ..services.payment_recorder import PaymentRecorder
from ..services.points_service import PointsService
from ..services.rate_limiter import RateLimiter, default_policies
from ..services.settlement_service import SettlementService
from ..services.subscription_service import SubscriptionService
from ..services.webhook_service import PaymentWebhookService
from ..verifiers.ad_reward import AdRewardVerifier
from ..verifiers.iap import IAPReceiptVerifier
from ..verifiers.stripe_api import (
    PaymentIntentFetcher,
    StripeSubscriptionFetcher,
    SubscriptionFetcher,
)
from ..verifiers.stripe_webhook import StripeWebhookVerifier
from .router import router


logger = logging.getLogger(__name__)

# Debits that premium users get refunded in the same transaction.
PREMIUM_WAIVERS = {LedgerReason.REFRESH_QUOTE: LedgerReason.PREMIUM_UNLIMITED}


@dataclass
class Services:
    db: BaseDBManager
    audit: AuditLogger
    ledger: LedgerService
    points: PointsService
    subscriptions: SubscriptionService
    webhooks: PaymentWebhookService
    settlement: SettlementService


def _create_db_manager(settings: Settings) -> BaseDBManager:
    if settings.MONGO_URI:
        return MongoDBManager.from_client_uri(settings.MONGO_URI, settings.MONGO_DB)
    logger.warning("HP_MONGO_URI not set; using the in-memory store")
    return InMemoryDBManager()


def build_services(
    settings: Settings,
    db: BaseDBManager,
    subscription_fetcher: Optional[SubscriptionFetcher] = None,
    payment_intent_fetcher: Optional[PaymentIntentFetcher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    audit = AuditLogger(db=db, file_path=Path(settings.AUDIT_LOG_PATH))
    rate_limiter = RateLimiter(db, default_policies(settings), audit=audit, clock=clock)
    ledger = LedgerService(
        db,
        audit,
        rate_limiter=rate_limiter,
        premium_waivers=PREMIUM_WAIVERS,
        clock=clock,
    )
    payments = PaymentRecorder(
        db, audit, platform_fee_rate=settings.PLATFORM_FEE_RATE, clock=clock
    )
    subscriptions = SubscriptionService(db, audit, clock=clock)
    points = PointsService(
        db,
        audit,
        ledger=ledger,
        rate_limiter=rate_limiter,
        guard=IdempotencyGuard(db, audit),
        payments=payments,
        ad_verifier=AdRewardVerifier(
            hp_amount=settings.AD_REWARD_HP,
            default_ecpm_cents=settings.DEFAULT_AD_ECPM_CENTS,
        ),
        iap_verifier=IAPReceiptVerifier.from_settings(settings, payment_intent_fetcher),
        refresh_cost_hp=settings.REFRESH_COST_HP,
        clock=clock,
    )
    webhooks = PaymentWebhookService(
        db,
        audit,
        verifier=StripeWebhookVerifier(
            settings.STRIPE_WEBHOOK_SECRET, settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
        ),
        subscriptions=subscriptions,
        payments=payments,
        fetch_subscription=subscription_fetcher
        or StripeSubscriptionFetcher(settings.STRIPE_SECRET),
        clock=clock,
    )
    settlement = SettlementService(
        db, audit, share_percent=settings.CHARITY_SHARE, clock=clock
    )
    return Services(
        db=db,
        audit=audit,
        ledger=ledger,
        points=points,
        subscriptions=subscriptions,
        webhooks=webhooks,
        settlement=settlement,
    )


async def handle_hero_points_error(request: Request, exc: HeroPointsError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_dict()),
        headers=headers,
    )


async def handle_request_validation_error(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[BaseDBManager] = None,
    subscription_fetcher: Optional[SubscriptionFetcher] = None,
    payment_intent_fetcher: Optional[PaymentIntentFetcher] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)
    if db is None:
        db = _create_db_manager(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if isinstance(db, MongoDBManager):
            await db.ensure_indexes()
        yield

    app = FastAPI(title="Hero Points Ledger", lifespan=lifespan)
    app.state.settings = settings
    app.state.services = build_services(
        settings,
        db,
        subscription_fetcher=subscription_fetcher,
        payment_intent_fetcher=payment_intent_fetcher,
        clock=clock,
    )
    app.add_exception_handler(HeroPointsError, handle_hero_points_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.include_router(router)
    return app
