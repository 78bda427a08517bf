from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from hero_points.api.app import build_services
from hero_points.config import Settings
from hero_points.db.memory import InMemoryDBManager
from hero_points.logging.audit_logger import AuditLogger


WEBHOOK_SECRET = "whsec_test_secret"
JWT_SECRET = "jwt-test-secret"
CRON_SECRET = "cron-test-secret"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeStripe:
    """Stands in for the Stripe API reads the services make."""

    def __init__(self) -> None:
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.payment_intents: Dict[str, Dict[str, Any]] = {}

    async def fetch_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return self.subscriptions[subscription_id]

    async def fetch_payment_intent(self, intent_id: str) -> Optional[Dict[str, Any]]:
        return self.payment_intents.get(intent_id)


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def db() -> InMemoryDBManager:
    return InMemoryDBManager()


@pytest.fixture
def audit(db, tmp_path) -> AuditLogger:
    return AuditLogger(db=db, file_path=tmp_path / "audit.log")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        AUDIT_LOG_PATH=str(tmp_path / "hp_audit.log"),
        JWT_SECRET=JWT_SECRET,
        CRON_SECRET=CRON_SECRET,
        IAP_APPLE_SHARED_SECRET="apple-shared-secret",
        IAP_GOOGLE_SERVICE_ACCOUNT="google-service-account",
        STRIPE_SECRET="sk_test_123",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )


@pytest.fixture
def fake_stripe() -> FakeStripe:
    return FakeStripe()


@pytest.fixture
def services(settings, db, clock, fake_stripe):
    return build_services(
        settings,
        db,
        subscription_fetcher=fake_stripe.fetch_subscription,
        payment_intent_fetcher=fake_stripe.fetch_payment_intent,
        clock=clock,
    )
