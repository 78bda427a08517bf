from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from ..errors import ConfigurationError
from .base import VerificationResult


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookEvent:
    id: str
    type: str
    data_object: Dict[str, Any] = field(default_factory=dict)
    created: Optional[int] = None


class StripeWebhookVerifier:
    """
    Verifies the `Stripe-Signature` header against the endpoint secret
    before any byte of the payload is trusted.
    """

    def __init__(self, webhook_secret: str, tolerance_seconds: int = 300) -> None:
        self._webhook_secret = webhook_secret
        self._tolerance = tolerance_seconds

    async def verify(
        self, payload: bytes, signature: Optional[str]
    ) -> VerificationResult[WebhookEvent]:
        if not self._webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            return VerificationResult.rejected("Missing Stripe signature")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            return VerificationResult.rejected("Payload is not valid UTF-8")

        try:
            stripe.WebhookSignature.verify_header(
                body, signature, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("webhook signature verification failed: %s", exc)
            return VerificationResult.rejected("Invalid signature")

        try:
            data = json.loads(body)
        except ValueError:
            return VerificationResult.rejected("Payload is not valid JSON")
        if not isinstance(data, dict) or not data.get("id") or not data.get("type"):
            return VerificationResult.rejected("Payload is not a Stripe event")

        data_object = (data.get("data") or {}).get("object") or {}
        return VerificationResult.ok(
            WebhookEvent(
                id=str(data["id"]),
                type=str(data["type"]),
                data_object=data_object if isinstance(data_object, dict) else {},
                created=data.get("created"),
            )
        )
