from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Protocol

from ..errors import ConfigurationError, ValidationError
from .base import VerificationResult
from .stripe_api import PaymentIntentFetcher, StripePaymentIntentFetcher, stripe_field

if TYPE_CHECKING:  # pragma: no cover
    from ..config import Settings


logger = logging.getLogger(__name__)

RECEIPT_EXCERPT_LENGTH = 100


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"
    STRIPE = "stripe"


@dataclass(frozen=True)
class HPPackage:
    product_id: str
    hp_amount: int
    price_cents: int


HP_PACKAGES: Dict[str, HPPackage] = {
    "hp_200": HPPackage(product_id="hp_200", hp_amount=200, price_cents=199),
    "hp_1200": HPPackage(product_id="hp_1200", hp_amount=1200, price_cents=999),
    "hp_3500": HPPackage(product_id="hp_3500", hp_amount=3500, price_cents=1999),
}


@dataclass(frozen=True)
class PurchaseClaim:
    receipt_data: str
    platform: str
    product_id: str
    device_id: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class PurchaseEvent:
    package: HPPackage
    platform: Platform
    device_id: str
    dedup_key: str
    transaction_id: Optional[str]
    receipt_excerpt: str

    def ledger_meta(self) -> Dict[str, Any]:
        return {
            "product_id": self.package.product_id,
            "platform": self.platform.value,
            "device_id": self.device_id,
            "transaction_id": self.transaction_id,
            "receipt_data": self.receipt_excerpt,
        }


class ReceiptCheck(Protocol):
    async def __call__(self, receipt_data: str, package: HPPackage) -> bool: ...


class AppleReceiptCheck:
    def __init__(self, shared_secret: str) -> None:
        self._shared_secret = shared_secret

    async def __call__(self, receipt_data: str, package: HPPackage) -> bool:
        if not self._shared_secret:
            raise ConfigurationError("IAP_APPLE_SHARED_SECRET is not configured")
        return len(receipt_data) > 100 and "receipt" in receipt_data


class GoogleReceiptCheck:
    def __init__(self, service_account: str) -> None:
        self._service_account = service_account

    async def __call__(self, receipt_data: str, package: HPPackage) -> bool:
        if not self._service_account:
            raise ConfigurationError("IAP_GOOGLE_SERVICE_ACCOUNT is not configured")
        if len(receipt_data) <= 100 or "purchaseToken" not in receipt_data:
            return False
        try:
            payload = json.loads(receipt_data)
        except ValueError:
            return True
        product_id = payload.get("productId") if isinstance(payload, dict) else None
        return product_id is None or product_id == package.product_id


class StripePaymentIntentCheck:
    """The receipt is a PaymentIntent id; it must have succeeded for the package price."""

    def __init__(self, fetch_payment_intent: PaymentIntentFetcher) -> None:
        self._fetch = fetch_payment_intent

    async def __call__(self, receipt_data: str, package: HPPackage) -> bool:
        if not receipt_data.startswith("pi_") or len(receipt_data) <= 20:
            return False
        intent = await self._fetch(receipt_data)
        if intent is None:
            return False
        return (
            stripe_field(intent, "status") == "succeeded"
            and stripe_field(intent, "amount") == package.price_cents
        )


class IAPReceiptVerifier:
    """
    Maps a product id onto the HP catalog and validates the store receipt
    with the platform's own procedure.

    Missing store credentials raise ConfigurationError; they never
    silently accept a receipt.
    """

    def __init__(
        self,
        checks: Mapping[Platform, ReceiptCheck],
        catalog: Optional[Mapping[str, HPPackage]] = None,
    ) -> None:
        self._checks = dict(checks)
        self._catalog = dict(catalog if catalog is not None else HP_PACKAGES)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        fetch_payment_intent: Optional[PaymentIntentFetcher] = None,
    ) -> "IAPReceiptVerifier":
        return cls(
            checks={
                Platform.IOS: AppleReceiptCheck(settings.IAP_APPLE_SHARED_SECRET),
                Platform.ANDROID: GoogleReceiptCheck(settings.IAP_GOOGLE_SERVICE_ACCOUNT),
                Platform.STRIPE: StripePaymentIntentCheck(
                    fetch_payment_intent or StripePaymentIntentFetcher(settings.STRIPE_SECRET)
                ),
            }
        )

    def lookup_package(self, product_id: str) -> HPPackage:
        package = self._catalog.get(product_id)
        if package is None:
            raise ValidationError(f"Invalid product ID: {product_id}")
        return package

    @staticmethod
    def parse_platform(value: str) -> Platform:
        try:
            return Platform(value)
        except ValueError as exc:
            raise ValidationError(f"Unsupported platform: {value}") from exc

    @classmethod
    def dedup_key(cls, claim: PurchaseClaim) -> str:
        """
        Key identifying the purchase, derived from the receipt itself.

        The client supplied transaction_id is only kept in meta; a receipt
        resubmitted under a new transaction_id maps to the same key.
        """
        if cls.parse_platform(claim.platform) is Platform.STRIPE:
            return claim.receipt_data
        digest = hashlib.sha256(claim.receipt_data.encode("utf-8")).hexdigest()
        return f"receipt_{digest}"

    async def verify(self, claim: PurchaseClaim) -> VerificationResult[PurchaseEvent]:
        package = self.lookup_package(claim.product_id)
        platform = self.parse_platform(claim.platform)
        check = self._checks.get(platform)
        if check is None:
            raise ConfigurationError(f"no receipt check configured for {platform.value}")

        if not await check(claim.receipt_data, package):
            logger.info(
                "receipt rejected",
                extra={"platform": platform.value, "product_id": package.product_id},
            )
            return VerificationResult.rejected("Receipt verification failed")

        return VerificationResult.ok(
            PurchaseEvent(
                package=package,
                platform=platform,
                device_id=claim.device_id,
                dedup_key=self.dedup_key(claim),
                transaction_id=claim.transaction_id,
                receipt_excerpt=claim.receipt_data[:RECEIPT_EXCERPT_LENGTH],
            )
        )
