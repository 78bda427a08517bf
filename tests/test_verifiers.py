from __future__ import annotations

import hashlib
import json
import time

import pytest

from hero_points.errors import ConfigurationError, ValidationError
from hero_points.verifiers.ad_reward import AdNetwork, AdRewardClaim, AdRewardVerifier
from hero_points.verifiers.iap import (
    AppleReceiptCheck,
    GoogleReceiptCheck,
    IAPReceiptVerifier,
    Platform,
    PurchaseClaim,
    StripePaymentIntentCheck,
)
from hero_points.verifiers.stripe_webhook import StripeWebhookVerifier

from conftest import FakeStripe, WEBHOOK_SECRET, sign_payload, stripe_event


IOS_RECEIPT = "receipt-" + "a" * 120
ANDROID_RECEIPT = json.dumps({"productId": "hp_1200", "purchaseToken": "t" * 120})


@pytest.mark.asyncio
async def test_ad_token_accepted():
    verifier = AdRewardVerifier(hp_amount=5, default_ecpm_cents=50)

    result = await verifier.verify(
        AdRewardClaim("reward_0123456789abcdef", "device-1", "admob")
    )

    assert result.valid
    assert result.event.hp_amount == 5
    assert result.event.ad_network is AdNetwork.ADMOB
    assert result.event.revenue_cents == 50
    assert result.event.ledger_meta()["server_verification_id"] == "reward_0123456789abcdef"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "token,network",
    [
        ("reward_short", "admob"),
        ("bonus_0123456789abcdef", "admob"),
        ("", "admob"),
        ("reward_0123456789abcdef", "unknown-network"),
    ],
)
async def test_malformed_ad_claims_rejected(token, network):
    result = await AdRewardVerifier().verify(AdRewardClaim(token, "device-1", network))

    assert not result.valid
    assert result.event is None
    assert result.failure_reason


@pytest.mark.asyncio
async def test_reported_ecpm_drives_revenue():
    result = await AdRewardVerifier().verify(
        AdRewardClaim("reward_0123456789abcdef", "device-1", "applovin", ecpm_cents=120)
    )

    assert result.event.ecpm_cents == 120
    assert result.event.revenue_cents == 120


def make_iap_verifier(fake_stripe: FakeStripe) -> IAPReceiptVerifier:
    return IAPReceiptVerifier(
        checks={
            Platform.IOS: AppleReceiptCheck("apple-secret"),
            Platform.ANDROID: GoogleReceiptCheck("service-account"),
            Platform.STRIPE: StripePaymentIntentCheck(fake_stripe.fetch_payment_intent),
        }
    )


def test_unknown_product_is_rejected(fake_stripe):
    verifier = make_iap_verifier(fake_stripe)

    with pytest.raises(ValidationError):
        verifier.lookup_package("hp_999999")
    assert verifier.lookup_package("hp_3500").price_cents == 1999


@pytest.mark.asyncio
async def test_ios_receipt_accepted_and_excerpted(fake_stripe):
    result = await make_iap_verifier(fake_stripe).verify(
        PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="1000001")
    )

    assert result.valid
    assert result.event.package.hp_amount == 200
    assert result.event.dedup_key == "receipt_" + hashlib.sha256(IOS_RECEIPT.encode()).hexdigest()
    assert result.event.ledger_meta()["transaction_id"] == "1000001"
    assert result.event.receipt_excerpt == IOS_RECEIPT[:100]


@pytest.mark.asyncio
async def test_short_ios_receipt_rejected(fake_stripe):
    result = await make_iap_verifier(fake_stripe).verify(
        PurchaseClaim("receipt-short", "ios", "hp_200", "device-1")
    )

    assert not result.valid


@pytest.mark.asyncio
async def test_android_receipt_must_match_product(fake_stripe):
    verifier = make_iap_verifier(fake_stripe)

    ok = await verifier.verify(PurchaseClaim(ANDROID_RECEIPT, "android", "hp_1200", "device-1"))
    mismatch = await verifier.verify(
        PurchaseClaim(ANDROID_RECEIPT, "android", "hp_3500", "device-1")
    )

    assert ok.valid
    assert not mismatch.valid


@pytest.mark.asyncio
async def test_stripe_payment_intent_must_have_succeeded_for_the_price(fake_stripe):
    verifier = make_iap_verifier(fake_stripe)
    fake_stripe.payment_intents["pi_3Paid0000000000000001"] = {"status": "succeeded", "amount": 999}
    fake_stripe.payment_intents["pi_3Open0000000000000001"] = {
        "status": "requires_payment_method",
        "amount": 999,
    }

    paid = await verifier.verify(
        PurchaseClaim("pi_3Paid0000000000000001", "stripe", "hp_1200", "web")
    )
    wrong_price = await verifier.verify(
        PurchaseClaim("pi_3Paid0000000000000001", "stripe", "hp_3500", "web")
    )
    unpaid = await verifier.verify(
        PurchaseClaim("pi_3Open0000000000000001", "stripe", "hp_1200", "web")
    )
    unknown = await verifier.verify(
        PurchaseClaim("pi_3Missing00000000000001", "stripe", "hp_1200", "web")
    )

    assert paid.valid
    assert not wrong_price.valid
    assert not unpaid.valid
    assert not unknown.valid


@pytest.mark.asyncio
async def test_missing_store_secret_is_a_configuration_error(fake_stripe):
    verifier = IAPReceiptVerifier(checks={Platform.IOS: AppleReceiptCheck("")})

    with pytest.raises(ConfigurationError):
        await verifier.verify(PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1"))


@pytest.mark.asyncio
async def test_unsupported_platform_is_a_validation_error(fake_stripe):
    with pytest.raises(ValidationError):
        await make_iap_verifier(fake_stripe).verify(
            PurchaseClaim(IOS_RECEIPT, "windows", "hp_200", "device-1")
        )


def test_dedup_key_ignores_client_transaction_id():
    with_tx = PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="42")
    without_tx = PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1")
    intent = PurchaseClaim("pi_3Paid0000000000000001", "stripe", "hp_200", "web", transaction_id="7")

    expected = "receipt_" + hashlib.sha256(IOS_RECEIPT.encode()).hexdigest()
    assert IAPReceiptVerifier.dedup_key(with_tx) == expected
    assert IAPReceiptVerifier.dedup_key(without_tx) == expected
    assert IAPReceiptVerifier.dedup_key(intent) == "pi_3Paid0000000000000001"


@pytest.mark.asyncio
async def test_signed_webhook_is_accepted():
    payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1", "amount_paid": 499})
    verifier = StripeWebhookVerifier(WEBHOOK_SECRET)

    result = await verifier.verify(payload, sign_payload(payload))

    assert result.valid
    assert result.event.id == "evt_1"
    assert result.event.type == "invoice.paid"
    assert result.event.data_object["amount_paid"] == 499


@pytest.mark.asyncio
async def test_webhook_with_bad_signature_is_rejected():
    payload = stripe_event("evt_1", "invoice.paid", {"id": "in_1"})
    verifier = StripeWebhookVerifier(WEBHOOK_SECRET)

    forged = await verifier.verify(payload, sign_payload(payload, secret="whsec_other"))
    tampered = await verifier.verify(payload.replace(b"in_1", b"in_2"), sign_payload(payload))
    missing = await verifier.verify(payload, None)
    stale = await verifier.verify(
        payload, sign_payload(payload, timestamp=int(time.time()) - 3600)
    )

    assert not forged.valid
    assert not tampered.valid
    assert not missing.valid
    assert not stale.valid


@pytest.mark.asyncio
async def test_webhook_without_secret_is_a_configuration_error():
    payload = stripe_event("evt_1", "invoice.paid", {})

    with pytest.raises(ConfigurationError):
        await StripeWebhookVerifier("").verify(payload, sign_payload(payload))
