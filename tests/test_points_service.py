from __future__ import annotations

import pytest

from hero_points.errors import (
    DuplicateEvent,
    InsufficientBalance,
    RateLimited,
    ValidationError,
    VerificationFailed,
)
from hero_points.models.ledger import LedgerReason
from hero_points.models.payment import PaymentKind
from hero_points.verifiers.ad_reward import AdRewardClaim
from hero_points.verifiers.iap import IAPReceiptVerifier, PurchaseClaim


IOS_RECEIPT = "receipt-" + "b" * 150


def ad_claim(token: str = "reward_0123456789abcdef", ecpm_cents=None) -> AdRewardClaim:
    return AdRewardClaim(token, "device-1", "admob", ecpm_cents=ecpm_cents)


@pytest.mark.asyncio
async def test_ad_reward_credits_and_books_daily_revenue(services, db, clock):
    result = await services.points.claim_ad_reward("user-1", ad_claim(ecpm_cents=80))

    assert result.entry.delta == 5
    assert result.balance == 5
    assert result.entry.meta["ad_network"] == "admob"
    assert result.entry.meta["ecpm_cents"] == 80

    day_ref = f"daily_{clock().date().isoformat()}_admob"
    record = await db.find_payment_record(PaymentKind.AD, "admob", day_ref)
    assert record is not None
    assert record.gross_cents == 80
    assert record.net_cents == 80
    assert record.fee_cents == 0


@pytest.mark.asyncio
async def test_second_ad_reward_of_the_day_reuses_revenue_row(services, db, clock):
    await services.points.claim_ad_reward("user-1", ad_claim("reward_aaaaaaaaaaaaaaaa"))
    await services.points.claim_ad_reward("user-2", ad_claim("reward_bbbbbbbbbbbbbbbb"))

    ad_rows = [p for p in db._payments if p.kind is PaymentKind.AD]
    assert len(ad_rows) == 1
    assert ad_rows[0].gross_cents == 50


@pytest.mark.asyncio
async def test_duplicate_ad_token_is_rejected_without_second_credit(services):
    first = await services.points.claim_ad_reward("user-1", ad_claim())

    with pytest.raises(DuplicateEvent) as excinfo:
        await services.points.claim_ad_reward("user-1", ad_claim())

    assert excinfo.value.prior_entry_id == first.entry.id
    assert excinfo.value.balance == 5
    assert await services.ledger.get_balance("user-1") == 5


@pytest.mark.asyncio
async def test_malformed_ad_token_creates_nothing(services, db):
    with pytest.raises(VerificationFailed):
        await services.points.claim_ad_reward("user-1", ad_claim("reward_short"))

    assert await services.ledger.get_history("user-1") == []
    assert db._payments == []


@pytest.mark.asyncio
async def test_sixth_ad_reward_in_an_hour_is_rate_limited(services, clock):
    for i in range(5):
        await services.points.claim_ad_reward("user-1", ad_claim(f"reward_{i:016d}"))
        clock.advance(minutes=5)

    with pytest.raises(RateLimited):
        await services.points.claim_ad_reward("user-1", ad_claim("reward_5555555555555555"))
    assert await services.ledger.get_balance("user-1") == 25


@pytest.mark.asyncio
async def test_refresh_debits_cost(services):
    await services.points.claim_ad_reward("user-1", ad_claim("reward_aaaaaaaaaaaaaaaa"))
    await services.points.claim_ad_reward("user-1", ad_claim("reward_bbbbbbbbbbbbbbbb"))

    outcome = await services.points.spend_refresh("user-1", "refresh-1", "device-1")

    assert outcome.cost_hp == 10
    assert outcome.balance == 0
    assert outcome.is_premium is False


@pytest.mark.asyncio
async def test_refresh_with_insufficient_balance_keeps_balance(services):
    await services.points.claim_ad_reward("user-1", ad_claim())

    with pytest.raises(InsufficientBalance):
        await services.points.spend_refresh("user-1", "refresh-1", "device-1")

    assert await services.ledger.get_balance("user-1") == 5


@pytest.mark.asyncio
async def test_refresh_is_free_for_premium_users(services, db, clock):
    await db.set_premium_status("user-1", True, premium_since=clock(), premium_until=None)

    outcome = await services.points.spend_refresh("user-1", "refresh-1", "device-1")

    assert outcome.is_premium is True
    assert outcome.cost_hp == 0
    assert outcome.balance == 0
    reasons = sorted(e.reason.value for e in await services.ledger.get_history("user-1"))
    assert reasons == [LedgerReason.PREMIUM_UNLIMITED.value, LedgerReason.REFRESH_QUOTE.value]


@pytest.mark.asyncio
async def test_refresh_retry_returns_first_outcome(services, clock):
    await services.points.claim_ad_reward("user-1", ad_claim("reward_aaaaaaaaaaaaaaaa"))
    await services.points.claim_ad_reward("user-1", ad_claim("reward_bbbbbbbbbbbbbbbb"))
    await services.points.claim_ad_reward("user-1", ad_claim("reward_cccccccccccccccc"))

    first = await services.points.spend_refresh("user-1", "refresh-1", "device-1")
    retry = await services.points.spend_refresh("user-1", "refresh-1", "device-1")

    assert retry.replayed is True
    assert retry.balance == first.balance == 5
    assert await services.ledger.get_balance("user-1") == 5


@pytest.mark.asyncio
async def test_iap_purchase_credits_and_records_payment(services, db):
    claim = PurchaseClaim(IOS_RECEIPT, "ios", "hp_1200", "device-1", transaction_id="2000001")
    result = await services.points.verify_purchase("user-1", claim)

    assert result.entry.delta == 1200
    assert result.balance == 1200
    assert result.entry.meta["receipt_data"] == IOS_RECEIPT[:100]

    record = await db.find_payment_record(
        PaymentKind.IAP_POINTS, "ios", IAPReceiptVerifier.dedup_key(claim)
    )
    assert record.user_id == "user-1"
    assert record.gross_cents == 999
    assert record.fee_cents == 150
    assert record.net_cents == 849


@pytest.mark.asyncio
async def test_duplicate_transaction_is_rejected(services, db):
    claim = PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="2000002")
    await services.points.verify_purchase("user-1", claim)

    with pytest.raises(DuplicateEvent):
        await services.points.verify_purchase("user-1", claim)

    assert await services.ledger.get_balance("user-1") == 200
    assert len([p for p in db._payments if p.kind is PaymentKind.IAP_POINTS]) == 1


@pytest.mark.asyncio
async def test_receipt_cannot_be_redeemed_by_second_account(services, db):
    claim = PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="2000003")
    await services.points.verify_purchase("user-1", claim)

    with pytest.raises(DuplicateEvent):
        await services.points.verify_purchase("user-2", claim)

    assert await services.ledger.get_balance("user-2") == 0
    assert await services.ledger.get_history("user-2") == []


@pytest.mark.asyncio
async def test_payment_intent_resubmitted_with_new_transaction_id_is_rejected(
    services, db, fake_stripe
):
    intent_id = "pi_3Paid0000000000000042"
    fake_stripe.payment_intents[intent_id] = {"status": "succeeded", "amount": 999}

    first = await services.points.verify_purchase(
        "user-1", PurchaseClaim(intent_id, "stripe", "hp_1200", "web", transaction_id="a")
    )
    with pytest.raises(DuplicateEvent) as excinfo:
        await services.points.verify_purchase(
            "user-1", PurchaseClaim(intent_id, "stripe", "hp_1200", "web", transaction_id="b")
        )
    with pytest.raises(DuplicateEvent):
        await services.points.verify_purchase(
            "user-2", PurchaseClaim(intent_id, "stripe", "hp_1200", "web", transaction_id="c")
        )

    assert excinfo.value.status_code == 409
    assert excinfo.value.prior_entry_id == first.entry.id
    assert await services.ledger.get_balance("user-1") == 1200
    assert await services.ledger.get_balance("user-2") == 0
    assert len(await services.ledger.get_history("user-1")) == 1
    payments = [p for p in db._payments if p.kind is PaymentKind.IAP_POINTS]
    assert len(payments) == 1
    assert payments[0].provider_ref == intent_id
    assert payments[0].gross_cents == 999


@pytest.mark.asyncio
async def test_store_receipt_resubmitted_with_new_transaction_id_is_rejected(services, db):
    await services.points.verify_purchase(
        "user-1", PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="1")
    )

    with pytest.raises(DuplicateEvent):
        await services.points.verify_purchase(
            "user-1", PurchaseClaim(IOS_RECEIPT, "ios", "hp_200", "device-1", transaction_id="2")
        )

    assert await services.ledger.get_balance("user-1") == 200
    assert len(await services.ledger.get_history("user-1")) == 1
    assert len([p for p in db._payments if p.kind is PaymentKind.IAP_POINTS]) == 1


@pytest.mark.asyncio
async def test_unknown_product_creates_no_entry(services, db):
    with pytest.raises(ValidationError):
        await services.points.verify_purchase(
            "user-1", PurchaseClaim(IOS_RECEIPT, "ios", "hp_free", "device-1")
        )

    assert await services.ledger.get_history("user-1") == []
    assert db._payments == []


@pytest.mark.asyncio
async def test_rejected_receipt_creates_nothing(services, db):
    with pytest.raises(VerificationFailed):
        await services.points.verify_purchase(
            "user-1", PurchaseClaim("not-a-receipt", "ios", "hp_200", "device-1")
        )

    assert await services.ledger.get_history("user-1") == []
    assert db._payments == []
