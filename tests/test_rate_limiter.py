from __future__ import annotations

from datetime import timedelta

import pytest

from hero_points.errors import RateLimited
from hero_points.models.audit import AuditEventType
from hero_points.models.ledger import LedgerReason
from hero_points.services.ledger_service import LedgerService
from hero_points.services.rate_limiter import RateLimiter, RateLimitPolicy, default_policies


POLICIES = {
    LedgerReason.REWARDED_VIDEO: RateLimitPolicy(max_count=5, window=timedelta(hours=1)),
    LedgerReason.REFRESH_QUOTE: RateLimitPolicy(max_count=10, window=timedelta(minutes=1)),
}


def make_ledger(db, audit, clock):
    limiter = RateLimiter(db, POLICIES, audit=audit, clock=clock)
    return limiter, LedgerService(db, audit, rate_limiter=limiter, clock=clock)


@pytest.mark.asyncio
async def test_sixth_reward_in_an_hour_is_rejected_until_window_slides(db, audit, clock):
    _, ledger = make_ledger(db, audit, clock)
    start = clock()

    for i in range(5):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"reward_{i}")
        clock.advance(minutes=1)

    with pytest.raises(RateLimited) as excinfo:
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key="reward_5")
    # The oldest entry leaves the window one hour after it was written.
    assert excinfo.value.retry_after_seconds == 55 * 60
    assert await ledger.get_balance("user-1") == 25

    clock.now = start + timedelta(hours=1, seconds=1)
    result = await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key="reward_5")
    assert result.balance == 30


@pytest.mark.asyncio
async def test_window_is_sliding_not_bucketed(db, audit, clock):
    _, ledger = make_ledger(db, audit, clock)

    # A burst at the end of one clock hour...
    clock.now = clock.now.replace(minute=58)
    for i in range(5):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"reward_{i}")

    # ...still counts right after the hour boundary.
    clock.advance(minutes=4)
    with pytest.raises(RateLimited):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key="reward_5")


@pytest.mark.asyncio
async def test_rejected_attempts_do_not_consume_quota(db, audit, clock):
    limiter, ledger = make_ledger(db, audit, clock)
    for i in range(5):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"reward_{i}")

    for i in range(3):
        with pytest.raises(RateLimited):
            await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"extra_{i}")

    since = clock() - timedelta(hours=1)
    assert await db.count_ledger_entries("user-1", LedgerReason.REWARDED_VIDEO, since) == 5
    rejections = [e for e in db._audit if e.event_type is AuditEventType.REJECTION]
    assert len(rejections) == 3


@pytest.mark.asyncio
async def test_replay_is_answered_even_when_limit_is_reached(db, audit, clock):
    _, ledger = make_ledger(db, audit, clock)
    for i in range(5):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"reward_{i}")

    replay = await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key="reward_0")

    assert replay.replayed is True


@pytest.mark.asyncio
async def test_limits_are_per_user_and_per_reason(db, audit, clock):
    limiter, ledger = make_ledger(db, audit, clock)
    for i in range(5):
        await ledger.append("user-1", 5, LedgerReason.REWARDED_VIDEO, dedup_key=f"reward_{i}")

    assert not await limiter.allow(
        "user-1", LedgerReason.REWARDED_VIDEO, timedelta(hours=1), 5
    )
    assert await limiter.allow("user-2", LedgerReason.REWARDED_VIDEO, timedelta(hours=1), 5)
    # IAP purchases carry no policy.
    await limiter.check("user-1", LedgerReason.IAP_PURCHASE)


@pytest.mark.asyncio
async def test_enforce_audits_rejection(db, audit, clock):
    limiter, ledger = make_ledger(db, audit, clock)
    await ledger.append("user-1", 100, LedgerReason.IAP_PURCHASE, dedup_key="tx-1")
    for i in range(10):
        await ledger.append("user-1", -1, LedgerReason.REFRESH_QUOTE, dedup_key=f"r-{i}")

    with pytest.raises(RateLimited):
        await limiter.enforce("user-1", LedgerReason.REFRESH_QUOTE, correlation_id="req-1")

    rejection = [e for e in db._audit if e.event_type is AuditEventType.REJECTION][-1]
    assert rejection.correlation_id == "req-1"
    assert rejection.details["reason"] == "refresh_quote"


def test_default_policies_come_from_settings(settings):
    settings.REWARDED_VIDEO_MAX = 3
    policies = default_policies(settings)

    assert policies[LedgerReason.REWARDED_VIDEO].max_count == 3
    assert policies[LedgerReason.REWARDED_VIDEO].window == timedelta(hours=1)
    assert policies[LedgerReason.REFRESH_QUOTE] == RateLimitPolicy(10, timedelta(minutes=1))
