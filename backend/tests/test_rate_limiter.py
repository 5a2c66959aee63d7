"""
Rate limiter tests: per-tier limits, window replacement and Retry-After.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

from formtier.models.access import DenialReason
from formtier.models.tiers import Capability, Tier
from formtier.services.ephemeral_store import lru_store, ttl_store
from formtier.services.rate_limiter import RateLimiter

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def limiter():
    return RateLimiter(store=lru_store(), window_seconds=3600)


async def burn(limiter, n, tier=Tier.FREE, account="acct-1", capability=Capability.API_ACCESS, now=NOW):
    return [await limiter.check_rate_limit(account, capability, tier, now=now) for _ in range(n)]


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_free_tier_allows_ten_then_denies(self, limiter):
        results = await burn(limiter, 11)
        assert all(r.allowed for r in results[:10])
        assert results[9].remaining == 0
        denied = results[10]
        assert denied.allowed is False
        assert denied.reason == DenialReason.RATE_LIMITED
        assert denied.retry_after == 3600
        assert denied.reset_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_remaining_counts_down(self, limiter):
        results = await burn(limiter, 3, tier=Tier.PRO)
        assert [r.remaining for r in results] == [99, 98, 97]

    @pytest.mark.asyncio
    async def test_retry_after_shrinks_with_time(self, limiter):
        await burn(limiter, 10)
        later = NOW + timedelta(minutes=59, seconds=30)
        denied = await limiter.check_rate_limit("acct-1", Capability.API_ACCESS, Tier.FREE, now=later)
        assert denied.retry_after == 30

    @pytest.mark.asyncio
    async def test_retry_after_is_at_least_one_second(self, limiter):
        await burn(limiter, 10)
        almost = NOW + timedelta(seconds=3599, milliseconds=900)
        denied = await limiter.check_rate_limit("acct-1", Capability.API_ACCESS, Tier.FREE, now=almost)
        assert denied.retry_after == 1

    @pytest.mark.asyncio
    async def test_window_is_replaced_after_reset(self, limiter):
        await burn(limiter, 11)
        later = NOW + timedelta(hours=1)
        result = await limiter.check_rate_limit("acct-1", Capability.API_ACCESS, Tier.FREE, now=later)
        assert result.allowed is True
        assert result.remaining == 9
        assert result.reset_at == later + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_denied_calls_are_not_counted(self, limiter):
        await burn(limiter, 15)
        entry = limiter.store.get("acct-1:api_access")
        assert entry["count"] == 10

    @pytest.mark.asyncio
    async def test_enterprise_is_unlimited(self, limiter):
        results = await burn(limiter, 500, tier=Tier.ENTERPRISE)
        assert all(r.allowed for r in results)
        assert results[-1].limit is None
        assert len(limiter.store) == 0

    @pytest.mark.asyncio
    async def test_guest_and_unknown_tier_get_nothing(self, limiter):
        guest = await limiter.check_rate_limit(None, Capability.API_ACCESS, Tier.GUEST, now=NOW)
        unknown = await limiter.check_rate_limit("acct-1", Capability.API_ACCESS, "platinum", now=NOW)
        assert guest.allowed is False
        assert unknown.allowed is False
        assert unknown.limit == 0

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self, limiter):
        await burn(limiter, 10)
        other_capability = await limiter.check_rate_limit("acct-1", Capability.EXPORT_PDF, Tier.FREE, now=NOW)
        other_account = await limiter.check_rate_limit("acct-2", Capability.API_ACCESS, Tier.FREE, now=NOW)
        assert other_capability.allowed is True
        assert other_account.allowed is True

    @pytest.mark.asyncio
    async def test_concurrent_calls_never_exceed_limit(self, limiter):
        results = await asyncio.gather(*[
            limiter.check_rate_limit("acct-1", Capability.API_ACCESS, Tier.FREE, now=NOW)
            for _ in range(50)
        ])
        assert sum(1 for r in results if r.allowed) == 10

    @pytest.mark.asyncio
    async def test_reset_single_key_and_account(self, limiter):
        await burn(limiter, 10)
        await burn(limiter, 10, capability=Capability.EXPORT_PDF)
        limiter.reset("acct-1", Capability.API_ACCESS)
        assert limiter.store.get("acct-1:api_access") is None
        assert limiter.store.get("acct-1:export_pdf") is not None

        limiter.reset("acct-1")
        assert len(limiter.store) == 0

    @pytest.mark.asyncio
    async def test_default_store_expires_windows(self):
        limiter = RateLimiter(window_seconds=60)
        assert limiter.store._cache.ttl == 60
        assert (await limiter.check_rate_limit("acct-1", "api_access", "free", now=NOW)).allowed


class TestEphemeralStore:
    def test_update_and_prefix_delete(self):
        store = ttl_store(60, maxsize=10)
        store.update("a:x", lambda v: (v or 0) + 1)
        store.update("a:x", lambda v: (v or 0) + 1)
        store.set("a:y", 5)
        store.set("b:x", 1)
        assert store.get("a:x") == 2
        assert store.delete_prefix("a:") == 2
        assert sorted(store.keys()) == ["b:x"]

    def test_lru_evicts_on_size(self):
        store = lru_store(maxsize=2)
        store.set("a", 1)
        store.set("b", 2)
        store.set("c", 3)
        assert len(store) == 2
        assert store.get("a") is None
