"""
Paywall escalation tests: soft paywall for the first views, hard after that.
"""
import pytest
from unittest.mock import AsyncMock

from formtier.models.access import PaywallVariant
from formtier.models.tiers import Capability, Tier
from formtier.services.entitlement_service import TierEntitlementEngine
from formtier.services.ephemeral_store import lru_store
from formtier.services.paywall_tracker import PaywallEscalationTracker


@pytest.fixture
def engine(fake_db):
    return TierEntitlementEngine(db=fake_db)


@pytest.fixture
def tracker(engine):
    return PaywallEscalationTracker(store=lru_store(), entitlements=engine)


class TestPaywallEscalation:
    @pytest.mark.asyncio
    async def test_first_three_views_are_soft_then_hard(self, tracker):
        variants = [
            (await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF)).variant
            for _ in range(5)
        ]
        assert variants == [
            PaywallVariant.SOFT, PaywallVariant.SOFT, PaywallVariant.SOFT,
            PaywallVariant.HARD, PaywallVariant.HARD,
        ]
        assert tracker.get_view_count("acct-1", Capability.EXPORT_PDF) == 5

    @pytest.mark.asyncio
    async def test_soft_paywall_content(self, tracker):
        info = await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF)
        assert info.show is True
        assert info.dismissible is True
        assert info.required_tier == "pro"
        assert info.cta_text == "Upgrade to Pro"
        assert info.message
        assert info.benefits
        assert info.view_count == 0

    @pytest.mark.asyncio
    async def test_hard_paywall_is_not_dismissible(self, tracker):
        for _ in range(3):
            tracker.record_view("acct-1", Capability.EXPORT_PDF)
        info = await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF)
        assert info.variant == PaywallVariant.HARD
        assert info.dismissible is False

    @pytest.mark.asyncio
    async def test_allowed_capability_shows_nothing_and_records_nothing(self, tracker):
        info = await tracker.should_show_paywall("acct-1", Capability.FORM_CREATION)
        assert info.show is False
        assert info.variant == PaywallVariant.NONE
        assert tracker.get_view_count("acct-1", Capability.FORM_CREATION) == 0

    @pytest.mark.asyncio
    async def test_peek_without_recording(self, tracker):
        await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF, record=False)
        assert tracker.get_view_count("acct-1", Capability.EXPORT_PDF) == 0

    @pytest.mark.asyncio
    async def test_tier_comes_from_subscription_not_claim(self, engine, tracker):
        engine.resolve_account_tier = AsyncMock(return_value=Tier.PRO)
        info = await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF, tier_claim="free")
        assert info.show is False

    @pytest.mark.asyncio
    async def test_counts_are_per_capability_and_clearable(self, tracker):
        for _ in range(3):
            await tracker.should_show_paywall("acct-1", Capability.EXPORT_PDF)
        await tracker.should_show_paywall("acct-1", Capability.AI_EXTRACTION)

        assert tracker.get_view_count("acct-1", Capability.AI_EXTRACTION) == 1
        tracker.clear("acct-1", Capability.EXPORT_PDF)
        assert tracker.get_view_count("acct-1", Capability.EXPORT_PDF) == 0
        assert tracker.get_view_count("acct-1", Capability.AI_EXTRACTION) == 1

        tracker.clear("acct-1")
        assert tracker.get_view_count("acct-1", Capability.AI_EXTRACTION) == 0
