"""
Tier entitlement engine tests.
Covers the central tier resolution (identity + subscription + time), ordinal
comparisons, capability checks with upgrade paths, creation and bulk gates.
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, AsyncMock, patch

from formtier.models.access import AccountIdentity, DenialReason
from formtier.models.subscriptions import Subscription, SubscriptionStatus
from formtier.models.tiers import Capability, CreatableResource, Tier
from formtier.services.entitlement_service import TierEntitlementEngine
from formtier.services.ephemeral_store import lru_store

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
ALL_TIERS = [Tier.GUEST, Tier.FREE, Tier.PRO, Tier.ENTERPRISE]


def make_subscription(tier="pro", status=SubscriptionStatus.ACTIVE, period_end=None):
    return Subscription(
        account_id="acct-1",
        tier=tier,
        status=status,
        current_period_start=NOW - timedelta(days=10),
        current_period_end=period_end or NOW + timedelta(days=20),
    )


@pytest.fixture
def engine():
    return TierEntitlementEngine(db=MagicMock())


class TestIsTierSufficient:
    def test_reflexive(self, engine):
        for tier in ALL_TIERS:
            assert engine.is_tier_sufficient(tier, tier) is True

    def test_ordering(self, engine):
        assert engine.is_tier_sufficient(Tier.ENTERPRISE, Tier.PRO) is True
        assert engine.is_tier_sufficient(Tier.FREE, Tier.PRO) is False
        assert engine.is_tier_sufficient(Tier.GUEST, Tier.FREE) is False

    def test_accepts_raw_strings(self, engine):
        assert engine.is_tier_sufficient("pro", "free") is True

    def test_unknown_tier_is_insufficient_either_side(self, engine):
        """Unknown values never raise and never grant access."""
        assert engine.is_tier_sufficient("platinum", Tier.FREE) is False
        assert engine.is_tier_sufficient(Tier.ENTERPRISE, "platinum") is False
        assert engine.is_tier_sufficient(None, Tier.GUEST) is False

    def test_monotonic_over_catalog(self, engine):
        """If a capability is allowed at tier T, it is allowed at every tier above T."""
        for capability in Capability:
            allowed = [engine.can_access(t, capability).allowed for t in ALL_TIERS]
            first = allowed.index(True) if True in allowed else len(allowed)
            assert all(allowed[first:]), capability


class TestTierOf:
    def test_no_identity_is_guest(self, engine):
        assert engine.tier_of(None) == Tier.GUEST
        assert engine.tier_of(AccountIdentity()) == Tier.GUEST

    def test_no_subscription_defaults_to_free(self, engine):
        assert engine.tier_of(AccountIdentity(account_id="acct-1"), None, NOW) == Tier.FREE

    def test_paid_claim_without_subscription_is_free(self, engine):
        identity = AccountIdentity(account_id="acct-1", tier_claim="pro")
        assert engine.tier_of(identity, None, NOW) == Tier.FREE

    def test_unknown_claim_fails_closed_to_free(self, engine):
        identity = AccountIdentity(account_id="acct-1", tier_claim="platinum")
        assert engine.tier_of(identity, None, NOW) == Tier.FREE

    def test_active_subscription_grants_tier(self, engine):
        identity = AccountIdentity(account_id="acct-1", tier_claim="free")
        assert engine.tier_of(identity, make_subscription("pro"), NOW) == Tier.PRO

    def test_grace_period_keeps_paid_tier(self, engine):
        sub = make_subscription("enterprise", SubscriptionStatus.GRACE_PERIOD)
        assert engine.tier_of(AccountIdentity(account_id="acct-1"), sub, NOW) == Tier.ENTERPRISE

    def test_suspended_falls_back_to_free(self, engine):
        sub = make_subscription("pro", SubscriptionStatus.SUSPENDED)
        assert engine.tier_of(AccountIdentity(account_id="acct-1"), sub, NOW) == Tier.FREE

    def test_pending_deletion_falls_back_to_free(self, engine):
        sub = make_subscription("pro", SubscriptionStatus.PENDING_DELETION)
        assert engine.tier_of(AccountIdentity(account_id="acct-1"), sub, NOW) == Tier.FREE

    def test_cancelled_keeps_access_until_period_end(self, engine):
        sub = make_subscription("pro", SubscriptionStatus.CANCELLED, period_end=NOW + timedelta(days=1))
        identity = AccountIdentity(account_id="acct-1")
        assert engine.tier_of(identity, sub, NOW) == Tier.PRO
        assert engine.tier_of(identity, sub, NOW + timedelta(days=1)) == Tier.FREE

    def test_unknown_subscription_tier_is_free(self, engine):
        sub = make_subscription("platinum")
        assert engine.tier_of(AccountIdentity(account_id="acct-1"), sub, NOW) == Tier.FREE


class TestCanAccess:
    def test_free_capability_for_free(self, engine):
        result = engine.can_access(Tier.FREE, Capability.BASIC_EDITOR)
        assert result.allowed is True
        assert result.reason is None

    def test_pro_capability_denied_for_free_with_upgrade_path(self, engine):
        result = engine.can_access(Tier.FREE, Capability.AI_EXTRACTION)
        assert result.allowed is False
        assert result.reason == DenialReason.TIER_INSUFFICIENT
        assert result.required_tier == "pro"
        assert result.message == "Pro subscription required"
        assert result.upgrade_path.target_tier == "pro"
        assert result.upgrade_path.cta_text == "Upgrade to Pro"
        assert "Hebrew/RTL text support" in result.upgrade_path.benefits

    def test_enterprise_capability_default_benefits(self, engine):
        result = engine.can_access(Tier.PRO, Capability.SSO_INTEGRATION)
        assert result.allowed is False
        assert result.required_tier == "enterprise"
        assert result.upgrade_path.benefits == ["Unlock premium features"]

    def test_unknown_capability_requires_free(self, engine):
        assert engine.can_access(Tier.FREE, "new_shiny_thing").allowed is True
        assert engine.can_access(Tier.GUEST, "new_shiny_thing").allowed is False

    def test_unknown_tier_denied(self, engine):
        result = engine.can_access("platinum", Capability.BASIC_EDITOR)
        assert result.allowed is False
        assert result.reason == DenialReason.UNKNOWN_TIER


class TestCreateAndBulk:
    def test_can_create(self, engine):
        assert engine.can_create(Tier.FREE, CreatableResource.FORM).allowed is True
        denied = engine.can_create(Tier.FREE, "template")
        assert denied.allowed is False
        assert denied.message == "Creating template requires Pro"
        assert engine.can_create(Tier.PRO, "team").required_tier == "enterprise"
        assert engine.can_create(Tier.FREE, "something_else").allowed is True

    def test_bulk_requires_pro(self, engine):
        result = engine.can_perform_bulk_operation(Tier.FREE, "delete", 5)
        assert result.allowed is False
        assert result.message == "Bulk operations require Pro subscription"

    def test_bulk_pro_capped_at_100(self, engine):
        assert engine.can_perform_bulk_operation(Tier.PRO, "export", 100).allowed is True
        over = engine.can_perform_bulk_operation(Tier.PRO, "export", 101)
        assert over.allowed is False
        assert over.max_items == 100
        assert over.reason == DenialReason.BULK_LIMIT_EXCEEDED

    def test_bulk_enterprise_unlimited(self, engine):
        assert engine.can_perform_bulk_operation(Tier.ENTERPRISE, "export", 10_000).allowed is True


class TestResolveAccountTier:
    @pytest.mark.asyncio
    async def test_resolves_from_subscription_row(self):
        db = MagicMock()
        db.subscriptions.find_one = AsyncMock(return_value=make_subscription("pro").model_dump())
        engine = TierEntitlementEngine()
        with patch("formtier.services.entitlement_service.database.get_db", return_value=db):
            tier = await engine.resolve_account_tier("acct-1", now=NOW)
        assert tier == Tier.PRO
        db.subscriptions.find_one.assert_awaited_once_with({"account_id": "acct-1"}, {"_id": 0})

    @pytest.mark.asyncio
    async def test_missing_account_id_is_guest(self, engine):
        assert await engine.resolve_account_tier(None) == Tier.GUEST

    @pytest.mark.asyncio
    async def test_enforce_capability_denies_suspended_pro(self):
        db = MagicMock()
        db.subscriptions.find_one = AsyncMock(
            return_value=make_subscription("pro", SubscriptionStatus.SUSPENDED).model_dump()
        )
        engine = TierEntitlementEngine(db=db)
        result = await engine.enforce_capability("acct-1", Capability.EXPORT_PDF, now=NOW)
        assert result.allowed is False
        assert result.tier == "free"
        assert result.required_tier == "pro"

    def test_entitlement_matrix_delegates_to_catalog(self, engine):
        matrix = engine.get_entitlement_matrix()
        assert {"tiers", "capabilities"} <= set(matrix)


def identity(**fields):
    fields.setdefault("account_id", "acct-1")
    return AccountIdentity(**fields)


class TestTrials:
    def test_no_trial_recorded(self, engine):
        status = engine.get_trial_status(identity(), now=NOW)
        assert status.is_in_trial is False
        assert status.expired is False

    def test_running_trial_rounds_days_up(self, engine):
        status = engine.get_trial_status(
            identity(trial_ends_at=NOW + timedelta(days=6, hours=1)), now=NOW
        )
        assert status.is_in_trial is True
        assert status.days_remaining == 7
        assert status.ends_at == NOW + timedelta(days=6, hours=1)
        assert Capability.EXPORT_PDF.value in status.capabilities
        assert Capability.TEAM_COLLABORATION.value not in status.capabilities

    def test_expired_trial(self, engine):
        status = engine.get_trial_status(identity(trial_ends_at=NOW - timedelta(days=1)), now=NOW)
        assert status.is_in_trial is False
        assert status.expired is True
        assert status.days_remaining is None

    def test_naive_trial_end_read_as_utc(self, engine):
        status = engine.get_trial_status(identity(trial_ends_at=datetime(2026, 10, 21, 12, 0)), now=NOW)
        assert status.days_remaining == 2

    def test_trial_does_not_change_tier(self, engine):
        caller = identity(trial_ends_at=NOW + timedelta(days=5))
        assert engine.tier_of(caller, None, NOW) == Tier.FREE

    def test_new_free_account_is_eligible(self, engine):
        assert engine.is_eligible_for_trial(identity(created_at=NOW - timedelta(days=3)), now=NOW) is True

    def test_missing_created_at_counts_as_new(self, engine):
        assert engine.is_eligible_for_trial(identity(), now=NOW) is True

    def test_old_account_not_eligible(self, engine):
        assert engine.is_eligible_for_trial(identity(created_at=NOW - timedelta(days=31)), now=NOW) is False

    def test_second_trial_not_allowed(self, engine):
        caller = identity(trial_ends_at=NOW - timedelta(days=40), created_at=NOW - timedelta(days=2))
        assert engine.is_eligible_for_trial(caller, now=NOW) is False

    @pytest.mark.parametrize("claim", ["pro", "enterprise"])
    def test_paid_claim_not_eligible(self, engine, claim):
        assert engine.is_eligible_for_trial(identity(tier_claim=claim), now=NOW) is False

    def test_paying_subscriber_not_eligible(self, engine):
        assert engine.is_eligible_for_trial(identity(), make_subscription("pro"), now=NOW) is False

    def test_anonymous_not_eligible(self, engine):
        assert engine.is_eligible_for_trial(None, now=NOW) is False
        assert engine.is_eligible_for_trial(AccountIdentity(), now=NOW) is False


class TestFeatureFlags:
    def test_has_feature_flag(self, engine):
        caller = identity(feature_flags=["early_access", "new_editor"])
        assert engine.has_feature_flag(caller, "new_editor") is True
        assert engine.has_feature_flag(caller, "dark_launch") is False
        assert engine.has_feature_flag(None, "early_access") is False

    def test_enterprise_always_gets_beta(self, engine):
        sub = make_subscription("enterprise")
        assert engine.can_access_beta_feature(identity(), Capability.EXPERIMENTAL_AI, sub, now=NOW) is True

    def test_pro_needs_early_access_flag(self, engine):
        sub = make_subscription("pro")
        assert engine.can_access_beta_feature(identity(), Capability.EXPERIMENTAL_AI, sub, now=NOW) is False
        flagged = identity(feature_flags=["early_access"])
        assert engine.can_access_beta_feature(flagged, Capability.EXPERIMENTAL_AI, sub, now=NOW) is True

    def test_free_with_flag_still_denied(self, engine):
        flagged = identity(feature_flags=["early_access"])
        assert engine.can_access_beta_feature(flagged, Capability.EXPERIMENTAL_AI, None, now=NOW) is False

    def test_suspended_pro_loses_beta(self, engine):
        sub = make_subscription("pro", SubscriptionStatus.SUSPENDED)
        flagged = identity(feature_flags=["early_access"])
        assert engine.can_access_beta_feature(flagged, Capability.EXPERIMENTAL_AI, sub, now=NOW) is False


class TestFeatureUsage:
    @pytest.mark.asyncio
    async def test_track_counts_and_timestamps(self):
        engine = TierEntitlementEngine(db=MagicMock(), usage_store=lru_store())
        await engine.track_usage("acct-1", Capability.EXPORT_PDF, now=NOW)
        usage = await engine.track_usage("acct-1", Capability.EXPORT_PDF, now=NOW + timedelta(hours=2))

        assert usage.count == 2
        assert usage.first_used == NOW
        assert usage.last_used == NOW + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_stats_are_per_account_and_capability(self):
        engine = TierEntitlementEngine(db=MagicMock(), usage_store=lru_store())
        await engine.track_usage("acct-1", Capability.EXPORT_PDF, now=NOW)
        await engine.track_usage("acct-1", "ai_extraction", now=NOW)
        await engine.track_usage("acct-2", Capability.EXPORT_PDF, now=NOW)

        stats = await engine.get_usage_stats("acct-1")
        assert set(stats) == {"export_pdf", "ai_extraction"}
        assert stats["export_pdf"].count == 1
        assert await engine.get_usage_stats("nobody") == {}

    @pytest.mark.asyncio
    async def test_anonymous_usage_not_tracked(self):
        store = lru_store()
        engine = TierEntitlementEngine(db=MagicMock(), usage_store=store)
        assert await engine.track_usage(None, Capability.EXPORT_PDF, now=NOW) is None
        assert await engine.get_usage_stats(None) == {}
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_returned_stats_do_not_alias_store(self):
        engine = TierEntitlementEngine(db=MagicMock(), usage_store=lru_store())
        await engine.track_usage("acct-1", Capability.EXPORT_PDF, now=NOW)
        stats = await engine.get_usage_stats("acct-1")
        stats.clear()
        assert (await engine.get_usage_stats("acct-1"))["export_pdf"].count == 1
