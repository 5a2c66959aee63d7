"""Tier Entitlement Engine

Tier resolution and capability checks. ``tier_of`` is the one place where an
account's effective tier is computed from its identity and subscription;
every other service asks the engine rather than reading tiers itself.

Comparisons go through the catalog's ordinal table. Unknown tier values are
treated as insufficient and logged, never raised.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
import logging
import math

from database import database
from formtier import config
from formtier.models.access import (
    AccessCheckResult,
    AccountIdentity,
    BulkOperationCheck,
    DenialReason,
    FeatureUsage,
    TrialStatus,
    UpgradePath,
)
from formtier.models.subscriptions import Subscription
from formtier.models.tiers import Capability, CreatableResource, Tier
from formtier.services.ephemeral_store import EphemeralStore, lru_store
from formtier.services.tier_catalog import tier_catalog, TierCatalog
from formtier.utils.periods import as_utc

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class TierEntitlementEngine:
    """Resolves effective tiers and answers "may this tier use X"."""

    def __init__(
        self,
        db=None,
        catalog: Optional[TierCatalog] = None,
        usage_store: Optional[EphemeralStore] = None,
    ):
        self.db = db
        self.catalog = catalog or tier_catalog
        self.usage_store = usage_store if usage_store is not None else lru_store()

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    # ------------------------------------------------------------------
    # Tier resolution
    # ------------------------------------------------------------------

    def tier_of(
        self,
        identity: Optional[AccountIdentity],
        subscription: Optional[Subscription] = None,
        now: Optional[datetime] = None,
    ) -> Tier:
        """Effective tier for a caller.

        - No identity or no account id: GUEST.
        - Nominal tier: the subscription's tier if one exists, else the
          identity's tier claim, else FREE. Unrecognised values fall to FREE.
        - A paid nominal tier only counts while the subscription grants paid
          access (active, grace period, or cancelled inside the paid period).
          Otherwise the account is FREE.
        """
        if identity is None or not identity.account_id:
            return Tier.GUEST

        now = now or datetime.now(timezone.utc)

        raw_tier = subscription.tier if subscription is not None else identity.tier_claim
        if raw_tier is None:
            return Tier.FREE

        nominal = self.catalog.parse_tier(raw_tier)
        if nominal is None:
            logger.error(
                f"Unknown tier '{raw_tier}' for account {identity.account_id}; treating as FREE"
            )
            return Tier.FREE

        if nominal == Tier.GUEST:
            # An authenticated account is never below FREE
            return Tier.FREE

        if not self.catalog.is_paid(nominal):
            return nominal

        if subscription is None:
            # Paid claim without a subscription row to back it
            logger.warning(
                f"Account {identity.account_id} claims {nominal.value} without a subscription; treating as FREE"
            )
            return Tier.FREE

        if subscription.grants_paid_access(now):
            return nominal

        return Tier.FREE

    async def get_subscription(self, account_id: str) -> Optional[Subscription]:
        db = self._get_db()
        doc = await db.subscriptions.find_one({"account_id": account_id}, {"_id": 0})
        if not doc:
            return None
        return Subscription(**doc)

    async def resolve_account_tier(
        self,
        account_id: Optional[str],
        tier_claim: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tier:
        """Load the account's subscription and resolve its effective tier."""
        if not account_id:
            return Tier.GUEST
        subscription = await self.get_subscription(account_id)
        identity = AccountIdentity(account_id=account_id, tier_claim=tier_claim)
        return self.tier_of(identity, subscription, now)

    # ------------------------------------------------------------------
    # Comparisons and checks
    # ------------------------------------------------------------------

    def is_tier_sufficient(self, have: Union[Tier, str, None], need: Union[Tier, str, None]) -> bool:
        have_ordinal = self.catalog.ordinal(have)
        need_ordinal = self.catalog.ordinal(need)
        if have_ordinal is None or need_ordinal is None:
            logger.warning(f"Tier comparison with unknown value: have={have!r} need={need!r}")
            return False
        return have_ordinal >= need_ordinal

    def upgrade_path(self, required: Tier, capability: Union[Capability, str, None] = None) -> UpgradePath:
        benefits = self.catalog.benefits(capability) if capability is not None else []
        return UpgradePath(
            target_tier=required.value,
            cta_text=f"Upgrade to {self.catalog.tier_name(required)}",
            benefits=benefits,
            path=f"/billing?upgrade_to={required.value}",
        )

    def can_access(self, have: Union[Tier, str, None], capability: Union[Capability, str]) -> AccessCheckResult:
        """Check whether a tier unlocks a capability."""
        cap_value = str(getattr(capability, "value", capability))
        have_value = str(getattr(have, "value", have))
        required = self.catalog.minimum_tier_for(capability)

        if self.catalog.parse_tier(have) is None:
            logger.error(f"Capability check for '{cap_value}' with unknown tier {have!r}")
            return AccessCheckResult(
                allowed=False,
                capability=cap_value,
                tier=have_value,
                reason=DenialReason.UNKNOWN_TIER,
                message="Unknown subscription tier",
                required_tier=required.value,
                upgrade_path=self.upgrade_path(required, capability),
            )

        if self.is_tier_sufficient(have, required):
            return AccessCheckResult(allowed=True, capability=cap_value, tier=have_value)

        return AccessCheckResult(
            allowed=False,
            capability=cap_value,
            tier=have_value,
            reason=DenialReason.TIER_INSUFFICIENT,
            message=f"{self.catalog.tier_name(required)} subscription required",
            required_tier=required.value,
            upgrade_path=self.upgrade_path(required, capability),
        )

    def can_create(self, have: Union[Tier, str, None], resource: Union[CreatableResource, str]) -> AccessCheckResult:
        """Check whether a tier may create a resource type (form, template, ...)."""
        resource_value = str(getattr(resource, "value", resource))
        required = self.catalog.minimum_tier_to_create(resource)
        if self.is_tier_sufficient(have, required):
            return AccessCheckResult(
                allowed=True, capability=f"create:{resource_value}", tier=str(getattr(have, "value", have))
            )
        return AccessCheckResult(
            allowed=False,
            capability=f"create:{resource_value}",
            tier=str(getattr(have, "value", have)),
            reason=DenialReason.TIER_INSUFFICIENT,
            message=f"Creating {resource_value} requires {self.catalog.tier_name(required)}",
            required_tier=required.value,
            upgrade_path=self.upgrade_path(required),
        )

    def can_perform_bulk_operation(
        self, tier: Union[Tier, str, None], operation: str, item_count: int
    ) -> BulkOperationCheck:
        if not self.catalog.bulk_allowed(tier):
            return BulkOperationCheck(
                allowed=False,
                operation=operation,
                item_count=item_count,
                reason=DenialReason.TIER_INSUFFICIENT,
                message="Bulk operations require Pro subscription",
                required_tier=Tier.PRO.value,
            )

        max_items = self.catalog.bulk_max_items(tier)
        if max_items is not None and item_count > max_items:
            return BulkOperationCheck(
                allowed=False,
                operation=operation,
                item_count=item_count,
                max_items=max_items,
                reason=DenialReason.BULK_LIMIT_EXCEEDED,
                message=f"Maximum {max_items} items for bulk {operation}",
                required_tier=Tier.ENTERPRISE.value,
            )

        return BulkOperationCheck(
            allowed=True, operation=operation, item_count=item_count, max_items=max_items
        )

    async def enforce_capability(
        self,
        account_id: Optional[str],
        capability: Union[Capability, str],
        tier_claim: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AccessCheckResult:
        """Resolve the account's tier and check a capability against it."""
        tier = await self.resolve_account_tier(account_id, tier_claim=tier_claim, now=now)
        result = self.can_access(tier, capability)
        if not result.allowed:
            logger.info(
                f"Capability denied: account={account_id} capability={result.capability} "
                f"tier={tier.value} required={result.required_tier}"
            )
        return result

    def get_entitlement_matrix(self) -> Dict[str, Any]:
        return self.catalog.get_catalog_matrix()

    # ------------------------------------------------------------------
    # Trials and early access
    # ------------------------------------------------------------------

    def get_trial_status(self, identity: Optional[AccountIdentity], now: Optional[datetime] = None) -> TrialStatus:
        """Trial window as recorded by the identity layer.

        Reporting only: a running trial does not change ``tier_of``.
        """
        if identity is None or identity.trial_ends_at is None:
            return TrialStatus(is_in_trial=False)

        now = now or datetime.now(timezone.utc)
        ends_at = as_utc(identity.trial_ends_at)
        if ends_at < now:
            return TrialStatus(is_in_trial=False, expired=True, ends_at=ends_at)

        return TrialStatus(
            is_in_trial=True,
            days_remaining=math.ceil((ends_at - now).total_seconds() / SECONDS_PER_DAY),
            ends_at=ends_at,
            capabilities=[cap.value for cap in self.catalog.capabilities_for_tier(Tier.PRO)],
        )

    def is_eligible_for_trial(
        self,
        identity: Optional[AccountIdentity],
        subscription: Optional[Subscription] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """One trial per account, for new accounts that are not already paying."""
        if identity is None or not identity.account_id:
            return False
        if identity.trial_ends_at is not None:
            return False

        now = now or datetime.now(timezone.utc)
        if self.catalog.is_paid(identity.tier_claim) or self.catalog.is_paid(
            self.tier_of(identity, subscription, now)
        ):
            return False

        # Accounts without a recorded creation time count as new
        created_at = as_utc(identity.created_at) if identity.created_at else now
        return created_at > now - timedelta(days=config.TRIAL_ELIGIBILITY_WINDOW_DAYS)

    def has_feature_flag(self, identity: Optional[AccountIdentity], flag: str) -> bool:
        if identity is None:
            return False
        return flag in identity.feature_flags

    def can_access_beta_feature(
        self,
        identity: Optional[AccountIdentity],
        capability: Union[Capability, str],
        subscription: Optional[Subscription] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Beta capabilities: always for ENTERPRISE, for PRO with the early access flag."""
        tier = self.tier_of(identity, subscription, now)
        if tier == Tier.ENTERPRISE:
            return True
        if tier == Tier.PRO and self.has_feature_flag(identity, config.EARLY_ACCESS_FLAG):
            return True

        logger.debug(
            f"Beta capability '{getattr(capability, 'value', capability)}' denied for "
            f"{identity.account_id if identity else None} on {tier.value}"
        )
        return False

    # ------------------------------------------------------------------
    # Feature usage
    # ------------------------------------------------------------------

    async def track_usage(
        self,
        account_id: Optional[str],
        capability: Union[Capability, str],
        now: Optional[datetime] = None,
    ) -> Optional[FeatureUsage]:
        """Count one use of a capability. Anonymous callers are not tracked."""
        if not account_id:
            return None

        now = now or datetime.now(timezone.utc)
        cap_value = str(getattr(capability, "value", capability))

        def record(stats):
            stats = dict(stats or {})
            previous = stats.get(cap_value)
            stats[cap_value] = FeatureUsage(
                count=(previous.count if previous else 0) + 1,
                first_used=previous.first_used if previous else now,
                last_used=now,
            )
            return stats

        return self.usage_store.update(f"usage:{account_id}", record)[cap_value]

    async def get_usage_stats(self, account_id: Optional[str]) -> Dict[str, FeatureUsage]:
        """Per-capability usage recorded in this process, keyed by capability value."""
        if not account_id:
            return {}
        return dict(self.usage_store.get(f"usage:{account_id}") or {})


# Singleton instance
entitlement_engine = TierEntitlementEngine()
