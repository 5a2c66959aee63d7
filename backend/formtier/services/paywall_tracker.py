"""Paywall escalation tracking.

Counts how often an account has hit the paywall for a capability. The first
views are soft (dismissible); from PAYWALL_HARD_AFTER_VIEWS prior views on
the paywall is hard. Counts are process-local and reset only when cleared,
e.g. after an upgrade.
"""
from datetime import datetime
from typing import Optional, Union
import logging

from formtier import config
from formtier.models.access import AccessCheckResult, PaywallInfo, PaywallVariant
from formtier.models.tiers import Capability
from formtier.services.entitlement_service import entitlement_engine, TierEntitlementEngine
from formtier.services.ephemeral_store import EphemeralStore, lru_store

logger = logging.getLogger(__name__)


class PaywallEscalationTracker:
    def __init__(
        self,
        store: Optional[EphemeralStore] = None,
        entitlements: Optional[TierEntitlementEngine] = None,
        hard_after_views: Optional[int] = None,
    ):
        self.store = store if store is not None else lru_store()
        self.entitlements = entitlements or entitlement_engine
        self.hard_after_views = hard_after_views or config.PAYWALL_HARD_AFTER_VIEWS

    @staticmethod
    def _key(account_id: Optional[str], capability: Union[Capability, str]) -> str:
        return f"{account_id or 'guest'}:{getattr(capability, 'value', capability)}"

    def get_view_count(self, account_id: Optional[str], capability: Union[Capability, str]) -> int:
        return self.store.get(self._key(account_id, capability), 0)

    def record_view(self, account_id: Optional[str], capability: Union[Capability, str]) -> int:
        return self.store.update(self._key(account_id, capability), lambda views: (views or 0) + 1)

    def clear(self, account_id: Optional[str], capability: Union[Capability, str, None] = None) -> None:
        if capability is None:
            self.store.delete_prefix(f"{account_id or 'guest'}:")
        else:
            self.store.delete(self._key(account_id, capability))

    async def should_show_paywall(
        self,
        account_id: Optional[str],
        capability: Union[Capability, str],
        tier_claim: Optional[str] = None,
        now: Optional[datetime] = None,
        record: bool = True,
    ) -> PaywallInfo:
        """Decide whether, and how hard, to show the paywall for a capability.

        The variant is based on views before this one. When ``record`` is
        set, showing the paywall counts as a view.
        """
        tier = await self.entitlements.resolve_account_tier(account_id, tier_claim=tier_claim, now=now)
        access = self.entitlements.can_access(tier, capability)
        return self.build_paywall(account_id, capability, access, record=record)

    def build_paywall(
        self,
        account_id: Optional[str],
        capability: Union[Capability, str],
        access: AccessCheckResult,
        record: bool = True,
    ) -> PaywallInfo:
        """Paywall for an access decision the caller already made."""
        cap_value = str(getattr(capability, "value", capability))
        if access.allowed:
            return PaywallInfo(show=False, variant=PaywallVariant.NONE, capability=cap_value, dismissible=True)

        prior_views = self.get_view_count(account_id, capability)
        variant = PaywallVariant.HARD if prior_views >= self.hard_after_views else PaywallVariant.SOFT
        if record:
            self.record_view(account_id, capability)

        catalog = self.entitlements.catalog
        upgrade = access.upgrade_path
        return PaywallInfo(
            show=True,
            variant=variant,
            capability=cap_value,
            message=catalog.paywall_message(capability),
            dismissible=variant == PaywallVariant.SOFT,
            cta_text=upgrade.cta_text if upgrade else None,
            benefits=catalog.benefits(capability),
            required_tier=access.required_tier,
            view_count=prior_views,
        )


paywall_tracker = PaywallEscalationTracker()
