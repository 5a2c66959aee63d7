"""FormTier Services"""

from .tier_catalog import TierCatalog, tier_catalog
from .entitlement_service import TierEntitlementEngine, entitlement_engine
from .usage_metering import UsageMeteringService, usage_metering_service
from .quota_enforcement import QuotaEnforcementService, quota_enforcement_service
from .rate_limiter import RateLimiter, rate_limiter
from .paywall_tracker import PaywallEscalationTracker, paywall_tracker
from .subscription_lifecycle import (
    SubscriptionLifecycleService,
    subscription_lifecycle_service,
    InvalidSubscriptionTransition,
    SubscriptionNotFound,
)
from .downgrade_policy import (
    DowngradeArchivalPolicy,
    downgrade_policy,
    DowngradeConfirmationRequired,
)
from .audit_service import AuditService, audit_service

__all__ = [
    "TierCatalog",
    "tier_catalog",
    "TierEntitlementEngine",
    "entitlement_engine",
    "UsageMeteringService",
    "usage_metering_service",
    "QuotaEnforcementService",
    "quota_enforcement_service",
    "RateLimiter",
    "rate_limiter",
    "PaywallEscalationTracker",
    "paywall_tracker",
    "SubscriptionLifecycleService",
    "subscription_lifecycle_service",
    "InvalidSubscriptionTransition",
    "SubscriptionNotFound",
    "DowngradeArchivalPolicy",
    "downgrade_policy",
    "DowngradeConfirmationRequired",
    "AuditService",
    "audit_service",
]
