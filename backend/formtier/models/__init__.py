"""FormTier Data Models"""

from .tiers import (
    Tier,
    Capability,
    QuotaDimension,
    ResetCadence,
    CreatableResource,
)
from .access import (
    AccountIdentity,
    AccessCheckResult,
    BulkOperationCheck,
    DenialReason,
    PaywallInfo,
    PaywallVariant,
    RateLimitResult,
    UpgradePath,
)
from .usage import (
    UsageCounters,
    LimitCheckResult,
    QuotaDimensionStatus,
    QuotaStatus,
    QuotaDecision,
)
from .subscriptions import (
    Subscription,
    SubscriptionStatus,
    BillingCycle,
    PaymentEvent,
    PaymentEventType,
)
from .downgrade import (
    ArchiveCandidate,
    DowngradeCheck,
    ArchiveResult,
    RestoreResult,
)
from .audit import AuditLog, AuditAction, AuditSeverity

__all__ = [
    # Tiers
    "Tier",
    "Capability",
    "QuotaDimension",
    "ResetCadence",
    "CreatableResource",
    # Access
    "AccountIdentity",
    "AccessCheckResult",
    "BulkOperationCheck",
    "DenialReason",
    "PaywallInfo",
    "PaywallVariant",
    "RateLimitResult",
    "UpgradePath",
    # Usage
    "UsageCounters",
    "LimitCheckResult",
    "QuotaDimensionStatus",
    "QuotaStatus",
    "QuotaDecision",
    # Subscriptions
    "Subscription",
    "SubscriptionStatus",
    "BillingCycle",
    "PaymentEvent",
    "PaymentEventType",
    # Downgrade
    "ArchiveCandidate",
    "DowngradeCheck",
    "ArchiveResult",
    "RestoreResult",
    # Audit
    "AuditLog",
    "AuditAction",
    "AuditSeverity",
]
