"""Tier Catalog - Single Source of Truth for tiers, capabilities and quota ceilings.

This is the AUTHORITATIVE source for:
- Tier ordering (ordinal table)
- Capability -> minimum tier
- (Tier, quota dimension) -> ceiling
- Reset cadence per quota dimension
- Per-tier rate limits
- Capability metadata (paywall copy, upgrade benefits)

RULES:
1. Tiers are compared through TIER_ORDINALS only
2. Each tier is a strict superset of every lower tier (capabilities and ceilings)
3. A capability missing from the catalog requires FREE
4. None means unlimited

Tier Structure:
- GUEST: unauthenticated, nothing metered is allowed
- FREE: 10 forms, 20 fields per form, 100 submissions/month, 50 MB
- PRO: unlimited forms and submissions, 5 GB storage, 1000 API calls/hour
- ENTERPRISE: unlimited everything
"""
from typing import Dict, List, Optional, Any, Union
import logging

from formtier.models.tiers import (
    Tier,
    Capability,
    QuotaDimension,
    ResetCadence,
    CreatableResource,
)

logger = logging.getLogger(__name__)

UNLIMITED = None

BYTES_PER_MB = 1024 * 1024


# ============================================================================
# TIER ORDER
# ============================================================================
TIER_ORDINALS: Dict[Tier, int] = {
    Tier.GUEST: 0,
    Tier.FREE: 1,
    Tier.PRO: 2,
    Tier.ENTERPRISE: 3,
}

PAID_TIERS = frozenset({Tier.PRO, Tier.ENTERPRISE})

TIER_DISPLAY_NAMES: Dict[Tier, str] = {
    Tier.GUEST: "Guest",
    Tier.FREE: "Free",
    Tier.PRO: "Pro",
    Tier.ENTERPRISE: "Enterprise",
}


# ============================================================================
# CAPABILITY -> MINIMUM TIER
# ============================================================================
CAPABILITY_MIN_TIER: Dict[Capability, Tier] = {
    Capability.BASIC_EDITOR: Tier.FREE,
    Capability.FORM_CREATION: Tier.FREE,
    Capability.PDF_VIEWING: Tier.FREE,

    Capability.ADVANCED_WORKFLOW: Tier.PRO,
    Capability.AI_EXTRACTION: Tier.PRO,
    Capability.MULTI_SELECT: Tier.PRO,
    Capability.EXPORT_PDF: Tier.PRO,
    Capability.CUSTOM_TEMPLATES: Tier.PRO,
    Capability.PRIORITY_SUPPORT: Tier.PRO,
    Capability.EXPERIMENTAL_AI: Tier.PRO,

    Capability.TEAM_COLLABORATION: Tier.ENTERPRISE,
    Capability.CUSTOM_BRANDING: Tier.ENTERPRISE,
    Capability.API_ACCESS: Tier.ENTERPRISE,
    Capability.SSO_INTEGRATION: Tier.ENTERPRISE,
}

CREATE_MIN_TIER: Dict[CreatableResource, Tier] = {
    CreatableResource.FORM: Tier.FREE,
    CreatableResource.TEMPLATE: Tier.PRO,
    CreatableResource.WORKFLOW: Tier.PRO,
    CreatableResource.TEAM: Tier.ENTERPRISE,
}


# ============================================================================
# CAPABILITY METADATA - paywall copy and upgrade benefits
# ============================================================================
DEFAULT_PAYWALL_MESSAGE = "This feature requires a paid subscription"
DEFAULT_BENEFITS = ["Unlock premium features"]

CAPABILITY_METADATA: Dict[Capability, Dict[str, Any]] = {
    Capability.ADVANCED_WORKFLOW: {
        "name": "Advanced Workflows",
        "paywall_message": "Pro feature: Advanced workflow automation",
        "benefits": [
            "Create complex multi-step workflows",
            "Conditional logic and branching",
            "Automated actions and approvals",
        ],
    },
    Capability.AI_EXTRACTION: {
        "name": "AI Field Extraction",
        "paywall_message": "Pro feature: AI-powered field extraction",
        "benefits": [
            "Automatic field detection",
            "Hebrew/RTL text support",
            "99% accuracy guarantee",
        ],
    },
    Capability.EXPORT_PDF: {
        "name": "PDF Export",
        "paywall_message": "Pro feature: Export filled PDFs",
        "benefits": [
            "Export filled forms as PDF",
            "Batch export capability",
            "Custom watermarks",
        ],
    },
    Capability.CUSTOM_TEMPLATES: {
        "name": "Custom Templates",
        "paywall_message": "Pro feature: Custom form templates",
    },
    Capability.TEAM_COLLABORATION: {
        "name": "Team Collaboration",
        "paywall_message": "Enterprise feature: Team collaboration",
    },
    Capability.CUSTOM_BRANDING: {
        "name": "Custom Branding",
        "paywall_message": "Enterprise feature: Custom branding",
    },
}


# ============================================================================
# QUOTA CEILINGS
# ============================================================================
TIER_QUOTAS: Dict[Tier, Dict[QuotaDimension, Optional[int]]] = {
    Tier.GUEST: {
        QuotaDimension.FORMS_COUNT: 0,
        QuotaDimension.FIELDS_PER_FORM: 0,
        QuotaDimension.MONTHLY_SUBMISSIONS: 0,
        QuotaDimension.STORAGE_MB: 0,
        QuotaDimension.API_CALLS_PER_HOUR: 0,
    },
    Tier.FREE: {
        QuotaDimension.FORMS_COUNT: 10,
        QuotaDimension.FIELDS_PER_FORM: 20,
        QuotaDimension.MONTHLY_SUBMISSIONS: 100,
        QuotaDimension.STORAGE_MB: 50,
        QuotaDimension.API_CALLS_PER_HOUR: 10,
    },
    Tier.PRO: {
        QuotaDimension.FORMS_COUNT: UNLIMITED,
        QuotaDimension.FIELDS_PER_FORM: UNLIMITED,
        QuotaDimension.MONTHLY_SUBMISSIONS: UNLIMITED,
        QuotaDimension.STORAGE_MB: 5000,
        QuotaDimension.API_CALLS_PER_HOUR: 1000,
    },
    Tier.ENTERPRISE: {
        QuotaDimension.FORMS_COUNT: UNLIMITED,
        QuotaDimension.FIELDS_PER_FORM: UNLIMITED,
        QuotaDimension.MONTHLY_SUBMISSIONS: UNLIMITED,
        QuotaDimension.STORAGE_MB: UNLIMITED,
        QuotaDimension.API_CALLS_PER_HOUR: UNLIMITED,
    },
}

DIMENSION_RESET_CADENCE: Dict[QuotaDimension, ResetCadence] = {
    QuotaDimension.FORMS_COUNT: ResetCadence.NONE,
    QuotaDimension.FIELDS_PER_FORM: ResetCadence.NONE,
    QuotaDimension.MONTHLY_SUBMISSIONS: ResetCadence.MONTHLY,
    QuotaDimension.STORAGE_MB: ResetCadence.NONE,
    QuotaDimension.API_CALLS_PER_HOUR: ResetCadence.HOURLY,
}


# ============================================================================
# RATE LIMITS (requests per window, per account and capability)
# ============================================================================
TIER_RATE_LIMITS: Dict[Tier, Optional[int]] = {
    Tier.GUEST: 0,
    Tier.FREE: 10,
    Tier.PRO: 100,
    Tier.ENTERPRISE: UNLIMITED,
}

# Bulk operations: None = unlimited, missing tier = not allowed
BULK_OPERATION_MAX_ITEMS: Dict[Tier, Optional[int]] = {
    Tier.PRO: 100,
    Tier.ENTERPRISE: UNLIMITED,
}


# ============================================================================
# TIER CATALOG SERVICE
# ============================================================================
class TierCatalog:
    """Read-only lookups over the static catalog tables.

    Unknown tier or dimension values never raise here; they come back as None
    so callers can fail closed and log.
    """

    def parse_tier(self, value: Union[Tier, str, None]) -> Optional[Tier]:
        """Parse a tier value; returns None for anything not in the catalog."""
        if isinstance(value, Tier):
            return value
        if value is None:
            return None
        try:
            return Tier(str(value).strip().lower())
        except ValueError:
            return None

    def parse_dimension(self, value: Union[QuotaDimension, str, None]) -> Optional[QuotaDimension]:
        if isinstance(value, QuotaDimension):
            return value
        try:
            return QuotaDimension(str(value))
        except ValueError:
            return None

    def ordinal(self, tier: Union[Tier, str, None]) -> Optional[int]:
        parsed = self.parse_tier(tier)
        if parsed is None:
            return None
        return TIER_ORDINALS[parsed]

    def tier_name(self, tier: Union[Tier, str, None]) -> str:
        parsed = self.parse_tier(tier)
        return TIER_DISPLAY_NAMES.get(parsed, "Unknown")

    def is_paid(self, tier: Union[Tier, str, None]) -> bool:
        return self.parse_tier(tier) in PAID_TIERS

    def minimum_tier_for(self, capability: Union[Capability, str]) -> Tier:
        """Minimum tier for a capability. Unknown capabilities require FREE."""
        try:
            cap = Capability(capability)
        except ValueError:
            return Tier.FREE
        return CAPABILITY_MIN_TIER.get(cap, Tier.FREE)

    def minimum_tier_to_create(self, resource: Union[CreatableResource, str]) -> Tier:
        try:
            res = CreatableResource(resource)
        except ValueError:
            return Tier.FREE
        return CREATE_MIN_TIER.get(res, Tier.FREE)

    def capabilities_for_tier(self, tier: Union[Tier, str]) -> List[Capability]:
        """All capabilities unlocked at or below the given tier."""
        ordinal = self.ordinal(tier)
        if ordinal is None:
            return []
        return [
            cap for cap, required in CAPABILITY_MIN_TIER.items()
            if TIER_ORDINALS[required] <= ordinal
        ]

    def paywall_message(self, capability: Union[Capability, str]) -> str:
        meta = self._metadata(capability)
        return meta.get("paywall_message", DEFAULT_PAYWALL_MESSAGE)

    def benefits(self, capability: Union[Capability, str]) -> List[str]:
        meta = self._metadata(capability)
        return list(meta.get("benefits", DEFAULT_BENEFITS))

    def capability_name(self, capability: Union[Capability, str]) -> str:
        meta = self._metadata(capability)
        if "name" in meta:
            return meta["name"]
        return str(getattr(capability, "value", capability)).replace("_", " ").title()

    def _metadata(self, capability: Union[Capability, str]) -> Dict[str, Any]:
        try:
            return CAPABILITY_METADATA.get(Capability(capability), {})
        except ValueError:
            return {}

    def has_quota_entry(self, tier: Union[Tier, str], dimension: Union[QuotaDimension, str]) -> bool:
        parsed_tier = self.parse_tier(tier)
        parsed_dim = self.parse_dimension(dimension)
        return parsed_tier is not None and parsed_dim is not None

    def quota_ceiling(self, tier: Union[Tier, str], dimension: Union[QuotaDimension, str]) -> Optional[int]:
        """Ceiling for (tier, dimension); None means unlimited.

        Callers must check has_quota_entry first: an unknown tier or dimension
        also yields None here, which would read as unlimited.
        """
        parsed_tier = self.parse_tier(tier)
        parsed_dim = self.parse_dimension(dimension)
        if parsed_tier is None or parsed_dim is None:
            return None
        return TIER_QUOTAS[parsed_tier][parsed_dim]

    def reset_cadence(self, dimension: Union[QuotaDimension, str]) -> ResetCadence:
        parsed = self.parse_dimension(dimension)
        if parsed is None:
            return ResetCadence.NONE
        return DIMENSION_RESET_CADENCE[parsed]

    def rate_limit_for(self, tier: Union[Tier, str, None]) -> Optional[int]:
        """Requests per window; unknown tiers get 0."""
        parsed = self.parse_tier(tier)
        if parsed is None:
            return 0
        return TIER_RATE_LIMITS[parsed]

    def bulk_max_items(self, tier: Union[Tier, str, None]) -> Optional[int]:
        return BULK_OPERATION_MAX_ITEMS.get(self.parse_tier(tier))

    def bulk_allowed(self, tier: Union[Tier, str, None]) -> bool:
        return self.parse_tier(tier) in BULK_OPERATION_MAX_ITEMS

    def lowest_tier_with_capacity(self, dimension: Union[QuotaDimension, str], needed: float) -> Optional[Tier]:
        """Cheapest tier whose ceiling for the dimension admits ``needed``."""
        parsed = self.parse_dimension(dimension)
        if parsed is None:
            return None
        for tier in sorted(TIER_QUOTAS, key=lambda t: TIER_ORDINALS[t]):
            ceiling = TIER_QUOTAS[tier][parsed]
            if ceiling is UNLIMITED or needed <= ceiling:
                return tier
        return None

    def get_catalog_matrix(self) -> Dict[str, Any]:
        """Full tier x capability / quota matrix, for admin and pricing pages."""
        tiers = sorted(TIER_ORDINALS, key=lambda t: TIER_ORDINALS[t])
        return {
            "tiers": [
                {
                    "tier": tier.value,
                    "name": TIER_DISPLAY_NAMES[tier],
                    "ordinal": TIER_ORDINALS[tier],
                    "quotas": {dim.value: ceiling for dim, ceiling in TIER_QUOTAS[tier].items()},
                    "rate_limit": TIER_RATE_LIMITS[tier],
                }
                for tier in tiers
            ],
            "capabilities": [
                {
                    "capability": cap.value,
                    "name": self.capability_name(cap),
                    "minimum_tier": required.value,
                    "availability": {
                        tier.value: TIER_ORDINALS[tier] >= TIER_ORDINALS[required]
                        for tier in tiers
                    },
                }
                for cap, required in CAPABILITY_MIN_TIER.items()
            ],
        }


# Singleton instance
tier_catalog = TierCatalog()
