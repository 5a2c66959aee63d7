"""
FormTier - Tier Entitlement & Usage-Quota Enforcement
=====================================================

Decides, for any account at any instant:
- which capabilities its tier unlocks
- whether it has headroom on a metered quota dimension
- what state its subscription is in given payment outcomes and elapsed time
- which forms are archived when its entitlement shrinks

RULES:
- Tier comparisons go through the ordinal table, never string comparison
- Tier resolution happens in one place (TierEntitlementEngine.tier_of)
- Usage counters are mutated only through UsageMeteringService
- Forms are archived, never deleted, on downgrade
"""

__version__ = "1.0.0"
__product__ = "FormTier"
