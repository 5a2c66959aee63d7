"""FormTier access decision models

Every check returns one of these instead of a bare boolean so callers can
render an upgrade prompt or map the denial to a response status.
"""

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from enum import Enum


class DenialReason(str, Enum):
    """Why a check said no"""
    TIER_INSUFFICIENT = "tier_insufficient"
    UNKNOWN_TIER = "unknown_tier"
    UNKNOWN_DIMENSION = "unknown_dimension"
    QUOTA_EXCEEDED = "quota_exceeded"
    FORM_LIMIT_REACHED = "form_limit_reached"
    FIELD_LIMIT_REACHED = "field_limit_reached"
    STORAGE_LIMIT_REACHED = "storage_limit_reached"
    SUBSCRIPTION_SUSPENDED = "subscription_suspended"
    FORM_NOT_FOUND = "form_not_found"
    FORM_ARCHIVED = "form_archived"
    RATE_LIMITED = "rate_limited"
    BULK_LIMIT_EXCEEDED = "bulk_limit_exceeded"


class AccountIdentity(BaseModel):
    """Authenticated caller as handed over by the identity layer.

    ``tier_claim`` is only a hint; the subscription row wins when present.
    """
    account_id: Optional[str] = None
    tier_claim: Optional[str] = None
    organization_id: Optional[str] = None
    email: Optional[str] = None
    created_at: Optional[datetime] = None

    # Identity-layer metadata: trial window and per-account feature flags
    trial_ends_at: Optional[datetime] = None
    feature_flags: List[str] = Field(default_factory=list)

    model_config = {"extra": "ignore"}


class UpgradePath(BaseModel):
    """What the caller should be offered instead of the denied action"""
    target_tier: str
    cta_text: str
    benefits: List[str] = Field(default_factory=list)
    path: str

    model_config = {"extra": "ignore"}


class AccessCheckResult(BaseModel):
    """Outcome of a capability check"""
    allowed: bool
    capability: str
    tier: str
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    required_tier: Optional[str] = None
    upgrade_path: Optional[UpgradePath] = None

    model_config = {"extra": "ignore"}


class BulkOperationCheck(BaseModel):
    """Outcome of a bulk operation gate"""
    allowed: bool
    operation: str
    item_count: int
    max_items: Optional[int] = None
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    required_tier: Optional[str] = None

    model_config = {"extra": "ignore"}


class RateLimitResult(BaseModel):
    """Outcome of a fixed-window rate limit check"""
    allowed: bool
    limit: Optional[int] = None  # None = unlimited
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None
    retry_after: Optional[int] = None  # seconds, only when denied
    reason: Optional[DenialReason] = None

    model_config = {"extra": "ignore"}


class PaywallVariant(str, Enum):
    """Paywall escalation stage"""
    NONE = "none"
    SOFT = "soft"
    HARD = "hard"


class PaywallInfo(BaseModel):
    """How the paywall for a capability should be shown"""
    show: bool
    variant: PaywallVariant = PaywallVariant.NONE
    capability: str
    message: Optional[str] = None
    dismissible: bool = True
    cta_text: Optional[str] = None
    benefits: List[str] = Field(default_factory=list)
    required_tier: Optional[str] = None
    view_count: int = 0

    model_config = {"extra": "ignore"}


class TrialStatus(BaseModel):
    """Where an account stands with its trial"""
    is_in_trial: bool
    expired: bool = False
    days_remaining: Optional[int] = None
    ends_at: Optional[datetime] = None
    capabilities: List[str] = Field(default_factory=list)  # what the trial unlocks

    model_config = {"extra": "ignore"}


class FeatureUsage(BaseModel):
    """How often an account has used one capability (process-local)"""
    count: int = 0
    first_used: datetime
    last_used: datetime

    model_config = {"extra": "ignore"}
