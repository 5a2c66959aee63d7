"""FormTier usage and quota models"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, List
from datetime import datetime, timezone

from .access import DenialReason


class UsageCounters(BaseModel):
    """Per-account metering row (``usage_metrics`` collection).

    forms_count and storage_used_bytes track current inventory and survive
    rollover. responses_count and api_calls_count are period activity.
    """
    account_id: str
    forms_count: int = 0
    responses_count: int = 0
    storage_used_bytes: int = 0
    api_calls_count: int = 0

    period_start: datetime
    period_end: datetime
    # Day of month periods start on; survives short months (Jan 31 -> Feb 28 -> Mar 31)
    period_anchor_day: Optional[int] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}


class FormUsage(BaseModel):
    """Submissions received by one form in one billing period (``form_usage``)"""
    account_id: str
    form_id: str
    period_start: datetime
    submissions_count: int = 0
    updated_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}


class LimitCheckResult(BaseModel):
    """Outcome of checking one value against one tier ceiling"""
    dimension: str
    tier: str
    allowed: bool
    current: float
    limit: Optional[int] = None  # None = unlimited
    unlimited: bool = False
    percent_used: float = 0.0
    reset_date: Optional[datetime] = None
    warning: bool = False
    reason: Optional[DenialReason] = None

    model_config = {"extra": "ignore"}


class QuotaDimensionStatus(BaseModel):
    """Snapshot of one dimension inside QuotaStatus"""
    dimension: str
    used: float
    limit: Optional[int] = None
    remaining: Optional[float] = None  # None = unlimited
    unlimited: bool = False
    percent_used: float = 0.0
    reset_date: Optional[datetime] = None
    warning: bool = False
    exhausted: bool = False
    overage: float = 0  # usage past the ceiling, 0 when within or unlimited

    model_config = {"extra": "ignore"}


class QuotaStatus(BaseModel):
    """Usage snapshot for an account, shaped for a usage dashboard"""
    account_id: str
    tier: str
    subscription_status: Optional[str] = None
    is_grace_period: bool = False
    period_start: datetime
    period_end: datetime
    dimensions: Dict[str, QuotaDimensionStatus] = Field(default_factory=dict)
    can_submit: bool = True
    submissions_overage: int = 0
    forms_breakdown: List[FormUsage] = Field(default_factory=list)  # busiest form first

    model_config = {"extra": "ignore"}


class QuotaDecision(BaseModel):
    """Answer to "may this account do X right now" for a metered action"""
    allowed: bool
    reason: Optional[DenialReason] = None
    message: Optional[str] = None
    current: Optional[float] = None
    limit: Optional[int] = None
    is_grace_period: bool = False
    upgrade_required: bool = False
    required_tier: Optional[str] = None

    model_config = {"extra": "ignore"}
