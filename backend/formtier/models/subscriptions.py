"""FormTier Subscription Models

One subscription row per account. Rows are never hard-deleted; a cancelled
row is reused when the account reactivates or selects a plan again.
"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status"""
    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    SUSPENDED = "suspended"
    PENDING_DELETION = "pending_deletion"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Subscription(BaseModel):
    """Account subscription record"""
    subscription_id: str = Field(default_factory=lambda: f"SUB-{uuid.uuid4().hex[:12].upper()}")
    account_id: str
    organization_id: Optional[str] = None

    # Raw tier value; parsed (and failed closed) by the entitlement engine
    tier: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY

    current_period_start: datetime
    current_period_end: datetime

    # Cancellation
    cancelled_at: Optional[datetime] = None

    # Dunning
    grace_started_at: Optional[datetime] = None
    grace_ends_at: Optional[datetime] = None
    suspended_at: Optional[datetime] = None
    pending_deletion_at: Optional[datetime] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None
    last_failure_reason: Optional[str] = None

    # Payment provider references (opaque)
    provider_customer_id: Optional[str] = None
    provider_subscription_id: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None

    model_config = {"extra": "ignore"}

    def grants_paid_access(self, now: datetime) -> bool:
        """Whether the subscription still entitles the account to its paid tier.

        Grace period keeps access. A cancelled subscription keeps access
        until the end of the period already paid for.
        """
        if self.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD):
            return True
        if self.status == SubscriptionStatus.CANCELLED:
            return now < self.current_period_end
        return False

    @property
    def blocks_usage(self) -> bool:
        return self.status in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.PENDING_DELETION)


class PaymentEventType(str, Enum):
    PAYMENT_SUCCESS = "payment.success"
    PAYMENT_FAILED = "payment.failed"


class PaymentEvent(BaseModel):
    """Payment provider callback, already verified upstream"""
    event: str
    customer_id: Optional[str] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "ignore"}
