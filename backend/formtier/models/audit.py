"""FormTier Audit Log Models"""

from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


class AuditAction(str, Enum):
    """Audit action types"""
    # Subscription lifecycle
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"
    SUBSCRIPTION_PLAN_CHANGED = "SUBSCRIPTION_PLAN_CHANGED"
    SUBSCRIPTION_GRACE_STARTED = "SUBSCRIPTION_GRACE_STARTED"
    SUBSCRIPTION_PAYMENT_RETRY_FAILED = "SUBSCRIPTION_PAYMENT_RETRY_FAILED"
    SUBSCRIPTION_RECOVERED = "SUBSCRIPTION_RECOVERED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_SUSPENDED = "SUBSCRIPTION_SUSPENDED"
    SUBSCRIPTION_PENDING_DELETION = "SUBSCRIPTION_PENDING_DELETION"
    SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"

    # Downgrade / archival
    FORMS_ARCHIVED = "FORMS_ARCHIVED"
    FORMS_RESTORED = "FORMS_RESTORED"


class AuditSeverity(str, Enum):
    """Audit entry severity"""
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class AuditLog(BaseModel):
    """Audit log entry"""
    log_id: str = Field(default_factory=lambda: f"AL-{uuid.uuid4().hex[:12].upper()}")

    # Actor
    account_id: Optional[str] = None
    actor_id: Optional[str] = None  # None = system / scheduler

    action: AuditAction
    severity: AuditSeverity = AuditSeverity.INFO

    resource_type: Optional[str] = None  # e.g. "subscription", "form"
    resource_id: Optional[str] = None

    description: str
    details: Dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    model_config = {"extra": "ignore"}
