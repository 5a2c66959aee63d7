"""Subscription Lifecycle State Machine

Drives subscription status from payment outcomes and elapsed time:

    (none) --select plan--> active
    active --payment fails--> grace_period
    grace_period --payment recovers--> active
    grace_period --grace window expires--> suspended
    suspended --payment recovers / manual reactivation--> active
    suspended --deletion window expires--> pending_deletion (terminal)
    active | grace_period | suspended --cancel--> cancelled
    cancelled --select plan / reactivation--> active

Every transition is one conditional update filtered on the expected
current status, so a callback and the sweep racing on the same row cannot
both apply. Entitlement during each status is decided by
Subscription.grants_paid_access, not here.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional, Union
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from formtier import config
from formtier.models.audit import AuditAction, AuditSeverity
from formtier.models.subscriptions import (
    BillingCycle,
    PaymentEvent,
    PaymentEventType,
    Subscription,
    SubscriptionStatus,
)
from formtier.models.tiers import Tier
from formtier.services.audit_service import audit_service, AuditService
from formtier.services.tier_catalog import tier_catalog
from formtier.utils.periods import add_months, add_years, as_utc

logger = logging.getLogger(__name__)


# ============================================================================
# TRANSITION TABLE
# ============================================================================
ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, frozenset] = {
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.GRACE_PERIOD,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.GRACE_PERIOD: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.SUSPENDED,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.SUSPENDED: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.PENDING_DELETION,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.PENDING_DELETION: frozenset(),
    SubscriptionStatus.CANCELLED: frozenset({
        SubscriptionStatus.ACTIVE,
    }),
}


def is_transition_allowed(from_status: SubscriptionStatus, to_status: SubscriptionStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, frozenset())


class InvalidSubscriptionTransition(Exception):
    """Raised when a status change is not in the transition table."""
    def __init__(self, account_id: str, from_status: Optional[str], to_status: str):
        self.account_id = account_id
        self.from_status = from_status
        self.to_status = to_status
        self.message = (
            f"Subscription for {account_id} cannot move from {from_status} to {to_status}"
        )
        super().__init__(self.message)


class SubscriptionNotFound(Exception):
    """Raised when an account has no subscription row."""
    def __init__(self, account_id: str):
        self.account_id = account_id
        self.message = f"No subscription for account {account_id}"
        super().__init__(self.message)


def _status_value(status: Union[SubscriptionStatus, str]) -> str:
    return getattr(status, "value", status)


class SubscriptionLifecycleService:
    """Applies payment outcomes and time-based expiry to subscriptions."""

    def __init__(self, db=None, audit: Optional[AuditService] = None):
        self.db = db
        self.audit = audit or audit_service
        self.grace_period = timedelta(days=config.GRACE_PERIOD_DAYS)
        self.suspension_to_deletion = timedelta(days=config.SUSPENSION_TO_DELETION_DAYS)
        self.retry_interval = timedelta(days=config.PAYMENT_RETRY_INTERVAL_DAYS)

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    @staticmethod
    def _period_end(start: datetime, billing_cycle: BillingCycle) -> datetime:
        if billing_cycle == BillingCycle.YEARLY:
            return add_years(start, 1)
        return add_months(start, 1)

    async def get_subscription(self, account_id: str) -> Optional[Subscription]:
        db = self._get_db()
        doc = await db.subscriptions.find_one({"account_id": account_id}, {"_id": 0})
        return Subscription(**doc) if doc else None

    async def _require_subscription(self, account_id: str) -> Subscription:
        subscription = await self.get_subscription(account_id)
        if subscription is None:
            raise SubscriptionNotFound(account_id)
        return subscription

    async def _transition(
        self,
        account_id: str,
        from_statuses: Iterable[SubscriptionStatus],
        to_status: SubscriptionStatus,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Iterable[str] = (),
        inc_fields: Optional[Dict[str, int]] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Atomically move a subscription from one of ``from_statuses`` to ``to_status``.

        ``to_status`` equal to a from-status is a bookkeeping update that
        keeps the status (e.g. another failed retry during grace).
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)
        from_statuses = list(from_statuses)

        for from_status in from_statuses:
            if from_status != to_status and not is_transition_allowed(from_status, to_status):
                raise InvalidSubscriptionTransition(account_id, from_status.value, to_status.value)

        update: Dict[str, Any] = {
            "$set": {"status": to_status.value, "updated_at": now, **(set_fields or {})}
        }
        unset_fields = list(unset_fields)
        if unset_fields:
            update["$set"].update({field: None for field in unset_fields})
        if inc_fields:
            update["$inc"] = inc_fields

        doc = await db.subscriptions.find_one_and_update(
            {"account_id": account_id, "status": {"$in": [s.value for s in from_statuses]}},
            update,
            return_document=ReturnDocument.AFTER,
            projection={"_id": 0},
        )
        if doc is None:
            current = await self.get_subscription(account_id)
            if current is None:
                raise SubscriptionNotFound(account_id)
            raise InvalidSubscriptionTransition(account_id, _status_value(current.status), to_status.value)

        return Subscription(**doc)

    # ------------------------------------------------------------------
    # Plan selection
    # ------------------------------------------------------------------

    async def select_plan(
        self,
        account_id: str,
        tier: Union[Tier, str],
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        organization_id: Optional[str] = None,
        provider_customer_id: Optional[str] = None,
        provider_subscription_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Start a subscription, or restart a cancelled one on the same row."""
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        parsed = tier_catalog.parse_tier(tier)
        if parsed is None or parsed == Tier.GUEST:
            raise ValueError(f"Cannot subscribe to tier {tier!r}")

        period_fields = {
            "tier": parsed.value,
            "billing_cycle": billing_cycle.value,
            "current_period_start": now,
            "current_period_end": self._period_end(now, billing_cycle),
        }
        provider_fields = {
            k: v for k, v in {
                "organization_id": organization_id,
                "provider_customer_id": provider_customer_id,
                "provider_subscription_id": provider_subscription_id,
            }.items() if v is not None
        }

        existing = await self.get_subscription(account_id)
        if existing is None:
            subscription = Subscription(account_id=account_id, created_at=now, updated_at=now,
                                        **period_fields, **provider_fields)
            try:
                await db.subscriptions.insert_one(subscription.model_dump())
            except DuplicateKeyError:
                # A concurrent first selection created the row
                raise InvalidSubscriptionTransition(account_id, SubscriptionStatus.ACTIVE.value,
                                                    SubscriptionStatus.ACTIVE.value)
            await self.audit.log(
                AuditAction.SUBSCRIPTION_CREATED,
                f"Subscribed to {parsed.value} ({billing_cycle.value})",
                account_id=account_id,
                actor_id=actor_id,
                resource_type="subscription",
                resource_id=subscription.subscription_id,
                details={"tier": parsed.value, "billing_cycle": billing_cycle.value},
            )
            return subscription

        if existing.status != SubscriptionStatus.CANCELLED:
            raise InvalidSubscriptionTransition(account_id, existing.status.value, SubscriptionStatus.ACTIVE.value)

        subscription = await self._transition(
            account_id,
            [SubscriptionStatus.CANCELLED],
            SubscriptionStatus.ACTIVE,
            set_fields={**period_fields, **provider_fields},
            unset_fields=("cancelled_at",),
            now=now,
        )
        await self.audit.log(
            AuditAction.SUBSCRIPTION_REACTIVATED,
            f"Re-subscribed to {parsed.value} after cancellation",
            account_id=account_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=subscription.subscription_id,
            details={"tier": parsed.value, "previous_tier": existing.tier},
        )
        return subscription

    async def change_plan(
        self,
        account_id: str,
        tier: Union[Tier, str],
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Change tier on a live subscription without touching its status."""
        now = now or datetime.now(timezone.utc)
        parsed = tier_catalog.parse_tier(tier)
        if parsed is None or parsed == Tier.GUEST:
            raise ValueError(f"Cannot change plan to tier {tier!r}")

        db = self._get_db()
        live = [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.GRACE_PERIOD.value]
        before = await db.subscriptions.find_one_and_update(
            {"account_id": account_id, "status": {"$in": live}},
            {"$set": {"tier": parsed.value, "updated_at": now}},
            return_document=ReturnDocument.BEFORE,
            projection={"_id": 0},
        )
        if before is None:
            current = await self._require_subscription(account_id)
            raise InvalidSubscriptionTransition(account_id, current.status.value, current.status.value)

        previous = Subscription(**before)
        await self.audit.log(
            AuditAction.SUBSCRIPTION_PLAN_CHANGED,
            f"Plan changed from {previous.tier} to {parsed.value}",
            account_id=account_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=previous.subscription_id,
            details={"from_tier": previous.tier, "to_tier": parsed.value},
        )
        return previous.model_copy(update={"tier": parsed.value, "updated_at": now})

    # ------------------------------------------------------------------
    # Payment outcomes
    # ------------------------------------------------------------------

    async def record_payment_failure(
        self,
        account_id: str,
        reason: Optional[str] = None,
        next_retry_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """A charge failed.

        From active this opens the grace window. During grace or suspension
        it only records the failed retry; the sweep handles expiry.
        """
        now = now or datetime.now(timezone.utc)
        subscription = await self._require_subscription(account_id)
        retry_at = next_retry_at or (now + self.retry_interval)

        if subscription.status == SubscriptionStatus.ACTIVE:
            updated = await self._transition(
                account_id,
                [SubscriptionStatus.ACTIVE],
                SubscriptionStatus.GRACE_PERIOD,
                set_fields={
                    "grace_started_at": now,
                    "grace_ends_at": now + self.grace_period,
                    "retry_count": 0,
                    "next_retry_at": retry_at,
                    "last_failure_reason": reason,
                },
                now=now,
            )
            await self.audit.log(
                AuditAction.SUBSCRIPTION_GRACE_STARTED,
                f"Payment failed; grace period until {updated.grace_ends_at.isoformat()}",
                account_id=account_id,
                resource_type="subscription",
                resource_id=updated.subscription_id,
                details={"reason": reason, "next_retry_at": retry_at.isoformat()},
                severity=AuditSeverity.WARNING,
            )
            return updated

        if subscription.status in (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.SUSPENDED):
            updated = await self._transition(
                account_id,
                [subscription.status],
                subscription.status,
                set_fields={
                    "last_retry_at": now,
                    "next_retry_at": retry_at,
                    "last_failure_reason": reason,
                },
                inc_fields={"retry_count": 1},
                now=now,
            )
            await self.audit.log(
                AuditAction.SUBSCRIPTION_PAYMENT_RETRY_FAILED,
                f"Payment retry {updated.retry_count} failed while {updated.status.value}",
                account_id=account_id,
                resource_type="subscription",
                resource_id=updated.subscription_id,
                details={"reason": reason, "retry_count": updated.retry_count},
                severity=AuditSeverity.WARNING,
            )
            return updated

        raise InvalidSubscriptionTransition(
            account_id, subscription.status.value, SubscriptionStatus.GRACE_PERIOD.value
        )

    async def record_payment_success(
        self,
        account_id: str,
        transaction_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """A charge succeeded.

        Recovers grace_period / suspended to active with a fresh period. On
        an active subscription it renews the period once the old one ended.
        """
        now = now or datetime.now(timezone.utc)
        subscription = await self._require_subscription(account_id)

        if subscription.status in (SubscriptionStatus.GRACE_PERIOD, SubscriptionStatus.SUSPENDED):
            previous_status = subscription.status
            updated = await self._transition(
                account_id,
                [previous_status],
                SubscriptionStatus.ACTIVE,
                set_fields={
                    "current_period_start": now,
                    "current_period_end": self._period_end(now, subscription.billing_cycle),
                    "retry_count": 0,
                },
                unset_fields=(
                    "grace_started_at", "grace_ends_at", "suspended_at",
                    "next_retry_at", "last_failure_reason",
                ),
                now=now,
            )
            await self.audit.log(
                AuditAction.SUBSCRIPTION_RECOVERED,
                f"Payment recovered; {previous_status.value} -> active",
                account_id=account_id,
                resource_type="subscription",
                resource_id=updated.subscription_id,
                details={"transaction_id": transaction_id, "from_status": previous_status.value},
            )
            return updated

        if subscription.status == SubscriptionStatus.ACTIVE:
            period_end = as_utc(subscription.current_period_end)
            if now < period_end:
                return subscription
            new_end = self._period_end(period_end, subscription.billing_cycle)
            while new_end <= now:
                new_end = self._period_end(new_end, subscription.billing_cycle)
            updated = await self._transition(
                account_id,
                [SubscriptionStatus.ACTIVE],
                SubscriptionStatus.ACTIVE,
                set_fields={"current_period_start": period_end, "current_period_end": new_end},
                now=now,
            )
            await self.audit.log(
                AuditAction.SUBSCRIPTION_RENEWED,
                f"Billing period renewed until {new_end.isoformat()}",
                account_id=account_id,
                resource_type="subscription",
                resource_id=updated.subscription_id,
                details={"transaction_id": transaction_id},
            )
            return updated

        raise InvalidSubscriptionTransition(
            account_id, subscription.status.value, SubscriptionStatus.ACTIVE.value
        )

    async def handle_payment_event(self, event: PaymentEvent, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Apply a verified payment-provider callback.

        Events are matched to accounts by provider customer id. Unknown
        events and customers are acknowledged and ignored.
        """
        db = self._get_db()
        if event.event not in (PaymentEventType.PAYMENT_SUCCESS.value, PaymentEventType.PAYMENT_FAILED.value):
            logger.info(f"Ignoring unhandled payment event type: {event.event}")
            return {"handled": False, "message": f"Unhandled event type: {event.event}"}

        if not event.customer_id:
            return {"handled": False, "message": "Missing customer id"}

        doc = await db.subscriptions.find_one(
            {"provider_customer_id": event.customer_id}, {"_id": 0, "account_id": 1}
        )
        if not doc:
            logger.warning(f"Payment event {event.event} for unknown customer {event.customer_id}")
            return {"handled": False, "message": "Unknown customer"}

        account_id = doc["account_id"]
        if event.event == PaymentEventType.PAYMENT_SUCCESS.value:
            subscription = await self.record_payment_success(
                account_id, transaction_id=event.transaction_id, now=now
            )
        else:
            subscription = await self.record_payment_failure(
                account_id, reason=event.failure_reason, now=now
            )
        return {"handled": True, "account_id": account_id, "status": subscription.status.value}

    # ------------------------------------------------------------------
    # Manual actions
    # ------------------------------------------------------------------

    async def reactivate(
        self,
        account_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Manually bring a suspended or cancelled subscription back to active."""
        now = now or datetime.now(timezone.utc)
        subscription = await self._require_subscription(account_id)
        if subscription.status not in (SubscriptionStatus.SUSPENDED, SubscriptionStatus.CANCELLED):
            raise InvalidSubscriptionTransition(
                account_id, subscription.status.value, SubscriptionStatus.ACTIVE.value
            )

        set_fields: Dict[str, Any] = {"retry_count": 0}
        period_end = as_utc(subscription.current_period_end)
        if now >= period_end:
            set_fields["current_period_start"] = now
            set_fields["current_period_end"] = self._period_end(now, subscription.billing_cycle)

        updated = await self._transition(
            account_id,
            [subscription.status],
            SubscriptionStatus.ACTIVE,
            set_fields=set_fields,
            unset_fields=(
                "cancelled_at", "grace_started_at", "grace_ends_at", "suspended_at",
                "next_retry_at", "last_failure_reason",
            ),
            now=now,
        )
        await self.audit.log(
            AuditAction.SUBSCRIPTION_REACTIVATED,
            f"Subscription reactivated from {subscription.status.value}",
            account_id=account_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=updated.subscription_id,
            details={"from_status": subscription.status.value},
        )
        return updated

    async def cancel(
        self,
        account_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Cancel. Paid access continues until current_period_end.

        A suspended subscription has no paid access left to run out, so its
        period is closed at cancellation time.
        """
        now = now or datetime.now(timezone.utc)
        subscription = await self._require_subscription(account_id)
        if not is_transition_allowed(subscription.status, SubscriptionStatus.CANCELLED):
            raise InvalidSubscriptionTransition(
                account_id, subscription.status.value, SubscriptionStatus.CANCELLED.value
            )
        set_fields: Dict[str, Any] = {"cancelled_at": now}
        if subscription.status == SubscriptionStatus.SUSPENDED:
            set_fields["current_period_end"] = now

        updated = await self._transition(
            account_id,
            [subscription.status],
            SubscriptionStatus.CANCELLED,
            set_fields=set_fields,
            unset_fields=("next_retry_at",),
            now=now,
        )
        await self.audit.log(
            AuditAction.SUBSCRIPTION_CANCELLED,
            f"Subscription cancelled; access until {as_utc(updated.current_period_end).isoformat()}",
            account_id=account_id,
            actor_id=actor_id,
            resource_type="subscription",
            resource_id=updated.subscription_id,
            details={"from_status": subscription.status.value},
        )
        return updated

    # ------------------------------------------------------------------
    # Time-based sweep
    # ------------------------------------------------------------------

    async def run_lifecycle_sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Suspend expired grace periods and flag long suspensions for deletion.

        Idempotent: each row is moved with a status-conditional update, so a
        second concurrent sweep finds nothing left to do. Per-row failures
        are logged and skipped.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)
        summary = {"suspended": 0, "pending_deletion": 0, "failed": 0}

        cursor = db.subscriptions.find(
            {"status": SubscriptionStatus.GRACE_PERIOD.value, "grace_ends_at": {"$lte": now}},
            {"_id": 0, "account_id": 1},
        )
        async for row in cursor:
            account_id = row.get("account_id")
            try:
                updated = await self._transition(
                    account_id,
                    [SubscriptionStatus.GRACE_PERIOD],
                    SubscriptionStatus.SUSPENDED,
                    set_fields={"suspended_at": now},
                    now=now,
                )
                summary["suspended"] += 1
                await self.audit.log(
                    AuditAction.SUBSCRIPTION_SUSPENDED,
                    "Grace period expired without payment",
                    account_id=account_id,
                    resource_type="subscription",
                    resource_id=updated.subscription_id,
                    severity=AuditSeverity.WARNING,
                )
            except InvalidSubscriptionTransition:
                # Recovered or cancelled since the scan
                continue
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Failed to suspend subscription for {account_id}: {e}")

        cursor = db.subscriptions.find(
            {
                "status": SubscriptionStatus.SUSPENDED.value,
                "suspended_at": {"$lte": now - self.suspension_to_deletion},
            },
            {"_id": 0, "account_id": 1},
        )
        async for row in cursor:
            account_id = row.get("account_id")
            try:
                updated = await self._transition(
                    account_id,
                    [SubscriptionStatus.SUSPENDED],
                    SubscriptionStatus.PENDING_DELETION,
                    set_fields={"pending_deletion_at": now},
                    now=now,
                )
                summary["pending_deletion"] += 1
                await self.audit.log(
                    AuditAction.SUBSCRIPTION_PENDING_DELETION,
                    f"Suspended for {self.suspension_to_deletion.days} days; flagged for deletion",
                    account_id=account_id,
                    resource_type="subscription",
                    resource_id=updated.subscription_id,
                    severity=AuditSeverity.CRITICAL,
                )
            except InvalidSubscriptionTransition:
                continue
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Failed to flag subscription for deletion for {account_id}: {e}")

        logger.info(
            f"Subscription lifecycle sweep: {summary['suspended']} suspended, "
            f"{summary['pending_deletion']} pending deletion, {summary['failed']} failed"
        )
        return summary


subscription_lifecycle_service = SubscriptionLifecycleService()
