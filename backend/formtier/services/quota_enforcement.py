"""Quota Enforcement Service

Combines the tier catalog ceilings with metered usage to answer "does this
account have headroom". Checks never mutate counters; the caller increments
through UsageMeteringService once the action has succeeded.

Checks are look-before-you-leap: two concurrent requests can both pass a
check and push usage one past the ceiling. Ceilings are therefore soft by
at most the request concurrency of a single account.
"""
from datetime import datetime, timezone
from typing import Dict, Optional, Union
import logging

from database import database
from formtier import config
from formtier.models.access import AccountIdentity, DenialReason
from formtier.models.subscriptions import Subscription, SubscriptionStatus
from formtier.models.tiers import QuotaDimension, ResetCadence, Tier
from formtier.models.usage import (
    LimitCheckResult,
    QuotaDecision,
    QuotaDimensionStatus,
    QuotaStatus,
    UsageCounters,
)
from formtier.services.entitlement_service import entitlement_engine, TierEntitlementEngine
from formtier.services.tier_catalog import BYTES_PER_MB
from formtier.services.usage_metering import usage_metering_service, UsageMeteringService
from formtier.utils.periods import as_utc, start_of_next_hour, start_of_next_month

logger = logging.getLogger(__name__)


def percent_of(current: float, limit: int) -> float:
    if limit == 0:
        return 100.0 if current > 0 else 0.0
    return round(current / limit * 100, 2)


class QuotaEnforcementService:
    """Quota checks over tier ceilings and metered usage."""

    def __init__(
        self,
        db=None,
        metering: Optional[UsageMeteringService] = None,
        entitlements: Optional[TierEntitlementEngine] = None,
        warning_threshold_percent: Optional[int] = None,
    ):
        self.db = db
        self.metering = metering or usage_metering_service
        self.entitlements = entitlements or entitlement_engine
        self.warning_threshold_percent = (
            warning_threshold_percent
            if warning_threshold_percent is not None
            else config.QUOTA_WARNING_THRESHOLD_PERCENT
        )

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    @property
    def catalog(self):
        return self.entitlements.catalog

    def reset_date_for(self, dimension: Union[QuotaDimension, str], now: datetime) -> Optional[datetime]:
        cadence = self.catalog.reset_cadence(dimension)
        if cadence == ResetCadence.MONTHLY:
            return start_of_next_month(now)
        if cadence == ResetCadence.HOURLY:
            return start_of_next_hour(now)
        return None

    def check_limit(
        self,
        tier: Union[Tier, str, None],
        dimension: Union[QuotaDimension, str],
        current_value: float,
        now: Optional[datetime] = None,
    ) -> LimitCheckResult:
        """Check a (prospective) usage value against the tier's ceiling.

        ``allowed`` is ``current_value <= limit``; pass the value the account
        would reach if the action went through, unrounded. percent_used may
        exceed 100.

        reset_date follows the dimension's cadence: the first of next
        calendar month for monthly dimensions, the top of the next hour for
        api_calls_per_hour, whose window is hourly rather than monthly.
        """
        now = now or datetime.now(timezone.utc)
        tier_value = str(getattr(tier, "value", tier))
        dim_value = str(getattr(dimension, "value", dimension))

        if not self.catalog.has_quota_entry(tier, dimension):
            reason = (
                DenialReason.UNKNOWN_TIER
                if self.catalog.parse_tier(tier) is None
                else DenialReason.UNKNOWN_DIMENSION
            )
            logger.error(f"Quota check with unknown tier/dimension: tier={tier!r} dimension={dimension!r}")
            return LimitCheckResult(
                dimension=dim_value,
                tier=tier_value,
                allowed=False,
                current=current_value,
                limit=0,
                percent_used=percent_of(current_value, 0),
                reason=reason,
            )

        limit = self.catalog.quota_ceiling(tier, dimension)
        reset_date = self.reset_date_for(dimension, now)

        if limit is None:
            return LimitCheckResult(
                dimension=dim_value,
                tier=tier_value,
                allowed=True,
                current=current_value,
                limit=None,
                unlimited=True,
                percent_used=0.0,
                reset_date=reset_date,
            )

        allowed = current_value <= limit
        percent_used = percent_of(current_value, limit)
        return LimitCheckResult(
            dimension=dim_value,
            tier=tier_value,
            allowed=allowed,
            current=current_value,
            limit=limit,
            percent_used=percent_used,
            reset_date=reset_date,
            warning=allowed and limit > 0 and percent_used >= self.warning_threshold_percent,
            reason=None if allowed else DenialReason.QUOTA_EXCEEDED,
        )

    async def _load_account(self, account_id: str, now: datetime):
        subscription = await self.entitlements.get_subscription(account_id)
        tier = self.entitlements.tier_of(AccountIdentity(account_id=account_id), subscription, now)
        return subscription, tier

    def _dimension_status(
        self,
        tier: Tier,
        dimension: QuotaDimension,
        used: float,
        now: datetime,
        reset_date: Optional[datetime] = None,
    ) -> QuotaDimensionStatus:
        # Compare unrounded; only the reported figures are rounded
        check = self.check_limit(tier, dimension, used, now)
        if check.unlimited:
            remaining = None
            exhausted = False
            overage = 0
        else:
            remaining = round(max(check.limit - used, 0), 2)
            exhausted = used >= check.limit
            overage = round(max(used - check.limit, 0), 2)
        return QuotaDimensionStatus(
            dimension=dimension.value,
            used=round(used, 2),
            limit=check.limit,
            remaining=remaining,
            unlimited=check.unlimited,
            percent_used=check.percent_used,
            reset_date=reset_date or check.reset_date,
            warning=check.warning,
            exhausted=exhausted,
            overage=overage,
        )

    async def quota_status(self, account_id: str, now: Optional[datetime] = None) -> QuotaStatus:
        """Usage snapshot across the dashboard dimensions.

        Includes how far submissions ran past the ceiling (possible for
        accounts downgraded mid-period) and the per-form breakdown.
        """
        now = now or datetime.now(timezone.utc)
        subscription, tier = await self._load_account(account_id, now)
        usage: UsageCounters = await self.metering.current_usage(account_id, now)

        storage_mb = usage.storage_used_bytes / BYTES_PER_MB
        forms_breakdown = await self.metering.get_all_forms_usage(
            account_id, now=now, period_start=usage.period_start
        )
        dimensions: Dict[str, QuotaDimensionStatus] = {
            QuotaDimension.FORMS_COUNT.value: self._dimension_status(
                tier, QuotaDimension.FORMS_COUNT, usage.forms_count, now
            ),
            QuotaDimension.MONTHLY_SUBMISSIONS.value: self._dimension_status(
                tier,
                QuotaDimension.MONTHLY_SUBMISSIONS,
                usage.responses_count,
                now,
                # Submissions reset at the account's own period boundary
                reset_date=as_utc(usage.period_end),
            ),
            QuotaDimension.STORAGE_MB.value: self._dimension_status(
                tier, QuotaDimension.STORAGE_MB, storage_mb, now
            ),
        }

        blocking = (QuotaDimension.MONTHLY_SUBMISSIONS.value, QuotaDimension.STORAGE_MB.value)
        can_submit = not any(dimensions[d].exhausted for d in blocking)
        if subscription is not None and subscription.blocks_usage:
            can_submit = False

        return QuotaStatus(
            account_id=account_id,
            tier=tier.value,
            subscription_status=subscription.status.value if subscription else None,
            is_grace_period=bool(subscription and subscription.status == SubscriptionStatus.GRACE_PERIOD),
            period_start=as_utc(usage.period_start),
            period_end=as_utc(usage.period_end),
            dimensions=dimensions,
            can_submit=can_submit,
            submissions_overage=int(dimensions[QuotaDimension.MONTHLY_SUBMISSIONS.value].overage),
            forms_breakdown=forms_breakdown,
        )

    def _denied(
        self,
        reason: DenialReason,
        message: str,
        check: Optional[LimitCheckResult] = None,
        dimension: Optional[QuotaDimension] = None,
        subscription: Optional[Subscription] = None,
    ) -> QuotaDecision:
        required_tier = None
        if check is not None and dimension is not None:
            required = self.catalog.lowest_tier_with_capacity(dimension, check.current)
            required_tier = required.value if required else None
        return QuotaDecision(
            allowed=False,
            reason=reason,
            message=message,
            current=check.current if check else None,
            limit=check.limit if check else None,
            is_grace_period=bool(subscription and subscription.status == SubscriptionStatus.GRACE_PERIOD),
            upgrade_required=required_tier is not None,
            required_tier=required_tier,
        )

    async def can_submit_form(
        self, account_id: str, form_id: str, now: Optional[datetime] = None
    ) -> QuotaDecision:
        """May the form accept one more submission right now?

        A missing form is ``form_not_found``, distinct from ``quota_exceeded``.
        Grace period does not block submissions; suspension does.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        form = await db.forms.find_one(
            {"form_id": form_id, "account_id": account_id, "deleted_at": None},
            {"_id": 0, "form_id": 1, "archived_at": 1},
        )
        if not form:
            return QuotaDecision(
                allowed=False, reason=DenialReason.FORM_NOT_FOUND, message="Form not found"
            )
        if form.get("archived_at"):
            return QuotaDecision(
                allowed=False,
                reason=DenialReason.FORM_ARCHIVED,
                message="Form is archived. Upgrade to restore it.",
                upgrade_required=True,
            )

        subscription, tier = await self._load_account(account_id, now)
        if subscription is not None and subscription.blocks_usage:
            return self._denied(
                DenialReason.SUBSCRIPTION_SUSPENDED,
                "Subscription suspended. Update your payment method to continue.",
                subscription=subscription,
            )

        usage = await self.metering.current_usage(account_id, now)
        check = self.check_limit(tier, QuotaDimension.MONTHLY_SUBMISSIONS, usage.responses_count + 1, now)
        if not check.allowed:
            logger.info(
                f"Submission blocked for form {form_id}: account={account_id} tier={tier.value} "
                f"used={usage.responses_count} limit={check.limit}"
            )
            return self._denied(
                DenialReason.QUOTA_EXCEEDED,
                f"Monthly submission limit reached ({check.limit})",
                check=check,
                dimension=QuotaDimension.MONTHLY_SUBMISSIONS,
                subscription=subscription,
            )

        return QuotaDecision(
            allowed=True,
            current=usage.responses_count,
            limit=check.limit,
            is_grace_period=bool(subscription and subscription.status == SubscriptionStatus.GRACE_PERIOD),
        )

    async def can_create_form(self, account_id: str, now: Optional[datetime] = None) -> QuotaDecision:
        """May the account create one more form?"""
        now = now or datetime.now(timezone.utc)
        subscription, tier = await self._load_account(account_id, now)
        if subscription is not None and subscription.blocks_usage:
            return self._denied(
                DenialReason.SUBSCRIPTION_SUSPENDED,
                "Subscription suspended. Update your payment method to continue.",
                subscription=subscription,
            )

        usage = await self.metering.current_usage(account_id, now)
        check = self.check_limit(tier, QuotaDimension.FORMS_COUNT, usage.forms_count + 1, now)
        if not check.allowed:
            return self._denied(
                DenialReason.FORM_LIMIT_REACHED,
                f"Form limit reached ({check.limit}). Archive a form or upgrade.",
                check=check,
                dimension=QuotaDimension.FORMS_COUNT,
                subscription=subscription,
            )

        return QuotaDecision(
            allowed=True,
            current=usage.forms_count,
            limit=check.limit,
            is_grace_period=bool(subscription and subscription.status == SubscriptionStatus.GRACE_PERIOD),
        )

    async def check_storage_upload(
        self, account_id: str, incoming_bytes: int, now: Optional[datetime] = None
    ) -> QuotaDecision:
        """Would an upload of ``incoming_bytes`` fit in the storage ceiling?

        Not reserved: concurrent uploads can each pass and overshoot together.
        """
        if incoming_bytes < 0:
            raise ValueError("incoming_bytes must not be negative")

        now = now or datetime.now(timezone.utc)
        subscription, tier = await self._load_account(account_id, now)
        usage = await self.metering.current_usage(account_id, now)

        prospective_mb = (usage.storage_used_bytes + incoming_bytes) / BYTES_PER_MB
        check = self.check_limit(tier, QuotaDimension.STORAGE_MB, prospective_mb, now)
        if not check.allowed:
            decision = self._denied(
                DenialReason.STORAGE_LIMIT_REACHED,
                f"Storage limit reached ({check.limit} MB)",
                check=check,
                dimension=QuotaDimension.STORAGE_MB,
                subscription=subscription,
            )
            decision.current = round(prospective_mb, 2)
            return decision

        return QuotaDecision(
            allowed=True,
            current=round(prospective_mb, 2),
            limit=check.limit,
            is_grace_period=bool(subscription and subscription.status == SubscriptionStatus.GRACE_PERIOD),
        )

    def check_fields_per_form(self, tier: Union[Tier, str, None], field_count: int) -> QuotaDecision:
        check = self.check_limit(tier, QuotaDimension.FIELDS_PER_FORM, field_count)
        if not check.allowed:
            return self._denied(
                DenialReason.FIELD_LIMIT_REACHED,
                f"Forms on this plan can have at most {check.limit} fields",
                check=check,
                dimension=QuotaDimension.FIELDS_PER_FORM,
            )
        return QuotaDecision(allowed=True, current=field_count, limit=check.limit)


quota_enforcement_service = QuotaEnforcementService()
