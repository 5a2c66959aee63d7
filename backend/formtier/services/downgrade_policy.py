"""Downgrade Archival Policy

When an account moves to a tier with a lower form ceiling, the forms above
the new ceiling are archived, oldest first. Archived forms are kept intact
(flagged, never deleted) and come back, most recently archived first, when
the account upgrades again.

Planning is a pure preview; nothing changes until the user confirms.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union
import logging

from database import database
from formtier.models.audit import AuditAction
from formtier.models.downgrade import ArchiveCandidate, ArchiveResult, DowngradeCheck, RestoreResult
from formtier.models.subscriptions import SubscriptionStatus
from formtier.models.tiers import QuotaDimension, Tier
from formtier.services.audit_service import audit_service, AuditService
from formtier.services.entitlement_service import entitlement_engine, TierEntitlementEngine
from formtier.services.subscription_lifecycle import (
    subscription_lifecycle_service,
    SubscriptionLifecycleService,
)
from formtier.services.usage_metering import usage_metering_service, UsageMeteringService
from formtier.utils.periods import as_utc

logger = logging.getLogger(__name__)

ARCHIVE_REASON_PREFIX = "downgrade_from_"

FORM_PROJECTION = {"_id": 0, "form_id": 1, "name": 1, "created_at": 1, "archived_at": 1, "archived_reason": 1}


class DowngradeConfirmationRequired(Exception):
    """Raised when a downgrade would archive forms and the user has not confirmed."""
    def __init__(self, check: DowngradeCheck):
        self.check = check
        self.message = check.warning or "Downgrade requires confirmation"
        super().__init__(self.message)


def archive_warning(count: int) -> str:
    noun = "form" if count == 1 else "forms"
    verb = "It" if count == 1 else "They"
    return (
        f"{count} {noun} will be archived (oldest first). "
        f"{verb} can be restored by upgrading again."
    )


class DowngradeArchivalPolicy:
    def __init__(
        self,
        db=None,
        entitlements: Optional[TierEntitlementEngine] = None,
        metering: Optional[UsageMeteringService] = None,
        lifecycle: Optional[SubscriptionLifecycleService] = None,
        audit: Optional[AuditService] = None,
    ):
        self.db = db
        self.entitlements = entitlements or entitlement_engine
        self.metering = metering or usage_metering_service
        self.lifecycle = lifecycle or subscription_lifecycle_service
        self.audit = audit or audit_service

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    @staticmethod
    def select_archive_candidates(forms: List[Dict[str, Any]], max_forms: Optional[int]) -> List[ArchiveCandidate]:
        """Oldest ``len(forms) - max_forms`` forms, ordered by (created_at, form_id)."""
        if max_forms is None:
            return []
        excess = len(forms) - max_forms
        if excess <= 0:
            return []
        ordered = sorted(forms, key=lambda f: (as_utc(f["created_at"]), f["form_id"]))
        return [ArchiveCandidate(**form) for form in ordered[:excess]]

    async def _active_forms(self, account_id: str) -> List[Dict[str, Any]]:
        db = self._get_db()
        cursor = db.forms.find(
            {"account_id": account_id, "archived_at": None, "deleted_at": None},
            FORM_PROJECTION,
        ).sort([("created_at", 1), ("form_id", 1)])
        return await cursor.to_list(length=None)

    async def _update_each(
        self,
        account_id: str,
        form_ids: List[str],
        state_filter: Dict[str, Any],
        set_fields: Dict[str, Any],
    ) -> List[str]:
        """Apply ``set_fields`` form by form; returns the ids actually changed.

        Forms another request already moved out of ``state_filter`` are
        skipped and left out of the result.
        """
        db = self._get_db()
        changed = []
        for form_id in form_ids:
            result = await db.forms.update_one(
                {"account_id": account_id, "form_id": form_id, **state_filter},
                {"$set": set_fields},
            )
            if result.modified_count:
                changed.append(form_id)
        return changed

    async def plan_downgrade(
        self,
        account_id: str,
        target_tier: Union[Tier, str],
        now: Optional[datetime] = None,
    ) -> DowngradeCheck:
        """Preview which forms a move to ``target_tier`` would archive."""
        now = now or datetime.now(timezone.utc)
        catalog = self.entitlements.catalog
        current = await self.entitlements.resolve_account_tier(account_id, now=now)
        target = catalog.parse_tier(target_tier)

        if target is None or target == Tier.GUEST:
            logger.error(f"Downgrade planning for {account_id} with invalid target tier {target_tier!r}")
            return DowngradeCheck(
                allowed=False,
                current_tier=current.value,
                target_tier=str(getattr(target_tier, "value", target_tier)),
                warning="Unknown target tier",
            )

        forms = await self._active_forms(account_id)
        max_forms = catalog.quota_ceiling(target, QuotaDimension.FORMS_COUNT)
        candidates = self.select_archive_candidates(forms, max_forms)

        return DowngradeCheck(
            allowed=True,
            current_tier=current.value,
            target_tier=target.value,
            active_forms_count=len(forms),
            target_max_forms=max_forms,
            will_archive_forms=bool(candidates),
            forms_to_archive_count=len(candidates),
            forms_to_archive=candidates,
            warning=archive_warning(len(candidates)) if candidates else None,
            requires_confirmation=bool(candidates),
        )

    async def commit_downgrade(
        self,
        account_id: str,
        target_tier: Union[Tier, str],
        confirmed: bool = False,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ArchiveResult:
        """Archive the excess forms and move the subscription to ``target_tier``.

        Raises DowngradeConfirmationRequired if forms would be archived and
        ``confirmed`` is False.
        """
        now = now or datetime.now(timezone.utc)

        check = await self.plan_downgrade(account_id, target_tier, now=now)
        if not check.allowed:
            raise ValueError(f"Cannot downgrade {account_id} to {check.target_tier}: {check.warning}")
        if check.requires_confirmation and not confirmed:
            raise DowngradeConfirmationRequired(check)

        reason = f"{ARCHIVE_REASON_PREFIX}{check.current_tier}"
        form_ids = [c.form_id for c in check.forms_to_archive]

        archived_form_ids = await self._update_each(
            account_id,
            form_ids,
            {"archived_at": None},
            {"archived_at": now, "archived_reason": reason, "updated_at": now},
        )
        archived_count = len(archived_form_ids)
        if archived_count:
            await self.metering.adjust_forms_count(account_id, -archived_count, now=now)

        subscription = await self.lifecycle.get_subscription(account_id)
        if subscription is not None and subscription.status in (
            SubscriptionStatus.ACTIVE, SubscriptionStatus.GRACE_PERIOD
        ):
            await self.lifecycle.change_plan(account_id, check.target_tier, actor_id=actor_id, now=now)

        if archived_count:
            await self.audit.log(
                AuditAction.FORMS_ARCHIVED,
                f"Archived {archived_count} forms on downgrade to {check.target_tier}",
                account_id=account_id,
                actor_id=actor_id,
                resource_type="form",
                details={"form_ids": archived_form_ids, "reason": reason},
            )

        logger.info(
            f"Downgrade committed for {account_id}: {check.current_tier} -> {check.target_tier}, "
            f"{archived_count} forms archived"
        )
        return ArchiveResult(
            account_id=account_id,
            from_tier=check.current_tier,
            to_tier=check.target_tier,
            archived_count=archived_count,
            archived_form_ids=archived_form_ids,
            archived_reason=reason if archived_form_ids else None,
        )

    async def get_archived_forms(self, account_id: str) -> List[Dict[str, Any]]:
        db = self._get_db()
        cursor = db.forms.find(
            {"account_id": account_id, "archived_at": {"$ne": None}, "deleted_at": None},
            FORM_PROJECTION,
        ).sort([("archived_at", -1), ("created_at", -1)])
        return await cursor.to_list(length=None)

    async def restore_archived_forms(
        self,
        account_id: str,
        tier: Union[Tier, str, None] = None,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RestoreResult:
        """Unarchive downgrade-archived forms up to the tier's free capacity.

        Most recently archived first. Forms the user archived themselves are
        left alone.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)
        catalog = self.entitlements.catalog

        resolved = catalog.parse_tier(tier) if tier is not None else None
        if resolved is None:
            resolved = await self.entitlements.resolve_account_tier(account_id, now=now)

        max_forms = catalog.quota_ceiling(resolved, QuotaDimension.FORMS_COUNT)
        active_count = await db.forms.count_documents(
            {"account_id": account_id, "archived_at": None, "deleted_at": None}
        )
        archived = [
            form for form in await self.get_archived_forms(account_id)
            if str(form.get("archived_reason") or "").startswith(ARCHIVE_REASON_PREFIX)
        ]

        capacity = len(archived) if max_forms is None else max(0, max_forms - active_count)
        to_restore = [form["form_id"] for form in archived[:capacity]]

        restored_form_ids = await self._update_each(
            account_id,
            to_restore,
            {"archived_at": {"$ne": None}},
            {"archived_at": None, "archived_reason": None, "updated_at": now},
        )
        restored_count = len(restored_form_ids)
        if restored_count:
            await self.metering.adjust_forms_count(account_id, restored_count, now=now)
            await self.audit.log(
                AuditAction.FORMS_RESTORED,
                f"Restored {restored_count} archived forms on {resolved.value}",
                account_id=account_id,
                actor_id=actor_id,
                resource_type="form",
                details={"form_ids": restored_form_ids},
            )

        return RestoreResult(
            account_id=account_id,
            tier=resolved.value,
            restored_count=restored_count,
            restored_form_ids=restored_form_ids,
            still_archived_count=len(archived) - restored_count,
        )


downgrade_policy = DowngradeArchivalPolicy()
