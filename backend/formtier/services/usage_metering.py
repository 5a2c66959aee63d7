"""Usage Metering Service

Owns the per-account ``usage_metrics`` row. Every counter change is a single
atomic update against the store so concurrent requests from one account
cannot lose or double-apply an increment, and decrements clamp at zero.

Store errors (motor / pymongo) propagate unmodified; only the rollover sweep
catches per-account failures.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import database
from formtier.models.usage import FormUsage, UsageCounters
from formtier.utils.periods import add_months, as_utc, next_period_window

logger = logging.getLogger(__name__)

INVENTORY_COUNTERS = ("forms_count", "storage_used_bytes")
PERIOD_COUNTERS = ("responses_count", "api_calls_count")
ALL_COUNTERS = INVENTORY_COUNTERS + PERIOD_COUNTERS


class UsageMeteringService:
    """Atomic per-account usage counters with monthly rollover."""

    def __init__(self, db=None):
        self.db = db

    def _get_db(self):
        if self.db is None:
            self.db = database.get_db()
        return self.db

    @staticmethod
    def _new_row_fields(now: datetime, exclude=()) -> Dict[str, Any]:
        """Fields for a freshly created row, minus any the update itself sets."""
        fields = {
            "period_start": now,
            "period_end": add_months(now, 1),
            "period_anchor_day": now.day,
            "created_at": now,
        }
        for counter in ALL_COUNTERS:
            fields[counter] = 0
        for key in exclude:
            fields.pop(key, None)
        return fields

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def current_usage(self, account_id: str, now: Optional[datetime] = None) -> UsageCounters:
        """Fetch the account's counters, creating the row on first use.

        Rolls the period over first if it has elapsed.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        try:
            doc = await db.usage_metrics.find_one_and_update(
                {"account_id": account_id},
                {"$setOnInsert": self._new_row_fields(now)},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                projection={"_id": 0},
            )
        except DuplicateKeyError:
            # Lost the insert race to a concurrent first call; the row exists now
            doc = await db.usage_metrics.find_one({"account_id": account_id}, {"_id": 0})

        if now > as_utc(doc["period_end"]):
            await self.rollover_if_period_elapsed(account_id, now)
            doc = await db.usage_metrics.find_one({"account_id": account_id}, {"_id": 0})

        return UsageCounters(**doc)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _increment(self, account_id: str, counter: str, now: datetime) -> None:
        db = self._get_db()
        await db.usage_metrics.update_one(
            {"account_id": account_id},
            {
                "$inc": {counter: 1},
                "$set": {"updated_at": now},
                "$setOnInsert": self._new_row_fields(now, exclude=(counter,)),
            },
            upsert=True,
        )

    async def _decrement(self, account_id: str, counter: str, now: datetime) -> bool:
        """Decrement only while the counter is positive. Returns False when already zero."""
        db = self._get_db()
        result = await db.usage_metrics.update_one(
            {"account_id": account_id, counter: {"$gt": 0}},
            {"$inc": {counter: -1}, "$set": {"updated_at": now}},
        )
        if result.modified_count == 0:
            logger.warning(f"Ignored {counter} decrement for {account_id}: counter already at zero")
            return False
        return True

    async def _adjust_clamped(self, account_id: str, counter: str, delta: int, now: datetime) -> None:
        """``counter = max(0, counter + delta)`` as one pipeline update."""
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValueError(f"{counter} delta must be an integer, got {delta!r}")

        db = self._get_db()
        defaults = self._new_row_fields(now, exclude=(counter,))
        stage = {
            field: {"$ifNull": [f"${field}", value]}
            for field, value in defaults.items()
        }
        stage[counter] = {
            "$max": [0, {"$add": [{"$ifNull": [f"${counter}", 0]}, delta]}]
        }
        stage["updated_at"] = now

        await db.usage_metrics.update_one(
            {"account_id": account_id},
            [{"$set": stage}],
            upsert=True,
        )

    async def increment_forms_count(self, account_id: str, now: Optional[datetime] = None) -> None:
        await self._increment(account_id, "forms_count", now or datetime.now(timezone.utc))

    async def decrement_forms_count(self, account_id: str, now: Optional[datetime] = None) -> bool:
        return await self._decrement(account_id, "forms_count", now or datetime.now(timezone.utc))

    async def adjust_forms_count(self, account_id: str, delta: int, now: Optional[datetime] = None) -> None:
        """Bulk change to forms_count (archive / restore), clamped at zero."""
        await self._adjust_clamped(account_id, "forms_count", delta, now or datetime.now(timezone.utc))

    async def increment_responses_count(
        self, account_id: str, now: Optional[datetime] = None, form_id: Optional[str] = None
    ) -> None:
        """Count one submission against the account, and against the form when given."""
        now = now or datetime.now(timezone.utc)
        # Count against the right period if the account sat idle past period_end
        await self.rollover_if_period_elapsed(account_id, now)
        await self._increment(account_id, "responses_count", now)

        if form_id:
            row = await self._get_db().usage_metrics.find_one(
                {"account_id": account_id}, {"_id": 0, "period_start": 1}
            )
            await self.increment_form_responses(account_id, form_id, row["period_start"], now)

    async def decrement_responses_count(self, account_id: str, now: Optional[datetime] = None) -> bool:
        return await self._decrement(account_id, "responses_count", now or datetime.now(timezone.utc))

    async def increment_api_calls_count(self, account_id: str, now: Optional[datetime] = None) -> None:
        await self._increment(account_id, "api_calls_count", now or datetime.now(timezone.utc))

    async def adjust_storage_usage(self, account_id: str, delta_bytes: int, now: Optional[datetime] = None) -> None:
        """Add (or with a negative delta, release) storage bytes, never below zero."""
        await self._adjust_clamped(
            account_id, "storage_used_bytes", delta_bytes, now or datetime.now(timezone.utc)
        )

    # ------------------------------------------------------------------
    # Per-form submissions
    # ------------------------------------------------------------------

    async def increment_form_responses(
        self, account_id: str, form_id: str, period_start: datetime, now: Optional[datetime] = None
    ) -> None:
        """One $inc upsert on the (account, form, period) row.

        Breakdown only: quota decisions read the account counter, never these rows.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)
        await db.form_usage.update_one(
            {"account_id": account_id, "form_id": form_id, "period_start": period_start},
            {
                "$inc": {"submissions_count": 1},
                "$set": {"updated_at": now},
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
        )

    async def get_form_usage(
        self, account_id: str, form_id: str, now: Optional[datetime] = None
    ) -> Optional[FormUsage]:
        """The form's row for the account's current period, or None if it has no submissions."""
        usage = await self.current_usage(account_id, now)
        doc = await self._get_db().form_usage.find_one(
            {"account_id": account_id, "form_id": form_id, "period_start": usage.period_start},
            {"_id": 0},
        )
        return FormUsage(**doc) if doc else None

    async def get_all_forms_usage(
        self,
        account_id: str,
        now: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
    ) -> List[FormUsage]:
        """Per-form counts for one period (default: current), busiest form first."""
        if period_start is None:
            period_start = (await self.current_usage(account_id, now)).period_start

        cursor = self._get_db().form_usage.find(
            {"account_id": account_id, "period_start": period_start}, {"_id": 0}
        ).sort("submissions_count", -1)
        rows = await cursor.to_list(length=None)
        return [FormUsage(**row) for row in rows]

    # ------------------------------------------------------------------
    # Rollover
    # ------------------------------------------------------------------

    async def rollover_if_period_elapsed(self, account_id: str, now: Optional[datetime] = None) -> bool:
        """Start a new billing period if the current one has ended.

        The update is conditional on the period_end we observed, so two
        callers racing on the same account roll it over exactly once.
        Returns True only for the caller that performed the rollover.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        doc = await db.usage_metrics.find_one(
            {"account_id": account_id}, {"_id": 0, "period_end": 1, "period_anchor_day": 1}
        )
        if not doc:
            return False
        return await self._rollover_row(
            account_id, doc["period_end"], now, anchor_day=doc.get("period_anchor_day")
        )

    async def _rollover_row(
        self,
        account_id: str,
        observed_period_end: datetime,
        now: datetime,
        anchor_day: Optional[int] = None,
    ) -> bool:
        if not now > as_utc(observed_period_end):
            return False

        db = self._get_db()
        # Rows created before anchors were stored fall back to period_end's day
        anchor_day = anchor_day or as_utc(observed_period_end).day
        new_start, new_end = next_period_window(observed_period_end, now, anchor_day=anchor_day)
        result = await db.usage_metrics.update_one(
            {"account_id": account_id, "period_end": observed_period_end},
            {
                "$set": {
                    "responses_count": 0,
                    "api_calls_count": 0,
                    "period_start": new_start,
                    "period_end": new_end,
                    "period_anchor_day": anchor_day,
                    "updated_at": now,
                }
            },
        )
        if result.modified_count == 0:
            return False

        logger.info(f"Rolled over usage period for {account_id}: {new_start.isoformat()} -> {new_end.isoformat()}")
        return True

    async def reset_all_elapsed_periods(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Sweep every row whose period has ended and roll it over.

        Safe to run while a previous sweep is still going: rows already
        rolled over no longer match the period_end filter.
        """
        db = self._get_db()
        now = now or datetime.now(timezone.utc)

        summary = {"scanned": 0, "rolled_over": 0, "skipped": 0, "failed": 0}
        cursor = db.usage_metrics.find(
            {"period_end": {"$lt": now}},
            {"_id": 0, "account_id": 1, "period_end": 1, "period_anchor_day": 1},
        )
        async for row in cursor:
            summary["scanned"] += 1
            account_id = row.get("account_id")
            try:
                if await self._rollover_row(
                    account_id, row["period_end"], now, anchor_day=row.get("period_anchor_day")
                ):
                    summary["rolled_over"] += 1
                else:
                    summary["skipped"] += 1
            except Exception as e:
                summary["failed"] += 1
                logger.error(f"Usage rollover failed for {account_id}: {e}")

        logger.info(
            f"Usage rollover sweep: {summary['rolled_over']} rolled over, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
        return summary


# Singleton instance
usage_metering_service = UsageMeteringService()
