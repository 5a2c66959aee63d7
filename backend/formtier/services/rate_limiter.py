"""Per-account, per-capability fixed-window rate limiting.

Limits come from the tier catalog (GUEST 0, FREE 10, PRO 100, ENTERPRISE
unlimited; unknown tiers 0). A window is replaced, not slid, once
``now >= window_reset_at``.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
import logging
import math

from formtier import config
from formtier.models.access import DenialReason, RateLimitResult
from formtier.models.tiers import Capability, Tier
from formtier.services.ephemeral_store import EphemeralStore, ttl_store
from formtier.services.tier_catalog import tier_catalog, TierCatalog

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        store: Optional[EphemeralStore] = None,
        window_seconds: Optional[int] = None,
        catalog: Optional[TierCatalog] = None,
    ):
        self.window_seconds = window_seconds or config.RATE_LIMIT_WINDOW_SECONDS
        self.store = store if store is not None else ttl_store(self.window_seconds)
        self.catalog = catalog or tier_catalog

    @staticmethod
    def _key(account_id: Optional[str], capability: Union[Capability, str]) -> str:
        return f"{account_id or 'guest'}:{getattr(capability, 'value', capability)}"

    async def check_rate_limit(
        self,
        account_id: Optional[str],
        capability: Union[Capability, str],
        tier: Union[Tier, str, None],
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Count one call against the window and say whether it may proceed.

        Denied calls are not counted.
        """
        now = now or datetime.now(timezone.utc)
        limit = self.catalog.rate_limit_for(tier)

        if limit is None:
            return RateLimitResult(allowed=True, limit=None, remaining=None)

        window = timedelta(seconds=self.window_seconds)
        outcome = {}

        def consume(entry):
            if entry is None or now >= entry["window_reset_at"]:
                entry = {"count": 0, "window_reset_at": now + window}
            if entry["count"] < limit:
                entry = {"count": entry["count"] + 1, "window_reset_at": entry["window_reset_at"]}
                outcome["allowed"] = True
            else:
                outcome["allowed"] = False
            outcome["count"] = entry["count"]
            outcome["reset_at"] = entry["window_reset_at"]
            return entry

        self.store.update(self._key(account_id, capability), consume)
        reset_at = outcome["reset_at"]

        if outcome["allowed"]:
            return RateLimitResult(
                allowed=True,
                limit=limit,
                remaining=limit - outcome["count"],
                reset_at=reset_at,
            )

        retry_after = max(1, math.ceil((reset_at - now).total_seconds()))
        logger.info(
            f"Rate limit hit: account={account_id} capability={getattr(capability, 'value', capability)} "
            f"tier={getattr(tier, 'value', tier)} limit={limit} retry_after={retry_after}s"
        )
        return RateLimitResult(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=reset_at,
            retry_after=retry_after,
            reason=DenialReason.RATE_LIMITED,
        )

    def reset(self, account_id: Optional[str] = None, capability: Union[Capability, str, None] = None) -> None:
        """Drop window state for one key, one account, or everything."""
        if account_id is None:
            self.store.clear()
        elif capability is None:
            self.store.delete_prefix(f"{account_id}:")
        else:
            self.store.delete(self._key(account_id, capability))


rate_limiter = RateLimiter()
