"""
Capability Gating Middleware
Server-side enforcement of tier-based capability access and rate limits.
Tier is resolved from the subscription row through the entitlement engine;
the request's tier claim is only a fallback for accounts without one.
"""
from fastapi import HTTPException, Request
from functools import wraps
from typing import Any, Dict, Optional, Union
import logging

from formtier.models.access import AccountIdentity, DenialReason
from formtier.models.tiers import Capability, Tier
from formtier.services.entitlement_service import entitlement_engine
from formtier.services.paywall_tracker import paywall_tracker
from formtier.services.rate_limiter import rate_limiter

logger = logging.getLogger(__name__)


DENIAL_STATUS_CODES: Dict[DenialReason, int] = {
    DenialReason.FORM_NOT_FOUND: 404,

    DenialReason.TIER_INSUFFICIENT: 403,
    DenialReason.UNKNOWN_TIER: 403,
    DenialReason.UNKNOWN_DIMENSION: 403,
    DenialReason.FORM_ARCHIVED: 403,
    DenialReason.SUBSCRIPTION_SUSPENDED: 403,
    DenialReason.BULK_LIMIT_EXCEEDED: 403,

    DenialReason.QUOTA_EXCEEDED: 429,
    DenialReason.FORM_LIMIT_REACHED: 429,
    DenialReason.FIELD_LIMIT_REACHED: 429,
    DenialReason.STORAGE_LIMIT_REACHED: 429,
    DenialReason.RATE_LIMITED: 429,
}


def status_code_for(reason: Optional[Union[DenialReason, str]]) -> int:
    """HTTP status for a denial reason; unrecognised reasons are 403."""
    try:
        return DENIAL_STATUS_CODES.get(DenialReason(reason), 403)
    except ValueError:
        return 403


def raise_for_denial(result: Any, extra: Optional[Dict[str, Any]] = None) -> None:
    """Raise HTTPException for a denied check result; no-op when allowed.

    Works with any result model carrying ``allowed`` / ``reason`` / ``message``.
    """
    if getattr(result, "allowed", True):
        return

    reason = getattr(result, "reason", None)
    detail: Dict[str, Any] = {
        "error_code": getattr(reason, "value", reason),
        "message": getattr(result, "message", None) or "Request denied",
    }
    for field in ("required_tier", "limit", "current", "upgrade_required", "is_grace_period"):
        value = getattr(result, field, None)
        if value is not None:
            detail[field] = value
    upgrade_path = getattr(result, "upgrade_path", None)
    if upgrade_path is not None:
        detail["upgrade_path"] = upgrade_path.model_dump()
        detail["upgrade_required"] = True
    if extra:
        detail.update(extra)

    headers = None
    retry_after = getattr(result, "retry_after", None)
    if retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
        detail["retry_after"] = retry_after

    raise HTTPException(status_code=status_code_for(reason), detail=detail, headers=headers)


def identity_from_request(request: Request) -> Optional[AccountIdentity]:
    """Identity set on request.state.user by the auth layer (dict or model)."""
    user = getattr(request.state, "user", None)
    if user is None:
        return None
    if isinstance(user, AccountIdentity):
        return user
    return AccountIdentity(**user)


def require_capability(capability: Union[Capability, str], rate_limited: bool = False):
    """
    Decorator to enforce tier-based capability access.

    Guests are asked to sign in (401); authenticated accounts below the
    required tier get 403 with upgrade and paywall details; rate-limited
    capabilities answer 429 with Retry-After once the window is spent.
    The resolved tier is left on request.state.tier for the handler.

    Usage:
        @router.post("/extract")
        @require_capability(Capability.AI_EXTRACTION, rate_limited=True)
        async def extract(request: Request):
            ...
    """
    cap_value = str(getattr(capability, "value", capability))

    def decorator(func):
        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            identity = identity_from_request(request)
            account_id = identity.account_id if identity else None

            if account_id:
                tier = await entitlement_engine.resolve_account_tier(
                    account_id, tier_claim=identity.tier_claim
                )
            else:
                tier = Tier.GUEST

            access = entitlement_engine.can_access(tier, capability)
            if not access.allowed:
                if tier == Tier.GUEST:
                    raise HTTPException(401, "Authentication required")

                paywall = paywall_tracker.build_paywall(account_id, capability, access)
                logger.warning(
                    "Capability denied: account_id=%s tier=%s capability=%s required=%s endpoint=%s method=%s",
                    account_id, tier.value, cap_value, access.required_tier, request.url.path, request.method
                )
                raise_for_denial(access, extra={"paywall": paywall.model_dump(mode="json")})

            if rate_limited:
                limit_result = await rate_limiter.check_rate_limit(account_id, capability, tier)
                raise_for_denial(limit_result, extra={"message": "Rate limit exceeded. Try again later."})

            await entitlement_engine.track_usage(account_id, capability)
            request.state.tier = tier
            return await func(request, *args, **kwargs)

        return wrapper
    return decorator
