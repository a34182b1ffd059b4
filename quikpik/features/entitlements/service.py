"""
quikpik/features/entitlements/service.py

Entitlement guard.

Handles:
- can_perform: is one more unit of a limited resource allowed
- enforce: same check, raising LimitExceededError for feature gates
- plan limit summaries for the UI

Read-only: never writes subscription state. A record that is not active, or
is active past its period end without a reconciled renewal, gets free-tier
limits.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from quikpik.core.config import settings
from quikpik.core.errors import LimitExceededError, ValidationError
from quikpik.core.logging import log_event
from quikpik.features.plans.service import get_plan
from quikpik.features.subscriptions import store
from quikpik.features.usage.service import get_usage_count
from quikpik.models.plan import PlanLimits, RESOURCES, Tier, UNLIMITED
from quikpik.models.subscription import AccountSubscription, SubscriptionStatus


# Feature action -> limited resource
ACTION_RESOURCE_MAP = {
    "add_product": "products",
    "send_broadcast": "broadcasts",
    "invite_team_member": "team_members",
    "create_custom_group": "custom_groups",
}


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _resource_for(action: str) -> str:
    if action in ACTION_RESOURCE_MAP:
        return ACTION_RESOURCE_MAP[action]
    if action in RESOURCES:
        return action
    raise ValidationError(f"Unknown action {action!r}", details={"allowed": sorted(ACTION_RESOURCE_MAP)})


def effective_tier(record: AccountSubscription, now: Optional[datetime] = None) -> Tier:
    """Tier whose limits apply right now."""
    if record.status != SubscriptionStatus.ACTIVE:
        return Tier.FREE
    if record.is_stale(_normalize_now(now)):
        return Tier.FREE
    return record.current_tier


def effective_limits(account_id: str, now: Optional[datetime] = None) -> PlanLimits:
    return get_plan(effective_tier(store.get(account_id), now)).limits


def can_perform(account_id: str, action: str, usage_count: int, now: Optional[datetime] = None) -> bool:
    """True when usage_count is below the limit or the limit is unlimited."""
    resource = _resource_for(action)
    limit = effective_limits(account_id, now).for_resource(resource)
    return limit == UNLIMITED or usage_count < limit


def enforce(account_id: str, action: str, usage_count: Optional[int] = None, now: Optional[datetime] = None) -> None:
    """
    Gate a feature action.

    Usage is read from the usage ledger when the caller does not pass it.

    Raises:
        LimitExceededError: with currentPlan, limit, currentCount and upgradeUrl
    """
    resource = _resource_for(action)
    ts = _normalize_now(now)
    record = store.get(account_id)
    tier = effective_tier(record, ts)
    limit = get_plan(tier).limits.for_resource(resource)
    count = usage_count if usage_count is not None else get_usage_count(account_id, resource, ts)

    if limit == UNLIMITED or count < limit:
        return

    details = {
        "currentPlan": tier.value,
        "limit": limit,
        "currentCount": count,
        "resource": resource,
        "upgradeUrl": settings.UPGRADE_URL,
    }
    log_event(
        "info",
        "entitlement.blocked",
        account_id=account_id,
        error_code="limit_exceeded",
        extra={"action": action, "plan_tier": tier.value, "limit": limit, "current_count": count},
    )
    raise LimitExceededError(
        f"You've reached the {resource.replace('_', ' ')} limit for your {tier.value} plan",
        details=details,
    )


def get_plan_limits(account_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Usage, limit and percent used per resource, for UI progress bars."""
    ts = _normalize_now(now)
    record = store.get(account_id)
    tier = effective_tier(record, ts)
    limits = get_plan(tier).limits

    resources: Dict[str, Any] = {}
    for resource in RESOURCES:
        limit = limits.for_resource(resource)
        usage = get_usage_count(account_id, resource, ts)
        if limit == UNLIMITED:
            percent = 0.0
        elif limit == 0:
            percent = 100.0
        else:
            percent = round(min(100.0, usage * 100.0 / limit), 1)
        resources[resource] = {
            "usage": usage,
            "limit": limit,
            "unlimited": limit == UNLIMITED,
            "percentUsed": percent,
        }

    return {
        "tier": record.current_tier.value,
        "effectiveTier": tier.value,
        "status": record.status.value,
        "degraded": tier != record.current_tier,
        "resources": resources,
    }
