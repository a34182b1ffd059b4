"""
Subscription API routes.

- GET  /subscriptions/current: record + resolved plan
- GET  /subscriptions/plans: catalog, cheapest first
- GET  /subscriptions/plan-limits: usage vs limits for progress bars
- GET  /subscriptions/history: audit trail, newest first
- POST /subscriptions/create-checkout-session: start an upgrade
- POST /subscriptions/confirm-checkout: apply a paid checkout after redirect
- POST /subscriptions/downgrade: schedule a downgrade at period end
- POST /subscriptions/cancel: schedule cancellation at period end
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from quikpik.core.auth import Principal, get_current_account
from quikpik.features.billing.service import billing_enabled
from quikpik.features.entitlements.service import effective_tier, get_plan_limits
from quikpik.features.plans.service import get_plan, list_plans
from quikpik.features.subscriptions import audit, commands, store
from quikpik.models.audit import AuditEntry
from quikpik.models.base import CamelModel
from quikpik.models.plan import PlanTier, Tier
from quikpik.models.subscription import AccountSubscription


router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


class CurrentSubscriptionResponse(CamelModel):
    subscription: AccountSubscription
    plan: PlanTier
    effective_tier: Tier
    stale: bool
    billing_enabled: bool


class CheckoutRequest(CamelModel):
    price_ref: str


class CheckoutResponse(CamelModel):
    url: str
    mode: str


class ConfirmCheckoutRequest(CamelModel):
    session_id: str


class DowngradeRequest(CamelModel):
    target_tier: str


class ScheduledChangeResponse(CamelModel):
    subscription: AccountSubscription
    effective_date: Optional[datetime] = None
    message: str


@router.get("/current", response_model=CurrentSubscriptionResponse)
def get_current(principal: Principal = Depends(get_current_account)):
    now = datetime.now(timezone.utc)
    record = store.get(principal.account_id)
    return CurrentSubscriptionResponse(
        subscription=record,
        plan=get_plan(record.current_tier),
        effective_tier=effective_tier(record, now),
        stale=record.is_stale(now),
        billing_enabled=billing_enabled(),
    )


@router.get("/plans", response_model=List[PlanTier])
def get_plans():
    return list_plans()


@router.get("/plan-limits")
def plan_limits(principal: Principal = Depends(get_current_account)) -> Dict[str, Any]:
    return get_plan_limits(principal.account_id)


@router.get("/history", response_model=List[AuditEntry])
def history(
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_account),
):
    return audit.get_history(principal.account_id, limit=limit)


@router.post("/create-checkout-session", response_model=CheckoutResponse)
def create_checkout_session(request: CheckoutRequest, principal: Principal = Depends(get_current_account)):
    """
    Start an upgrade to the tier behind priceRef.

    Returns the URL to send the user to. Nothing changes locally until the
    provider confirms.

    Errors:
        400: Unknown price, or not an upgrade
        402: Provider rejected the request
        503: Billing disabled, or provider temporarily unavailable (retryable)
    """
    result = commands.upgrade_to_price(principal.account_id, request.price_ref, email=principal.email)
    return CheckoutResponse(url=result.url, mode=result.mode)


@router.post("/confirm-checkout", response_model=CurrentSubscriptionResponse)
def confirm_checkout(request: ConfirmCheckoutRequest, principal: Principal = Depends(get_current_account)):
    now = datetime.now(timezone.utc)
    record = commands.confirm_checkout(principal.account_id, request.session_id)
    return CurrentSubscriptionResponse(
        subscription=record,
        plan=get_plan(record.current_tier),
        effective_tier=effective_tier(record, now),
        stale=record.is_stale(now),
        billing_enabled=True,
    )


@router.post("/downgrade", response_model=ScheduledChangeResponse)
def downgrade(request: DowngradeRequest, principal: Principal = Depends(get_current_account)):
    record = commands.downgrade(principal.account_id, request.target_tier)
    target = record.pending_downgrade_target.value if record.pending_downgrade_target else request.target_tier
    return ScheduledChangeResponse(
        subscription=record,
        effective_date=record.current_period_end,
        message=f"Your plan will change to {target} at the end of the current billing period.",
    )


@router.post("/cancel", response_model=ScheduledChangeResponse)
def cancel(principal: Principal = Depends(get_current_account)):
    record = commands.cancel(principal.account_id)
    return ScheduledChangeResponse(
        subscription=record,
        effective_date=record.current_period_end,
        message="Your subscription will end at the end of the current billing period.",
    )
