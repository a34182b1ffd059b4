"""
User-initiated subscription commands: upgrade, downgrade, cancel.

Upgrades never change local entitlements here; the account stays on its tier
until the provider's event is reconciled (or the checkout is confirmed after
redirect). Downgrades are always deferred to period end.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from quikpik.core.config import settings
from quikpik.core.errors import NotFoundError, ValidationError
from quikpik.core.logging import log_event
from quikpik.features.billing.service import require_gateway
from quikpik.features.plans.service import get_plan, is_higher_tier, parse_tier, tier_for_price_ref
from quikpik.features.subscriptions import store
from quikpik.models.plan import Tier
from quikpik.models.subscription import AccountSubscription, SubscriptionStatus


@dataclass(frozen=True)
class UpgradeResult:
    url: str
    # "checkout" redirects to payment; "plan_change" swapped the price in place
    mode: str


def _has_live_subscription(record: AccountSubscription) -> bool:
    return (
        record.provider_subscription_ref is not None
        and record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE)
    )


def upgrade(account_id: str, target_tier: Union[str, Tier], email: Optional[str] = None) -> UpgradeResult:
    """
    Start an upgrade to a more expensive tier and return where to send the user.

    Free accounts go through hosted checkout. Accounts that already pay have
    their existing subscription's price swapped with proration, so they are
    never billed for two subscriptions.
    """
    target = parse_tier(target_tier)
    record = store.get(account_id)
    if not is_higher_tier(target, record.current_tier):
        raise ValidationError(
            f"{target.value} is not an upgrade from {record.current_tier.value}",
            details={"currentTier": record.current_tier.value, "targetTier": target.value},
        )
    price_ref = get_plan(target).provider_price_ref
    if not price_ref:
        raise ValidationError(f"No provider price configured for {target.value}")

    gateway = require_gateway()

    if _has_live_subscription(record):
        gateway.change_subscription_price(record.provider_subscription_ref, price_ref, prorate=True)
        log_event(
            "info",
            "subscription.upgrade_requested",
            account_id=account_id,
            extra={"from_tier": record.current_tier.value, "to_tier": target.value, "mode": "plan_change"},
        )
        return UpgradeResult(url=settings.PLAN_CHANGED_URL, mode="plan_change")

    customer_ref = record.provider_customer_ref
    if not customer_ref:
        customer_ref = gateway.ensure_customer(account_id, email)
        store.attach_customer_ref(account_id, customer_ref)

    url = gateway.start_checkout(
        customer_ref,
        price_ref,
        account_id=account_id,
        success_url=settings.CHECKOUT_SUCCESS_URL,
        cancel_url=settings.CHECKOUT_CANCEL_URL,
    )
    log_event(
        "info",
        "subscription.upgrade_requested",
        account_id=account_id,
        extra={"from_tier": record.current_tier.value, "to_tier": target.value, "mode": "checkout"},
    )
    return UpgradeResult(url=url, mode="checkout")


def upgrade_to_price(account_id: str, price_ref: str, email: Optional[str] = None) -> UpgradeResult:
    """Upgrade addressed by provider price ref, as the checkout endpoint receives it."""
    tier = tier_for_price_ref(price_ref)
    if tier is None:
        raise ValidationError(f"Unknown price: {price_ref!r}", details={"priceRef": price_ref})
    return upgrade(account_id, tier, email=email)


def downgrade(account_id: str, target_tier: Union[str, Tier]) -> AccountSubscription:
    """
    Schedule a move to a cheaper tier at period end.

    To free: the provider subscription is set to cancel at period end.
    To a cheaper paid tier: the price change is scheduled for period end.
    Either way the account keeps its current limits until then.
    """
    target = parse_tier(target_tier)
    record = store.get(account_id)

    if record.current_tier == Tier.FREE or not record.provider_subscription_ref:
        raise ValidationError("Account has no paid subscription to downgrade")
    if not is_higher_tier(record.current_tier, target):
        raise ValidationError(
            f"{target.value} is not a downgrade from {record.current_tier.value}",
            details={"currentTier": record.current_tier.value, "targetTier": target.value},
        )
    if record.pending_downgrade_target is not None:
        if record.pending_downgrade_target == target:
            return record
        raise ValidationError(
            f"A downgrade to {record.pending_downgrade_target.value} is already scheduled",
            details={"pendingDowngradeTarget": record.pending_downgrade_target.value},
        )

    gateway = require_gateway()
    if target == Tier.FREE:
        effective = gateway.schedule_cancellation(record.provider_subscription_ref)
    else:
        price_ref = get_plan(target).provider_price_ref
        if not price_ref:
            raise ValidationError(f"No provider price configured for {target.value}")
        effective = gateway.change_subscription_price(record.provider_subscription_ref, price_ref, prorate=False)

    updated = store.apply_scheduled_downgrade(account_id, target, effective)
    log_event(
        "info",
        "subscription.downgrade_scheduled",
        account_id=account_id,
        extra={
            "from_tier": record.current_tier.value,
            "to_tier": target.value,
            "effective_date": updated.current_period_end.isoformat() if updated.current_period_end else None,
        },
    )
    return updated


def cancel(account_id: str) -> AccountSubscription:
    """Cancel at period end; same as downgrading to free."""
    return downgrade(account_id, Tier.FREE)


def confirm_checkout(account_id: str, session_ref: str) -> AccountSubscription:
    """
    Apply a completed, paid checkout right after the redirect back.

    Only the provider's own answer about the session is trusted; the webhook
    still arrives later and overwrites with absolute values.
    """
    if not session_ref:
        raise ValidationError("sessionId is required")
    record = store.get(account_id)
    gateway = require_gateway()
    confirmation = gateway.get_checkout_session(session_ref)

    owner_matches = (
        confirmation.account_id == account_id
        or (record.provider_customer_ref is not None and confirmation.customer_ref == record.provider_customer_ref)
    )
    if not owner_matches:
        raise NotFoundError("Checkout session not found")
    if not (confirmation.complete and confirmation.paid):
        raise ValidationError(
            "Checkout has not completed yet",
            details={"complete": confirmation.complete, "paid": confirmation.paid},
        )
    snapshot = confirmation.subscription
    if snapshot is None or snapshot.tier is None:
        raise ValidationError("Checkout session has no subscription for a known plan")
    if snapshot.status != SubscriptionStatus.ACTIVE:
        # Provider says not active yet; leave it to the webhook
        return record

    if record.provider_customer_ref is None and confirmation.customer_ref:
        store.attach_customer_ref(account_id, confirmation.customer_ref)

    updated = store.apply_optimistic_upgrade(
        account_id,
        snapshot.tier,
        snapshot.subscription_ref,
        current_period_start=snapshot.current_period_start,
        current_period_end=snapshot.current_period_end,
    )
    log_event(
        "info",
        "subscription.checkout_confirmed",
        account_id=account_id,
        extra={"to_tier": snapshot.tier.value, "subscription_ref": snapshot.subscription_ref},
    )
    return updated


def terminate(account_id: str, reason: Optional[str] = None) -> AccountSubscription:
    """
    End the provider subscription immediately (abuse handling).

    Local state follows when the provider's deletion event is reconciled.
    """
    record = store.get(account_id)
    if not record.provider_subscription_ref:
        raise ValidationError("Account has no provider subscription to terminate")
    require_gateway().cancel_immediately(record.provider_subscription_ref)
    log_event(
        "warning",
        "subscription.terminated",
        account_id=account_id,
        extra={
            "subscription_ref": record.provider_subscription_ref,
            "reason": reason,
            "requested_at": datetime.now(timezone.utc).isoformat(),
        },
    )
    return record
