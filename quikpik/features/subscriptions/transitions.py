"""
Webhook event -> subscription state reducer.

Pure: takes the stored record and one normalized provider event, returns the
record the event implies. The store applies the result under its conditional
update; nothing here touches the database.

Ordering rules:
- An event older than the last applied one is stale and changes nothing,
  except "subscription deleted", which is terminal and always wins.
- A subscription ref that reached canceled is never reanimated; a resubscribe
  arrives with a new ref.
- Subscription events carry absolute state, so re-applying one is a no-op.
- A successful payment is always recorded for the audit trail, even when it
  is old or the account is already active.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from quikpik.core.errors import ValidationError
from quikpik.features.billing.provider import ProviderEvent, ProviderEventType
from quikpik.features.plans.service import is_higher_tier
from quikpik.models.plan import Tier
from quikpik.models.subscription import AccountSubscription, SubscriptionStatus


APPLIED = "applied"
STALE = "stale"
IGNORED = "ignored"
# Matched and audited, but the record itself does not change (routine renewal payments)
RECORDED = "recorded"

_SUBSCRIPTION_EVENTS = (
    ProviderEventType.SUBSCRIPTION_CREATED,
    ProviderEventType.SUBSCRIPTION_UPDATED,
    ProviderEventType.SUBSCRIPTION_DELETED,
)


@dataclass(frozen=True)
class Transition:
    outcome: str
    state: Optional[AccountSubscription] = None
    audit_event: Optional[str] = None
    reason: Optional[str] = None
    # Provider subscription that reached canceled with this event
    ended_ref: Optional[str] = None


def _later(a: Optional[datetime], b: datetime) -> datetime:
    return b if a is None or b > a else a


def reduce_event(current: AccountSubscription, event: ProviderEvent, ref_ended: bool = False) -> Transition:
    """Compute the effect of one provider event on the stored record."""
    ref = event.subscription_ref
    snapshot = event.subscription

    if event.event_type not in _SUBSCRIPTION_EVENTS and event.event_type not in (
        ProviderEventType.PAYMENT_SUCCEEDED,
        ProviderEventType.PAYMENT_FAILED,
    ):
        return Transition(IGNORED, reason=f"unhandled event type {event.provider_type or event.event_type.value}")

    if not ref:
        return Transition(IGNORED, reason="event carries no subscription")

    deleted = event.event_type == ProviderEventType.SUBSCRIPTION_DELETED or (
        snapshot is not None and snapshot.status == SubscriptionStatus.CANCELED
    )
    if deleted:
        return _subscription_ended(current, event, ref)

    if ref_ended:
        return Transition(IGNORED, reason=f"subscription {ref} already ended")

    stale = current.last_event_at is not None and event.occurred_at < current.last_event_at
    if event.event_type == ProviderEventType.PAYMENT_SUCCEEDED:
        return _payment_succeeded(current, event, ref, stale)
    if stale:
        return Transition(STALE, reason="event older than last applied event")

    if event.event_type in (ProviderEventType.SUBSCRIPTION_CREATED, ProviderEventType.SUBSCRIPTION_UPDATED):
        return _subscription_changed(current, event)
    return _payment_failed(current, event, ref)


def _subscription_ended(current: AccountSubscription, event: ProviderEvent, ref: str) -> Transition:
    if current.provider_subscription_ref != ref:
        # Old or foreign subscription; remember it so it can't come back
        return Transition(IGNORED, reason=f"subscription {ref} is not the account's current one", ended_ref=ref)

    state = current.model_copy(update={
        "current_tier": Tier.FREE,
        "status": SubscriptionStatus.CANCELED,
        "provider_subscription_ref": None,
        "current_period_start": None,
        "current_period_end": None,
        "cancel_at_period_end": False,
        "pending_downgrade_target": None,
        "last_event_at": _later(current.last_event_at, event.occurred_at),
    })
    return Transition(APPLIED, state=state, audit_event="canceled", ended_ref=ref)


def _subscription_changed(current: AccountSubscription, event: ProviderEvent) -> Transition:
    snapshot = event.subscription
    if snapshot is None or snapshot.status is None:
        return Transition(IGNORED, reason="subscription not yet active")

    if current.provider_subscription_ref and current.provider_subscription_ref != snapshot.subscription_ref:
        return Transition(
            IGNORED,
            reason=f"account already holds subscription {current.provider_subscription_ref}",
        )

    if snapshot.tier is None:
        # Retried later; fixing the price configuration makes it go through
        raise ValidationError(
            f"Subscription {snapshot.subscription_ref} uses price {snapshot.price_ref!r} which is not in the catalog"
        )

    same_subscription = current.provider_subscription_ref == snapshot.subscription_ref
    pending = None
    if snapshot.cancel_at_period_end:
        pending = Tier.FREE
    elif same_subscription and current.pending_downgrade_target not in (None, Tier.FREE):
        # A deferred paid downgrade stays pending until the price actually changes
        if current.pending_downgrade_target != snapshot.tier:
            pending = current.pending_downgrade_target

    state = current.model_copy(update={
        "current_tier": snapshot.tier,
        "status": snapshot.status,
        "provider_subscription_ref": snapshot.subscription_ref,
        "current_period_start": snapshot.current_period_start,
        "current_period_end": snapshot.current_period_end,
        "cancel_at_period_end": snapshot.cancel_at_period_end,
        "pending_downgrade_target": pending,
        "last_event_at": _later(current.last_event_at, event.occurred_at),
    })

    audit_event = "reconciled"
    if current.current_tier != snapshot.tier and is_higher_tier(snapshot.tier, current.current_tier):
        audit_event = "upgrade_confirmed"
    return Transition(APPLIED, state=state, audit_event=audit_event)


def _payment_failed(current: AccountSubscription, event: ProviderEvent, ref: str) -> Transition:
    if current.provider_subscription_ref != ref:
        return Transition(IGNORED, reason=f"invoice for subscription {ref} which is not current")
    if current.status != SubscriptionStatus.ACTIVE:
        return Transition(IGNORED, reason=f"status already {current.status.value}")
    state = current.model_copy(update={
        "status": SubscriptionStatus.PAST_DUE,
        "last_event_at": _later(current.last_event_at, event.occurred_at),
    })
    return Transition(APPLIED, state=state, audit_event="payment_failed")


def _payment_succeeded(current: AccountSubscription, event: ProviderEvent, ref: str, stale: bool) -> Transition:
    if current.provider_subscription_ref != ref:
        return Transition(IGNORED, reason=f"invoice for subscription {ref} which is not current")
    if current.status != SubscriptionStatus.PAST_DUE or stale:
        reason = "event older than last applied event" if stale else "renewal payment"
        return Transition(RECORDED, audit_event="payment_succeeded", reason=reason)
    state = current.model_copy(update={
        "status": SubscriptionStatus.ACTIVE,
        "last_event_at": _later(current.last_event_at, event.occurred_at),
    })
    return Transition(APPLIED, state=state, audit_event="payment_recovered")
