"""
Webhook reconciler tests: dedup, ordering, unmatched events, failures.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, insert, select

from quikpik.conftest import NOW
from quikpik.core.database import billing_events, get_db_session, subscription_audit_log
from quikpik.core.metrics import billing_webhook_events_total
from quikpik.features.billing.provider import ProviderEventType
from quikpik.features.entitlements.service import can_perform
from quikpik.features.subscriptions import reconciler, store
from quikpik.models.plan import Tier
from quikpik.models.subscription import SubscriptionStatus


def _ledger(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.provider_event_id == event_id)
        ).fetchone()


def _audit_count(account_id="acct_1"):
    with get_db_session() as session:
        return session.execute(
            select(func.count()).select_from(subscription_audit_log).where(
                subscription_audit_log.c.account_id == account_id
            )
        ).scalar()


def test_created_event_attaches_subscription(subscription_event):
    store.attach_customer_ref("acct_1", "cus_123")
    outcome = reconciler.process_event(
        subscription_event("evt_1", ProviderEventType.SUBSCRIPTION_CREATED, tier=Tier.PREMIUM)
    )

    assert outcome == "applied"
    record = store.get("acct_1")
    assert record.current_tier == Tier.PREMIUM
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.provider_subscription_ref == "sub_123"
    assert record.last_event_at == NOW

    row = _ledger("evt_1")
    assert row.processed is True
    assert row.outcome == "applied"
    assert row.account_id == "acct_1"
    assert billing_webhook_events_total.value(
        labels={"event_type": "subscription.created", "outcome": "applied"}
    ) == 1


def test_unmatched_event_is_logged_and_dropped(subscription_event):
    store.get("acct_1")
    outcome = reconciler.process_event(subscription_event("evt_1", customer_ref="cus_unknown"))

    assert outcome == "unmatched"
    assert store.get("acct_1").current_tier == Tier.FREE
    row = _ledger("evt_1")
    assert row.processed is True
    assert row.outcome == "unmatched"
    assert row.next_attempt_at is None


def test_same_event_delivered_twice_applies_once(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    event = subscription_event("evt_cancel", cancel_at_period_end=True)

    assert reconciler.process_event(event) == "applied"
    after_first = store.get("acct_1")
    audits = _audit_count()

    assert reconciler.process_event(event) == "duplicate"
    assert store.get("acct_1") == after_first
    assert _audit_count() == audits
    assert after_first.cancel_at_period_end is True


def test_deleted_event_applied_twice_yields_same_state(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    deleted = subscription_event("evt_del", ProviderEventType.SUBSCRIPTION_DELETED, status=SubscriptionStatus.CANCELED)

    reconciler.process_event(deleted)
    once = store.get("acct_1")
    assert reconciler.process_event(deleted) == "duplicate"
    assert store.get("acct_1") == once

    # Provider resent it under a new event id
    redelivered = subscription_event(
        "evt_del_2", ProviderEventType.SUBSCRIPTION_DELETED, status=SubscriptionStatus.CANCELED,
        occurred_at=NOW + timedelta(seconds=5),
    )
    assert reconciler.process_event(redelivered) == "ignored"
    twice = store.get("acct_1")
    assert twice.model_dump(exclude={"version", "last_event_at"}) == once.model_dump(exclude={"version", "last_event_at"})
    assert twice.status == SubscriptionStatus.CANCELED
    assert twice.current_tier == Tier.FREE
    assert twice.provider_subscription_ref is None


def test_older_created_event_does_not_undo_payment_failure(paid_account, subscription_event, invoice_event):
    paid_account(tier=Tier.PREMIUM)
    assert reconciler.process_event(invoice_event("evt_fail", succeeded=False, occurred_at=NOW + timedelta(minutes=5))) == "applied"

    late_created = subscription_event(
        "evt_created_late", ProviderEventType.SUBSCRIPTION_CREATED, tier=Tier.PREMIUM,
        occurred_at=NOW - timedelta(hours=2),
    )
    assert reconciler.process_event(late_created) == "stale"
    assert store.get("acct_1").status == SubscriptionStatus.PAST_DUE
    assert _ledger("evt_created_late").outcome == "stale"


def test_canceled_subscription_is_not_resurrected(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    reconciler.process_event(subscription_event(
        "evt_del", ProviderEventType.SUBSCRIPTION_DELETED, status=SubscriptionStatus.CANCELED,
        occurred_at=NOW + timedelta(minutes=10),
    ))
    # An update for the same subscription that was emitted later but still says active
    outcome = reconciler.process_event(subscription_event("evt_upd", occurred_at=NOW + timedelta(minutes=20)))

    assert outcome == "ignored"
    record = store.get("acct_1")
    assert record.status == SubscriptionStatus.CANCELED
    assert record.current_tier == Tier.FREE


def test_resubscribe_uses_new_subscription(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    reconciler.process_event(subscription_event(
        "evt_del", ProviderEventType.SUBSCRIPTION_DELETED, status=SubscriptionStatus.CANCELED,
    ))
    outcome = reconciler.process_event(subscription_event(
        "evt_new", ProviderEventType.SUBSCRIPTION_CREATED, subscription_ref="sub_456", tier=Tier.PREMIUM,
        occurred_at=NOW + timedelta(days=1),
    ))

    assert outcome == "applied"
    record = store.get("acct_1")
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.current_tier == Tier.PREMIUM
    assert record.provider_subscription_ref == "sub_456"
    assert store.is_ended("sub_123")
    assert not store.is_ended("sub_456")


def test_payment_failure_degrades_entitlements_not_tier(paid_account, invoice_event):
    paid_account(tier=Tier.PREMIUM)
    assert can_perform("acct_1", "add_product", 10)

    reconciler.process_event(invoice_event("evt_fail", succeeded=False))
    record = store.get("acct_1")
    assert record.status == SubscriptionStatus.PAST_DUE
    assert record.current_tier == Tier.PREMIUM
    assert not can_perform("acct_1", "add_product", 10)
    assert not can_perform("acct_1", "add_product", 3)
    assert can_perform("acct_1", "add_product", 2)

    reconciler.process_event(invoice_event("evt_paid", succeeded=True, occurred_at=NOW + timedelta(minutes=1)))
    assert store.get("acct_1").status == SubscriptionStatus.ACTIVE
    assert can_perform("acct_1", "add_product", 10)


def test_cancel_flag_round_trip(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    reconciler.process_event(subscription_event("evt_1", cancel_at_period_end=True))
    record = store.get("acct_1")
    assert record.pending_downgrade_target == Tier.FREE

    reconciler.process_event(subscription_event("evt_2", cancel_at_period_end=False, occurred_at=NOW + timedelta(minutes=1)))
    record = store.get("acct_1")
    assert record.cancel_at_period_end is False
    assert record.pending_downgrade_target is None


def test_concurrent_delivery_of_in_flight_event_not_applied_twice(paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    event = subscription_event("evt_1", cancel_at_period_end=True)
    # Another worker has claimed the event and is still processing it
    with get_db_session() as session:
        session.execute(
            insert(billing_events).values(
                provider_event_id="evt_1",
                event_type=event.event_type.value,
                payload_hash="x",
                payload=event.to_payload(),
                received_at=datetime.now(timezone.utc),
                processed=False,
                outcome="processing",
                attempt_count=0,
            )
        )

    assert reconciler.process_event(event) == "duplicate"
    assert store.get("acct_1").cancel_at_period_end is False


def test_processing_failure_kept_for_retry(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    event = subscription_event("evt_1", tier=Tier.PREMIUM)

    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    real_apply = store.apply_reconciled_state
    monkeypatch.setattr(store, "apply_reconciled_state", boom)
    now = datetime(2031, 3, 15, 13, 0, tzinfo=timezone.utc)
    assert reconciler.process_event(event, now=now) == "failed"

    row = _ledger("evt_1")
    assert row.processed is False
    assert row.outcome == "failed"
    assert row.attempt_count == 1
    assert "database went away" in row.error
    assert row.next_attempt_at.replace(tzinfo=timezone.utc) == now + timedelta(seconds=30)

    # Provider redelivers after the failure: the event is taken over and applied
    monkeypatch.setattr(store, "apply_reconciled_state", real_apply)
    assert reconciler.process_event(event) == "applied"
    assert store.get("acct_1").current_tier == Tier.PREMIUM
    assert _ledger("evt_1").processed is True


def test_checkout_completed_is_acknowledged_only(subscription_event):
    from quikpik.features.billing.provider import ProviderEvent

    event = ProviderEvent(
        event_id="evt_cs",
        event_type=ProviderEventType.CHECKOUT_COMPLETED,
        occurred_at=NOW,
        customer_ref="cus_123",
        invoice_subscription_ref="sub_123",
    )
    assert reconciler.process_event(event) == "ignored"
    assert _ledger("evt_cs").outcome == "ignored"
