"""
Failed webhook retry tests.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from quikpik.core.config import settings
from quikpik.core.database import billing_events, get_db_session
from quikpik.features.subscriptions import reconciler, store
from quikpik.features.subscriptions.reconciler import _compute_backoff
from quikpik.models.plan import Tier

T0 = datetime(2031, 3, 15, 13, 0, tzinfo=timezone.utc)


def _row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(billing_events).where(billing_events.c.provider_event_id == event_id)
        ).fetchone()


def _fail_once(monkeypatch, event):
    real_apply = store.apply_reconciled_state

    def boom(*args, **kwargs):
        raise RuntimeError("transient")

    monkeypatch.setattr(store, "apply_reconciled_state", boom)
    assert reconciler.process_event(event, now=T0) == "failed"
    monkeypatch.setattr(store, "apply_reconciled_state", real_apply)


def test_backoff_floor_and_cap():
    assert _compute_backoff(0) == timedelta(seconds=30)
    assert _compute_backoff(3) == timedelta(seconds=30)
    assert _compute_backoff(6) == timedelta(seconds=64)
    assert _compute_backoff(20) == timedelta(hours=1)


def test_due_failed_event_is_replayed_from_stored_payload(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    _fail_once(monkeypatch, subscription_event("evt_1", tier=Tier.PREMIUM))

    not_yet = reconciler.retry_failed_events(now=T0 + timedelta(seconds=10))
    assert not_yet["due"] == 0
    assert store.get("acct_1").current_tier == Tier.STANDARD

    stats = reconciler.retry_failed_events(now=T0 + timedelta(seconds=31))
    assert stats == {"due": 1, "succeeded": 1, "failed": 0, "skipped": 0}
    assert store.get("acct_1").current_tier == Tier.PREMIUM
    row = _row("evt_1")
    assert row.processed is True
    assert row.outcome == "applied"


def test_retry_budget_exhausted_marks_event_dead(monkeypatch, paid_account, subscription_event):
    monkeypatch.setattr(settings, "WEBHOOK_MAX_ATTEMPTS", 2)
    paid_account(tier=Tier.STANDARD)

    def boom(*args, **kwargs):
        raise RuntimeError("still broken")

    monkeypatch.setattr(store, "apply_reconciled_state", boom)
    assert reconciler.process_event(subscription_event("evt_1", tier=Tier.PREMIUM), now=T0) == "failed"

    stats = reconciler.retry_failed_events(now=T0 + timedelta(minutes=5))
    assert stats["failed"] == 1

    row = _row("evt_1")
    assert row.attempt_count == 2
    assert row.processed is True
    assert row.outcome == "failed"
    assert row.next_attempt_at is None

    # Dead events are not picked up again
    assert reconciler.retry_failed_events(now=T0 + timedelta(days=1))["due"] == 0


def test_replay_resolves_tier_from_price_configured_after_failure(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    event = subscription_event("evt_1", tier=None, price_ref="price_new_premium")
    assert reconciler.process_event(event, now=T0) == "failed"
    assert _row("evt_1").payload["subscription"]["tier"] is None

    monkeypatch.setattr(settings, "STRIPE_PRICE_PREMIUM", "price_new_premium")
    stats = reconciler.retry_failed_events(now=T0 + timedelta(seconds=31))

    assert stats["succeeded"] == 1
    assert store.get("acct_1").current_tier == Tier.PREMIUM
    assert _row("evt_1").outcome == "applied"


def _fail_with_ledger_down(monkeypatch, event):
    real_apply = store.apply_reconciled_state
    real_mark_failed = reconciler._mark_failed

    def boom(*args, **kwargs):
        raise RuntimeError("transient")

    def ledger_down(*args, **kwargs):
        raise OperationalError("UPDATE billing_events", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "apply_reconciled_state", boom)
    monkeypatch.setattr(reconciler, "_mark_failed", ledger_down)
    assert reconciler.process_event(event, now=T0) == "failed"
    monkeypatch.setattr(store, "apply_reconciled_state", real_apply)
    monkeypatch.setattr(reconciler, "_mark_failed", real_mark_failed)


def test_redelivery_takes_over_claim_left_by_failed_ledger_write(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    event = subscription_event("evt_1", tier=Tier.PREMIUM)
    _fail_with_ledger_down(monkeypatch, event)

    row = _row("evt_1")
    assert row.outcome == "processing"
    assert row.processed is False

    # Still inside the claim: another worker may own it
    assert reconciler.process_event(event, now=T0 + timedelta(seconds=60)) == "duplicate"
    assert store.get("acct_1").current_tier == Tier.STANDARD

    expired = T0 + timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS + 1)
    assert reconciler.process_event(event, now=expired) == "applied"
    assert store.get("acct_1").current_tier == Tier.PREMIUM
    assert _row("evt_1").processed is True


def test_retry_picks_up_abandoned_claims(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    _fail_with_ledger_down(monkeypatch, subscription_event("evt_1", tier=Tier.PREMIUM))

    assert reconciler.retry_failed_events(now=T0 + timedelta(seconds=60))["due"] == 0

    expired = T0 + timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS + 1)
    stats = reconciler.retry_failed_events(now=expired)
    assert stats == {"due": 1, "succeeded": 1, "failed": 0, "skipped": 0}
    assert store.get("acct_1").current_tier == Tier.PREMIUM
    assert _row("evt_1").outcome == "applied"


def test_failed_done_write_keeps_applied_state_and_is_finished_later(monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    real_mark_done = reconciler._mark_done

    def ledger_down(*args, **kwargs):
        raise OperationalError("UPDATE billing_events", {}, Exception("database is locked"))

    monkeypatch.setattr(reconciler, "_mark_done", ledger_down)
    assert reconciler.process_event(subscription_event("evt_1", tier=Tier.PREMIUM), now=T0) == "applied"
    monkeypatch.setattr(reconciler, "_mark_done", real_mark_done)
    assert _row("evt_1").outcome == "processing"

    expired = T0 + timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS + 1)
    reconciler.retry_failed_events(now=expired)

    assert store.get("acct_1").current_tier == Tier.PREMIUM
    assert _row("evt_1").processed is True
