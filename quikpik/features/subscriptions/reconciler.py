"""
Webhook reconciler.

Consumes normalized provider events and is the sole authority that moves
local state to match the provider. Delivery is at-least-once and unordered:
- the billing_events ledger dedups by provider event id before anything runs
- ordering is handled by the transition rules (stale events change nothing)
- failed processing is kept for retry with exponential backoff
- a claim is a lease: a "processing" row older than
  WEBHOOK_CLAIM_TIMEOUT_SECONDS belongs to a dead worker and is taken over

Outcomes: applied, recorded, duplicate, stale, unmatched, ignored, failed.
"""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.exc import IntegrityError

from quikpik.core.config import settings
from quikpik.core.database import billing_events, get_db_session
from quikpik.core.logging import log_event
from quikpik.core.metrics import billing_webhook_events_total
from quikpik.features.billing.provider import ProviderEvent, ProviderEventType
from quikpik.features.subscriptions import store


DUPLICATE = "duplicate"
UNMATCHED = "unmatched"
FAILED = "failed"
PROCESSING = "processing"

_NOT_ACCOUNT_EVENTS = (ProviderEventType.CHECKOUT_COMPLETED, ProviderEventType.OTHER)


def _compute_backoff(attempt_count: int) -> timedelta:
    """Exponential backoff with floor 30s and cap 1 hour."""
    base = max(30, 2 ** attempt_count)
    seconds = min(base, 3600)
    return timedelta(seconds=seconds)


def _payload_hash(payload: Dict[str, Any]) -> str:
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def _claim(event: ProviderEvent, now: datetime) -> bool:
    """
    Insert the ledger row for this event.

    Returns False when another delivery already owns it. A delivery whose
    earlier processing failed, or whose claim has expired, can be taken over.
    """
    payload = event.to_payload()
    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    provider_event_id=event.event_id,
                    event_type=event.event_type.value,
                    payload_hash=_payload_hash(payload),
                    payload=payload,
                    received_at=now,
                    processed=False,
                    outcome=PROCESSING,
                    claimed_at=now,
                    attempt_count=0,
                )
            )
    except IntegrityError:
        return _reclaim(event.event_id, now)
    return True


def _claim_expired(now: datetime):
    cutoff = now - timedelta(seconds=settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS)
    return and_(
        billing_events.c.outcome == PROCESSING,
        func.coalesce(billing_events.c.claimed_at, billing_events.c.received_at) <= cutoff,
    )


def _reclaim(event_id: str, now: datetime) -> bool:
    """Take over an unprocessed event that failed or whose claim expired."""
    with get_db_session() as session:
        result = session.execute(
            update(billing_events)
            .where(
                and_(
                    billing_events.c.provider_event_id == event_id,
                    billing_events.c.processed == False,  # noqa: E712
                    or_(billing_events.c.outcome == FAILED, _claim_expired(now)),
                )
            )
            .values(outcome=PROCESSING, claimed_at=now)
        )
        return result.rowcount == 1


def _mark_done(event_id: str, outcome: str, account_id: Optional[str], now: datetime) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.provider_event_id == event_id)
            .values(
                processed=True,
                processed_at=now,
                outcome=outcome,
                account_id=account_id,
                error=None,
                next_attempt_at=None,
            )
        )


def _mark_failed(event_id: str, error: str, now: datetime) -> bool:
    """Record a processing failure. Returns True when the retry budget is spent."""
    with get_db_session() as session:
        row = session.execute(
            select(billing_events.c.attempt_count).where(billing_events.c.provider_event_id == event_id)
        ).fetchone()
        attempt = int(row.attempt_count or 0) + 1 if row else 1
        exhausted = attempt >= settings.WEBHOOK_MAX_ATTEMPTS
        session.execute(
            update(billing_events)
            .where(billing_events.c.provider_event_id == event_id)
            .values(
                processed=exhausted,
                processed_at=now if exhausted else None,
                outcome=FAILED,
                error=error[:2000],
                attempt_count=attempt,
                next_attempt_at=None if exhausted else now + _compute_backoff(attempt),
            )
        )
    return exhausted


def _reconcile(event: ProviderEvent, now: datetime) -> Tuple[str, Optional[str], Optional[str]]:
    """Returns (outcome, account_id, reason)."""
    if event.event_type in _NOT_ACCOUNT_EVENTS:
        return "ignored", None, f"event type {event.provider_type or event.event_type.value} not reconciled"

    if not event.customer_ref:
        return UNMATCHED, None, "event has no customer"
    account = store.find_by_customer_ref(event.customer_ref)
    if account is None:
        return UNMATCHED, None, f"no account for customer {event.customer_ref}"

    transition = store.apply_reconciled_state(account.account_id, event, now=now)
    return transition.outcome, account.account_id, transition.reason


def _ledger_write_failed(event: ProviderEvent, step: str, error: Exception) -> None:
    # The row stays "processing" and is picked up again once its claim expires
    log_event(
        "error",
        "webhook.ledger_write_failed",
        event_type=event.event_type.value,
        error_code="ledger_write_failed",
        extra={
            "provider_event_id": event.event_id,
            "step": step,
            "error_message": str(error),
            "claim_timeout_seconds": settings.WEBHOOK_CLAIM_TIMEOUT_SECONDS,
        },
    )


def _run(event: ProviderEvent, now: datetime) -> str:
    try:
        outcome, account_id, reason = _reconcile(event, now)
    except Exception as e:
        try:
            exhausted = _mark_failed(event.event_id, f"{type(e).__name__}: {e}", now)
        except Exception as ledger_error:
            _ledger_write_failed(event, "mark_failed", ledger_error)
            exhausted = False
        billing_webhook_events_total.inc(labels={"event_type": event.event_type.value, "outcome": FAILED})
        log_event(
            "error",
            "webhook.failed",
            event_type=event.event_type.value,
            error_code=getattr(e, "code", "internal_error"),
            extra={
                "provider_event_id": event.event_id,
                "error_message": str(e),
                "retry_exhausted": exhausted,
            },
        )
        return FAILED

    try:
        _mark_done(event.event_id, outcome, account_id, now)
    except Exception as ledger_error:
        # The state change is committed; a replay after the claim expires
        # finds it already applied and changes nothing
        _ledger_write_failed(event, "mark_done", ledger_error)
    billing_webhook_events_total.inc(labels={"event_type": event.event_type.value, "outcome": outcome})
    level = "warning" if outcome == UNMATCHED else "info"
    log_event(
        level,
        f"webhook.{outcome}",
        account_id=account_id,
        event_type=event.event_type.value,
        extra={
            "provider_event_id": event.event_id,
            "customer_ref": event.customer_ref,
            "subscription_ref": event.subscription_ref,
            "reason": reason,
        },
    )
    return outcome


def process_event(event: ProviderEvent, now: Optional[datetime] = None) -> str:
    """
    Reconcile one verified provider event.

    Safe to call any number of times for the same event id.
    """
    ts = now or datetime.now(timezone.utc)
    if not _claim(event, ts):
        billing_webhook_events_total.inc(labels={"event_type": event.event_type.value, "outcome": DUPLICATE})
        log_event(
            "info",
            "webhook.duplicate",
            event_type=event.event_type.value,
            extra={"provider_event_id": event.event_id},
        )
        return DUPLICATE
    return _run(event, ts)


def retry_failed_events(now: Optional[datetime] = None, limit: int = 50) -> Dict[str, Any]:
    """Re-run due failed events, and abandoned claims, from their stored payload."""
    ts = now or datetime.now(timezone.utc)
    with get_db_session() as session:
        rows = session.execute(
            select(billing_events.c.provider_event_id, billing_events.c.payload)
            .where(
                and_(
                    billing_events.c.processed == False,  # noqa: E712
                    or_(
                        and_(billing_events.c.outcome == FAILED, billing_events.c.next_attempt_at <= ts),
                        _claim_expired(ts),
                    ),
                )
            )
            .order_by(billing_events.c.received_at)
            .limit(limit)
        ).fetchall()

    stats = {"due": len(rows), "succeeded": 0, "failed": 0, "skipped": 0}
    for row in rows:
        if not _reclaim(row.provider_event_id, ts):
            stats["skipped"] += 1
            continue
        event = ProviderEvent.from_payload(row.payload)
        outcome = _run(event, ts)
        if outcome == FAILED:
            stats["failed"] += 1
        else:
            stats["succeeded"] += 1

    log_event("info", "webhook.retry_run", extra=stats)
    return stats
