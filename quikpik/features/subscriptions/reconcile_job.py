"""
Stale-record sweep.

Finds active records whose period ended without a renewal being reconciled,
asks the provider for the subscription's current state and applies it. Until
a record is refreshed the entitlement guard already treats it as free.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert

from quikpik.core.database import billing_job_runs, get_db_session
from quikpik.core.errors import ProviderRejectedError, ProviderUnavailableError
from quikpik.core.logging import log_event
from quikpik.features.billing.provider import ProviderEvent, ProviderEventType, SubscriptionSnapshot
from quikpik.features.subscriptions import store
from quikpik.features.billing.service import require_gateway
from quikpik.models.subscription import SubscriptionStatus

JOB_NAME = "subscriptions.stale_reconcile"
MAX_FETCH_ATTEMPTS = 3
BACKOFF_BASE_SECONDS = 0.5


def _fetch_with_backoff(
    fetch: Callable[[str], SubscriptionSnapshot],
    subscription_ref: str,
    sleep: Callable[[float], None],
) -> SubscriptionSnapshot:
    attempt = 1
    while True:
        try:
            return fetch(subscription_ref)
        except ProviderUnavailableError:
            if attempt >= MAX_FETCH_ATTEMPTS:
                raise
            sleep(BACKOFF_BASE_SECONDS * (2 ** (attempt - 1)))
            attempt += 1


def run_stale_reconcile_job(
    now: Optional[datetime] = None,
    limit: int = 100,
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    started = now or datetime.now(timezone.utc)
    gateway = require_gateway()
    stale = store.list_stale(started, limit=limit)

    refreshed = 0
    unchanged = 0
    unavailable = 0
    rejected = 0
    for record in stale:
        ref = record.provider_subscription_ref
        try:
            snapshot = _fetch_with_backoff(gateway.get_subscription, ref, sleep)
        except ProviderUnavailableError as e:
            unavailable += 1
            log_event("warning", "stale_reconcile.unavailable", account_id=record.account_id,
                      error_code=e.code, extra={"subscription_ref": ref})
            continue
        except ProviderRejectedError as e:
            rejected += 1
            log_event("warning", "stale_reconcile.rejected", account_id=record.account_id,
                      error_code=e.code, extra={"subscription_ref": ref, "error_message": e.message})
            continue

        event_type = ProviderEventType.SUBSCRIPTION_UPDATED
        if snapshot.status == SubscriptionStatus.CANCELED:
            event_type = ProviderEventType.SUBSCRIPTION_DELETED
        event = ProviderEvent(
            event_id=f"sweep-{ref}-{int(started.timestamp())}",
            event_type=event_type,
            occurred_at=started,
            customer_ref=record.provider_customer_ref,
            subscription=snapshot,
            provider_type="stale_reconcile",
        )
        transition = store.apply_reconciled_state(record.account_id, event, audit_event="stale_refresh", now=started)
        if transition.outcome == "applied":
            refreshed += 1
        else:
            unchanged += 1

    stats = {
        "stale_found": len(stale),
        "refreshed": refreshed,
        "unchanged": unchanged,
        "provider_unavailable": unavailable,
        "provider_rejected": rejected,
    }
    finished = datetime.now(timezone.utc)
    with get_db_session() as session:
        session.execute(
            insert(billing_job_runs).values(
                job_name=JOB_NAME,
                started_at=started,
                finished_at=finished,
                status="success" if not unavailable else "partial",
                stats_json=stats,
            )
        )

    log_event("info", "stale_reconcile.complete", extra=stats)
    return {**stats, "timestamp": started.isoformat()}
