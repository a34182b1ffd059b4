"""
Prometheus scrape endpoint.

Counters accumulate in-process; the ledger and subscription gauges are read
from the database on every scrape so all workers report the same numbers.
"""
import logging

from fastapi import APIRouter, Response
from sqlalchemy import and_, func, select
from sqlalchemy.exc import SQLAlchemyError

from quikpik.core.database import account_subscriptions, billing_events, get_db_session
from quikpik.core.metrics import (
    METRICS,
    billing_webhook_backlog,
    billing_webhook_dead_events,
    subscription_accounts,
)

logger = logging.getLogger("quikpik")

router = APIRouter(tags=["metrics"])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"

# Unprocessed ledger outcomes always exported, so an empty backlog reads 0
BACKLOG_OUTCOMES = ("failed", "processing")


def refresh_gauges() -> None:
    with get_db_session() as session:
        backlog = dict(
            session.execute(
                select(billing_events.c.outcome, func.count())
                .where(billing_events.c.processed == False)  # noqa: E712
                .group_by(billing_events.c.outcome)
            ).fetchall()
        )
        dead = session.execute(
            select(func.count()).select_from(billing_events).where(
                and_(
                    billing_events.c.processed == True,  # noqa: E712
                    billing_events.c.outcome == "failed",
                )
            )
        ).scalar_one()
        accounts = session.execute(
            select(account_subscriptions.c.current_tier, account_subscriptions.c.status, func.count())
            .group_by(account_subscriptions.c.current_tier, account_subscriptions.c.status)
        ).fetchall()

    for outcome in BACKLOG_OUTCOMES:
        backlog.setdefault(outcome, 0)
    billing_webhook_backlog.replace(({"outcome": outcome}, count) for outcome, count in backlog.items())
    billing_webhook_dead_events.set(dead)
    subscription_accounts.replace(({"tier": tier, "status": status}, count) for tier, status, count in accounts)


@router.get("/metrics")
def metrics_endpoint():
    try:
        refresh_gauges()
    except SQLAlchemyError as e:
        # Counters are still worth scraping while the database is down
        logger.warning(f"[metrics] gauge refresh failed: {e}")
    return Response(content=METRICS.export_prometheus(), media_type=PROMETHEUS_CONTENT_TYPE)
