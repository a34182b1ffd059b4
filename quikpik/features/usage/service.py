"""
quikpik/features/usage/service.py

Usage accounting service.

Handles:
- Usage event emission (products added/removed, broadcasts sent, ...)
- Usage counting (sum of deltas)

Broadcasts are counted for the current calendar month; every other resource
over all time.
"""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, func, insert, select

from quikpik.core.database import get_db_session, usage_events
from quikpik.core.errors import ValidationError
from quikpik.models.plan import RESOURCES

MONTHLY_RESOURCES = ("broadcasts",)


def _normalize(ts: Optional[datetime]) -> datetime:
    if ts is None:
        return datetime.now(timezone.utc)
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _check_resource(resource: str) -> None:
    if resource not in RESOURCES:
        raise ValidationError(f"Unknown resource {resource!r}", details={"allowed": list(RESOURCES)})


def emit_usage_event(
    account_id: str,
    resource: str,
    delta: int = 1,
    occurred_at: Optional[datetime] = None,
) -> None:
    """
    Record a usage change.

    Args:
        account_id: Account the usage belongs to
        resource: One of RESOURCES
        delta: +1 when something is created, -1 when it is removed
        occurred_at: Timestamp of usage (defaults to now)
    """
    _check_resource(resource)
    with get_db_session() as session:
        session.execute(
            insert(usage_events).values(
                account_id=account_id,
                resource=resource,
                delta=delta,
                occurred_at=_normalize(occurred_at),
            )
        )


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def get_usage_count(account_id: str, resource: str, now: Optional[datetime] = None) -> int:
    """Current usage of a resource, never below zero."""
    _check_resource(resource)
    ts = _normalize(now)
    conditions = [
        usage_events.c.account_id == account_id,
        usage_events.c.resource == resource,
        usage_events.c.occurred_at <= ts,
    ]
    if resource in MONTHLY_RESOURCES:
        conditions.append(usage_events.c.occurred_at >= _month_start(ts))

    with get_db_session() as session:
        total = session.execute(
            select(func.coalesce(func.sum(usage_events.c.delta), 0)).where(and_(*conditions))
        ).scalar()
    return max(0, int(total or 0))
