"""Read side of the subscription audit log (rows are written by the store)."""
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import and_, func, select

from quikpik.core.database import as_utc, get_db_session, subscription_audit_log
from quikpik.core.errors import ValidationError
from quikpik.models.audit import AuditEntry

RANGES = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "90d": timedelta(days=90),
}

# Reported bucket -> audit event types counted in it
STAT_BUCKETS = {
    "upgrades": ("upgrade_confirmed",),
    "downgrades": ("downgrade_scheduled",),
    "cancellations": ("cancel_scheduled", "canceled"),
    "paymentFailures": ("payment_failed",),
    "paymentRecoveries": ("payment_recovered",),
    "paymentSuccesses": ("payment_succeeded", "payment_recovered"),
}

# Audit event types whose metadata carries an amountPaid
PAYMENT_EVENTS = STAT_BUCKETS["paymentSuccesses"]


def get_history(account_id: str, limit: int = 50) -> List[AuditEntry]:
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_audit_log)
            .where(subscription_audit_log.c.account_id == account_id)
            .order_by(subscription_audit_log.c.created_at.desc(), subscription_audit_log.c.id.desc())
            .limit(limit)
        ).fetchall()
    return [
        AuditEntry(
            id=row.id,
            account_id=row.account_id,
            event_type=row.event_type,
            from_tier=row.from_tier,
            to_tier=row.to_tier,
            status=row.status,
            provider_subscription_ref=row.provider_subscription_ref,
            provider_event_id=row.provider_event_id,
            reason=row.reason,
            metadata=row._mapping["metadata"] or {},
            created_at=as_utc(row.created_at),
        )
        for row in rows
    ]


def get_stats(range_key: str = "30d", now: Optional[datetime] = None) -> Dict[str, object]:
    if range_key not in RANGES:
        raise ValidationError(
            f"Unknown range {range_key!r}",
            details={"allowed": sorted(RANGES)},
        )
    ts = now or datetime.now(timezone.utc)
    since = ts - RANGES[range_key]
    in_window = and_(
        subscription_audit_log.c.created_at >= since,
        subscription_audit_log.c.created_at <= ts,
    )

    with get_db_session() as session:
        rows = session.execute(
            select(subscription_audit_log.c.event_type, func.count())
            .where(in_window)
            .group_by(subscription_audit_log.c.event_type)
        ).fetchall()
        payments = session.execute(
            select(subscription_audit_log.c.metadata)
            .where(and_(in_window, subscription_audit_log.c.event_type.in_(PAYMENT_EVENTS)))
        ).fetchall()
    by_type = {event_type: count for event_type, count in rows}

    # Minor units per currency; JSON metadata is summed here to stay portable across databases
    revenue: Dict[str, int] = {}
    for (meta,) in payments:
        if not meta or meta.get("amountPaid") is None:
            continue
        currency = meta.get("currency") or "UNKNOWN"
        revenue[currency] = revenue.get(currency, 0) + int(meta["amountPaid"])

    stats: Dict[str, object] = {
        bucket: sum(by_type.get(t, 0) for t in types) for bucket, types in STAT_BUCKETS.items()
    }
    stats["totalRevenue"] = revenue
    stats["range"] = range_key
    stats["since"] = since.isoformat()
    stats["byEventType"] = by_type
    return stats
