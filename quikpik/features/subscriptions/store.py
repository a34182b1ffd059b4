"""
Subscription state store.

The only module that writes account_subscriptions. Every write:
- runs under an in-process per-account lock
- is a conditional UPDATE on the version it read (retried, then ConflictError)
- checks the record invariants before touching the row
- writes its audit row in the same transaction
"""
import logging
import threading
import weakref
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from quikpik.core.config import settings
from quikpik.core.database import (
    account_subscriptions,
    as_utc,
    ended_subscriptions,
    get_db_session,
    subscription_audit_log,
)
from quikpik.core.errors import ConflictError, InvariantViolationError, ValidationError
from quikpik.core.logging import log_event
from quikpik.features.billing.provider import ProviderEvent
from quikpik.features.plans.service import is_higher_tier, parse_tier
from quikpik.features.subscriptions.transitions import APPLIED, RECORDED, Transition, reduce_event
from quikpik.models.plan import Tier
from quikpik.models.subscription import AccountSubscription, SubscriptionStatus


logger = logging.getLogger("quikpik.subscriptions")

_locks: "weakref.WeakValueDictionary[str, Any]" = weakref.WeakValueDictionary()
_locks_guard = threading.Lock()

# (new state, audit event, reason, metadata) or None for "nothing to write"
Change = Optional[Tuple[AccountSubscription, str, Optional[str], Optional[Dict[str, Any]]]]


def _account_lock(account_id: str):
    with _locks_guard:
        lock = _locks.get(account_id)
        if lock is None:
            lock = threading.Lock()
            _locks[account_id] = lock
        return lock


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_model(row) -> AccountSubscription:
    return AccountSubscription(
        account_id=row.account_id,
        current_tier=Tier(row.current_tier),
        provider_customer_ref=row.provider_customer_ref,
        provider_subscription_ref=row.provider_subscription_ref,
        status=SubscriptionStatus(row.status),
        current_period_start=as_utc(row.current_period_start),
        current_period_end=as_utc(row.current_period_end),
        cancel_at_period_end=bool(row.cancel_at_period_end),
        pending_downgrade_target=Tier(row.pending_downgrade_target) if row.pending_downgrade_target else None,
        last_event_at=as_utc(row.last_event_at),
        version=row.version,
    )


def check_invariants(state: AccountSubscription) -> None:
    """Raise InvariantViolationError if the record describes an impossible state."""
    problem = None
    if state.current_tier == Tier.FREE and state.provider_subscription_ref is not None:
        problem = "free tier with a provider subscription"
    elif state.current_tier != Tier.FREE and state.provider_subscription_ref is None:
        problem = f"{state.current_tier.value} tier without a provider subscription"
    elif state.cancel_at_period_end and state.pending_downgrade_target is None:
        problem = "cancel_at_period_end without a pending downgrade target"

    if problem:
        log_event(
            "error",
            "subscription.invariant_violation",
            account_id=state.account_id,
            error_code="invariant_violation",
            extra={"problem": problem, "state": state.model_dump(mode="json")},
        )
        raise InvariantViolationError(
            f"Refusing to write subscription for {state.account_id}: {problem}",
            details={"accountId": state.account_id},
        )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _load(session: Session, account_id: str):
    return session.execute(
        select(account_subscriptions).where(account_subscriptions.c.account_id == account_id)
    ).fetchone()


def _create_default(account_id: str, now: datetime) -> None:
    try:
        with get_db_session() as session:
            session.execute(
                insert(account_subscriptions).values(
                    account_id=account_id,
                    current_tier=Tier.FREE.value,
                    status=SubscriptionStatus.ACTIVE.value,
                    cancel_at_period_end=False,
                    version=1,
                    created_at=now,
                    updated_at=now,
                )
            )
    except IntegrityError:
        # Another request created it first; the caller re-reads
        logger.debug("subscription.create_raced", extra={"account_id": account_id})


def get(account_id: str) -> AccountSubscription:
    """
    Current record for the account.

    Creates the default free record on first access; this is the only place a
    subscription row is created.
    """
    if not account_id:
        raise ValidationError("account_id is required")

    with get_db_session() as session:
        row = _load(session, account_id)
    if row is None:
        _create_default(account_id, _utcnow())
        with get_db_session() as session:
            row = _load(session, account_id)
    return _row_to_model(row)


def find_by_customer_ref(customer_ref: str) -> Optional[AccountSubscription]:
    with get_db_session() as session:
        row = session.execute(
            select(account_subscriptions).where(account_subscriptions.c.provider_customer_ref == customer_ref)
        ).fetchone()
    return _row_to_model(row) if row else None


def find_by_subscription_ref(subscription_ref: str) -> Optional[AccountSubscription]:
    with get_db_session() as session:
        row = session.execute(
            select(account_subscriptions).where(
                account_subscriptions.c.provider_subscription_ref == subscription_ref
            )
        ).fetchone()
    return _row_to_model(row) if row else None


def list_stale(now: datetime, limit: int = 100) -> List[AccountSubscription]:
    """Active paid records whose period ended without a renewal being reconciled."""
    with get_db_session() as session:
        rows = session.execute(
            select(account_subscriptions)
            .where(
                and_(
                    account_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                    account_subscriptions.c.provider_subscription_ref.isnot(None),
                    account_subscriptions.c.current_period_end < now,
                )
            )
            .order_by(account_subscriptions.c.current_period_end)
            .limit(limit)
        ).fetchall()
    return [_row_to_model(row) for row in rows]


def is_ended(subscription_ref: str) -> bool:
    with get_db_session() as session:
        return _is_ended(session, subscription_ref)


def _is_ended(session: Session, subscription_ref: Optional[str]) -> bool:
    if not subscription_ref:
        return False
    return session.execute(
        select(ended_subscriptions.c.provider_subscription_ref).where(
            ended_subscriptions.c.provider_subscription_ref == subscription_ref
        )
    ).first() is not None


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

def _compare_and_swap(session: Session, expected_version: int, state: AccountSubscription, now: datetime) -> bool:
    result = session.execute(
        update(account_subscriptions)
        .where(
            and_(
                account_subscriptions.c.account_id == state.account_id,
                account_subscriptions.c.version == expected_version,
            )
        )
        .values(
            current_tier=state.current_tier.value,
            provider_customer_ref=state.provider_customer_ref,
            provider_subscription_ref=state.provider_subscription_ref,
            status=state.status.value,
            current_period_start=as_utc(state.current_period_start),
            current_period_end=as_utc(state.current_period_end),
            cancel_at_period_end=state.cancel_at_period_end,
            pending_downgrade_target=state.pending_downgrade_target.value if state.pending_downgrade_target else None,
            last_event_at=as_utc(state.last_event_at),
            version=expected_version + 1,
            updated_at=now,
        )
    )
    return result.rowcount == 1


def _write_audit(
    session: Session,
    before: AccountSubscription,
    after: AccountSubscription,
    event_type: str,
    now: datetime,
    reason: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
    provider_event_id: Optional[str] = None,
) -> None:
    session.execute(
        insert(subscription_audit_log).values(
            account_id=after.account_id,
            event_type=event_type,
            from_tier=before.current_tier.value,
            to_tier=after.current_tier.value,
            status=after.status.value,
            provider_customer_ref=after.provider_customer_ref,
            provider_subscription_ref=after.provider_subscription_ref or before.provider_subscription_ref,
            provider_event_id=provider_event_id,
            reason=reason,
            metadata=metadata,
            created_at=now,
        )
    )


def _record_ended(session: Session, subscription_ref: str, account_id: Optional[str], now: datetime) -> None:
    if _is_ended(session, subscription_ref):
        return
    session.execute(
        insert(ended_subscriptions).values(
            provider_subscription_ref=subscription_ref,
            account_id=account_id,
            ended_at=now,
        )
    )


def _mutate(
    account_id: str,
    decide: Callable[[Session, AccountSubscription], Change],
    now: datetime,
    provider_event_id: Optional[str] = None,
    after_write: Optional[Callable[[Session], None]] = None,
) -> AccountSubscription:
    """
    Read-decide-write loop for one account.

    `decide` sees the freshly read record and returns the change to make (or
    None). The write only lands if nobody bumped the version in between;
    otherwise the whole read-decide-write is repeated.
    """
    get(account_id)
    attempts = max(1, settings.STORE_MAX_WRITE_ATTEMPTS)
    with _account_lock(account_id):
        for attempt in range(1, attempts + 1):
            with get_db_session() as session:
                current = _row_to_model(_load(session, account_id))
                change = decide(session, current)
                if change is None:
                    if after_write:
                        after_write(session)
                    return current

                new_state, audit_event, reason, metadata = change
                check_invariants(new_state)
                if _compare_and_swap(session, current.version, new_state, now):
                    _write_audit(session, current, new_state, audit_event, now, reason, metadata, provider_event_id)
                    if after_write:
                        after_write(session)
                    return new_state.model_copy(update={"version": current.version + 1})

            logger.warning(
                "subscription.write_conflict",
                extra={"account_id": account_id, "attempt": attempt, "expected_version": current.version},
            )

    raise ConflictError(
        f"Subscription for {account_id} is being changed concurrently, please retry",
        details={"accountId": account_id},
    )


def attach_customer_ref(account_id: str, customer_ref: str, now: Optional[datetime] = None) -> AccountSubscription:
    """Remember the provider customer so webhooks can find the account."""
    ts = now or _utcnow()

    def decide(session, current):
        if current.provider_customer_ref == customer_ref:
            return None
        if current.provider_customer_ref:
            raise InvariantViolationError(
                f"Account {account_id} already has provider customer {current.provider_customer_ref}"
            )
        return current.model_copy(update={"provider_customer_ref": customer_ref}), "customer_attached", None, None

    return _mutate(account_id, decide, ts)


def apply_optimistic_upgrade(
    account_id: str,
    tier: Tier,
    provider_subscription_ref: str,
    *,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> AccountSubscription:
    """
    Record an upgrade the provider has already confirmed through checkout.

    The next subscription webhook overwrites these fields with the provider's
    absolute state.
    """
    ts = now or _utcnow()
    tier = parse_tier(tier)

    def decide(session, current):
        if _is_ended(session, provider_subscription_ref):
            raise ValidationError(f"Subscription {provider_subscription_ref} has already ended")
        if current.provider_subscription_ref == provider_subscription_ref and current.current_tier == tier:
            return None
        if not is_higher_tier(tier, current.current_tier):
            raise ValidationError(
                f"{tier.value} is not an upgrade from {current.current_tier.value}"
            )
        state = current.model_copy(update={
            "current_tier": tier,
            "status": SubscriptionStatus.ACTIVE,
            "provider_subscription_ref": provider_subscription_ref,
            "current_period_start": current_period_start,
            "current_period_end": current_period_end,
            "cancel_at_period_end": False,
            "pending_downgrade_target": None,
        })
        return state, "upgrade_confirmed", "checkout confirmed", None

    return _mutate(account_id, decide, ts)


def apply_scheduled_downgrade(
    account_id: str,
    target_tier: Tier,
    effective_date: Optional[datetime],
    now: Optional[datetime] = None,
) -> AccountSubscription:
    """
    Mark a downgrade as scheduled for period end.

    Tier, status and limits are untouched; the account keeps what it paid for
    until the provider ends or changes the subscription.
    """
    ts = now or _utcnow()
    target_tier = parse_tier(target_tier)

    def decide(session, current):
        if current.current_tier == Tier.FREE:
            raise ValidationError("Account is already on the free tier")
        if not is_higher_tier(current.current_tier, target_tier):
            raise ValidationError(
                f"{target_tier.value} is not a downgrade from {current.current_tier.value}"
            )
        cancel = target_tier == Tier.FREE
        period_end = effective_date or current.current_period_end
        if (
            current.pending_downgrade_target == target_tier
            and current.cancel_at_period_end == cancel
            and current.current_period_end == period_end
        ):
            return None
        state = current.model_copy(update={
            "cancel_at_period_end": cancel,
            "pending_downgrade_target": target_tier,
            "current_period_end": period_end,
        })
        audit_event = "cancel_scheduled" if cancel else "downgrade_scheduled"
        metadata = {"effectiveDate": period_end.isoformat() if period_end else None}
        return state, audit_event, None, metadata

    return _mutate(account_id, decide, ts)


def apply_reconciled_state(
    account_id: str,
    event: ProviderEvent,
    *,
    audit_event: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transition:
    """
    Apply a provider event to the account's record.

    The only mutator that may move status to past_due or canceled, or clear a
    pending downgrade. Returns the transition so callers can report stale and
    ignored outcomes. A recorded payment leaves the record alone but still
    gets its audit row.
    """
    ts = now or _utcnow()
    outcome: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {"providerEventType": event.provider_type or event.event_type.value}
    if event.amount_paid is not None:
        metadata["amountPaid"] = event.amount_paid
        metadata["currency"] = event.currency

    def decide(session, current):
        transition = reduce_event(current, event, ref_ended=_is_ended(session, event.subscription_ref))
        outcome["transition"] = transition
        outcome["current"] = current
        if transition.outcome != APPLIED or transition.state is None:
            return None
        return transition.state, audit_event or transition.audit_event or "reconciled", transition.reason, metadata

    def after_write(session):
        transition = outcome["transition"]
        if transition.outcome == RECORDED:
            current = outcome["current"]
            _write_audit(
                session, current, current, transition.audit_event, ts,
                transition.reason, metadata, event.event_id,
            )
        if transition.ended_ref:
            _record_ended(session, transition.ended_ref, account_id, ts)

    _mutate(account_id, decide, ts, provider_event_id=event.event_id, after_write=after_write)
    return outcome["transition"]
