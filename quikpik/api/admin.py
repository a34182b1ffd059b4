"""
Admin-only subscription operations.
Requires X-Admin-Key header for all endpoints.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from quikpik.core.auth import require_admin
from quikpik.features.billing.service import check_price_config, require_gateway
from quikpik.features.subscriptions import audit, commands, reconciler, store
from quikpik.features.subscriptions.reconcile_job import run_stale_reconcile_job
from quikpik.models.subscription import AccountSubscription

logger = logging.getLogger("quikpik.admin")

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


class TerminateRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


@router.get("/subscriptions/stats")
def subscription_stats(range_key: str = Query("30d", alias="range", description="24h, 7d, 30d or 90d")):
    return audit.get_stats(range_key)


@router.get("/subscriptions/price-check")
def price_check():
    return check_price_config(require_gateway())


@router.post("/subscriptions/reconcile-stale")
def reconcile_stale(limit: int = Query(100, ge=1, le=1000)):
    return run_stale_reconcile_job(limit=limit)


@router.get("/subscriptions/{account_id}", response_model=AccountSubscription)
def get_subscription(account_id: str):
    return store.get(account_id)


@router.post("/subscriptions/{account_id}/terminate")
def terminate(account_id: str, request: Optional[TerminateRequest] = None):
    """
    End the account's provider subscription now.

    Local state changes when the provider's deletion event is reconciled.
    """
    reason = request.reason if request else None
    record = commands.terminate(account_id, reason=reason)
    logger.warning("admin.terminate", extra={"account_id": account_id, "reason": reason})
    return {
        "accountId": account_id,
        "providerSubscriptionRef": record.provider_subscription_ref,
        "terminationRequested": True,
    }


@router.post("/billing/retry-failed")
def retry_failed(limit: int = Query(50, ge=1, le=500)):
    return reconciler.retry_failed_events(limit=limit)
