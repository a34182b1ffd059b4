"""
Billing provider webhook ingestion.

The signature is verified before anything else; an invalid one answers 400 so
the provider redelivers. Once verified the route always answers 200, whatever
the processing outcome, because failures are kept for retry locally.
"""
from fastapi import APIRouter, Request

from quikpik.features.billing.service import require_gateway
from quikpik.features.subscriptions import reconciler


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/billing")
async def billing_webhook(request: Request):
    body = await request.body()
    gateway = require_gateway()
    event = gateway.parse_webhook(dict(request.headers), body)
    outcome = reconciler.process_event(event)
    return {"received": True, "eventId": event.event_id, "outcome": outcome}
