"""
quikpik/models/audit.py

Subscription audit entry (one per state change).
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ConfigDict

from quikpik.models.base import CamelModel


class AuditEntry(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    account_id: str
    event_type: str
    from_tier: Optional[str] = None
    to_tier: Optional[str] = None
    status: Optional[str] = None
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    provider_event_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
