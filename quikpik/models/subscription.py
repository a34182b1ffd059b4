"""
quikpik/models/subscription.py

Per-account subscription record.

Constraints (checked on every write by the subscription store):
- provider_subscription_ref is set iff current_tier is not free
- cancel_at_period_end implies pending_downgrade_target is set
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import ConfigDict

from quikpik.models.base import CamelModel
from quikpik.models.plan import Tier


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class AccountSubscription(CamelModel):
    model_config = ConfigDict(frozen=True)

    account_id: str
    current_tier: Tier = Tier.FREE
    provider_customer_ref: Optional[str] = None
    provider_subscription_ref: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    pending_downgrade_target: Optional[Tier] = None
    last_event_at: Optional[datetime] = None
    version: int = 1

    def is_stale(self, now: datetime) -> bool:
        """Active, but the paid period ended without the provider confirming a renewal."""
        return (
            self.status == SubscriptionStatus.ACTIVE
            and self.current_period_end is not None
            and now > self.current_period_end
        )
