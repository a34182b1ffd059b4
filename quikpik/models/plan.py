"""
quikpik/models/plan.py

Plan tier catalog entries.

A tier is immutable once seeded: limits and price never change at runtime.
"""

from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import ConfigDict

from quikpik.models.base import CamelModel


UNLIMITED = -1


class Tier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"


# Resources a plan limits, keyed the way the UI and feature gates name them
RESOURCES = ("products", "broadcasts", "team_members", "custom_groups")


class PlanLimits(CamelModel):
    """
    Numeric limits of a tier.

    Each value is a non-negative count or UNLIMITED (-1).
    Broadcasts are counted per calendar month, the rest over all time.
    """
    model_config = ConfigDict(frozen=True)

    products: int
    broadcasts: int
    team_members: int
    custom_groups: int

    def for_resource(self, resource: str) -> int:
        if resource not in RESOURCES:
            raise KeyError(resource)
        return getattr(self, resource)


class PlanTier(CamelModel):
    model_config = ConfigDict(frozen=True)

    tier: Tier
    name: str
    monthly_price: Decimal
    currency: str = "GBP"
    provider_price_ref: Optional[str] = None
    limits: PlanLimits
    sort_order: int = 0
