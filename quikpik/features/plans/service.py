"""
quikpik/features/plans/service.py

Plan catalog.

Handles:
- Tier definitions (free, standard, premium) and their limits
- Tier <-> provider price mapping
- Plan seeding into the plans table (idempotent)

Reads are pure and need no locking; price refs come from settings so a
deploy can point at test or live Stripe prices without a code change.
"""

from decimal import Decimal
from typing import Dict, List, Optional, Union
from sqlalchemy import select, insert, update

from quikpik.core.config import settings
from quikpik.core.database import get_db_session, plans
from quikpik.core.errors import UnknownTierError
from quikpik.models.plan import PlanLimits, PlanTier, Tier, UNLIMITED


DEFAULT_PLANS = {
    "free": {
        "name": "Free",
        "monthly_price": Decimal("0.00"),
        "sort_order": 0,
        "limits": {
            "products": 3,
            "broadcasts": 5,
            "team_members": 1,
            "custom_groups": 2,
        },
    },
    "standard": {
        "name": "Standard",
        "monthly_price": Decimal("10.99"),
        "sort_order": 1,
        "limits": {
            "products": 10,
            "broadcasts": 25,
            "team_members": 3,
            "custom_groups": 5,
        },
    },
    "premium": {
        "name": "Premium",
        "monthly_price": Decimal("19.99"),
        "sort_order": 2,
        "limits": {
            "products": UNLIMITED,
            "broadcasts": UNLIMITED,
            "team_members": UNLIMITED,
            "custom_groups": UNLIMITED,
        },
    },
}

CURRENCY = "GBP"


def _price_refs() -> Dict[Tier, Optional[str]]:
    return {
        Tier.FREE: None,
        Tier.STANDARD: settings.STRIPE_PRICE_STANDARD,
        Tier.PREMIUM: settings.STRIPE_PRICE_PREMIUM,
    }


def parse_tier(value: Union[str, Tier]) -> Tier:
    """Coerce a tier string; unknown values raise UnknownTierError."""
    if isinstance(value, Tier):
        return value
    try:
        return Tier(str(value).strip().lower())
    except ValueError:
        raise UnknownTierError(f"Unknown subscription tier: {value!r}")


def get_plan(tier: Union[str, Tier]) -> PlanTier:
    """Get the catalog entry for a tier."""
    parsed = parse_tier(tier)
    config = DEFAULT_PLANS[parsed.value]
    return PlanTier(
        tier=parsed,
        name=config["name"],
        monthly_price=config["monthly_price"],
        currency=CURRENCY,
        provider_price_ref=_price_refs()[parsed],
        limits=PlanLimits(**config["limits"]),
        sort_order=config["sort_order"],
    )


def list_plans() -> List[PlanTier]:
    """All tiers, cheapest first."""
    return sorted(
        (get_plan(tier) for tier in Tier),
        key=lambda plan: (plan.monthly_price, plan.sort_order),
    )


def tier_for_price_ref(price_ref: Optional[str]) -> Optional[Tier]:
    """Map a provider price ref back to a tier (None when it is not one of ours)."""
    if not price_ref:
        return None
    for tier, ref in _price_refs().items():
        if ref and ref == price_ref:
            return tier
    return None


def is_higher_tier(candidate: Union[str, Tier], current: Union[str, Tier]) -> bool:
    """True when candidate is strictly more expensive than current."""
    return get_plan(candidate).monthly_price > get_plan(current).monthly_price


def seed_plans() -> None:
    """
    Write the catalog into the plans table (idempotent).

    Existing rows are refreshed so price refs follow the current settings.
    """
    with get_db_session() as session:
        for plan in list_plans():
            values = dict(
                name=plan.name,
                monthly_price=plan.monthly_price,
                currency=plan.currency,
                provider_price_ref=plan.provider_price_ref,
                limits=plan.limits.model_dump(),
                sort_order=plan.sort_order,
            )
            existing = session.execute(
                select(plans.c.tier).where(plans.c.tier == plan.tier.value)
            ).first()
            if existing:
                session.execute(
                    update(plans).where(plans.c.tier == plan.tier.value).values(**values)
                )
            else:
                session.execute(insert(plans).values(tier=plan.tier.value, **values))
