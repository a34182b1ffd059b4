"""
Billing provider wiring.

Everything else asks this module for a gateway instead of constructing
StripeGateway itself, so tests can patch one place.
"""
from typing import Any, Dict, Optional

from quikpik.core.config import settings
from quikpik.core.errors import BillingDisabledError
from quikpik.features.billing.provider import SubscriptionGateway
from quikpik.features.billing.stripe_provider import StripeGateway
from quikpik.features.plans.service import list_plans


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_gateway() -> Optional[SubscriptionGateway]:
    """Get the billing gateway if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeGateway()
    except BillingDisabledError:
        return None


def require_gateway() -> SubscriptionGateway:
    gateway = get_gateway()
    if gateway is None:
        raise BillingDisabledError("Billing is not configured")
    return gateway


def check_price_config(gateway: SubscriptionGateway) -> Dict[str, Any]:
    """
    Compare the catalog's paid tiers against the provider's active prices.

    Returns a report keyed by tier; "ok" is False if any paid tier has no
    price ref configured or points at a price the provider does not list
    as active.
    """
    active = {price.price_ref: price for price in gateway.list_prices() if price.active}
    tiers: Dict[str, Any] = {}
    ok = True
    for plan in list_plans():
        if plan.monthly_price <= 0:
            continue
        ref = plan.provider_price_ref
        price = active.get(ref) if ref else None
        entry: Dict[str, Any] = {"priceRef": ref, "configured": bool(ref), "active": price is not None}
        if price is not None and price.unit_amount is not None:
            expected = int(plan.monthly_price * 100)
            entry["amountMatches"] = price.unit_amount == expected
            entry["currencyMatches"] = (price.currency or "").upper() == plan.currency
        if not entry["active"] or entry.get("amountMatches") is False:
            ok = False
        tiers[plan.tier.value] = entry
    return {"ok": ok, "tiers": tiers}
