"""
Billing provider gateway protocol.

Everything outside this package speaks in tiers, statuses and periods.
Implementations translate the provider's object model into the dataclasses
below and classify every failure as either
ProviderUnavailableError (transient, retry with backoff) or
ProviderRejectedError (permanent, show the provider's message).
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol

from quikpik.features.plans.service import tier_for_price_ref
from quikpik.models.plan import Tier
from quikpik.models.subscription import SubscriptionStatus


class ProviderEventType(str, Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_COMPLETED = "checkout.completed"
    OTHER = "other"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Absolute state of one provider subscription at the time of an event."""
    subscription_ref: str
    status: Optional[SubscriptionStatus]  # None while checkout payment is incomplete
    tier: Optional[Tier]
    price_ref: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False


@dataclass(frozen=True)
class ProviderEvent:
    """Normalized webhook event."""
    event_id: str
    event_type: ProviderEventType
    occurred_at: datetime
    customer_ref: Optional[str]
    subscription: Optional[SubscriptionSnapshot] = None
    # Invoice events only carry the subscription they bill
    invoice_subscription_ref: Optional[str] = None
    provider_type: str = ""
    # Invoice amount in minor units (pence), and its currency
    amount_paid: Optional[int] = None
    currency: Optional[str] = None

    @property
    def subscription_ref(self) -> Optional[str]:
        if self.subscription:
            return self.subscription.subscription_ref
        return self.invoice_subscription_ref

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe form, stored so failed events can be replayed without the provider."""
        sub = self.subscription
        return {
            "event_id": self.event_id,
            "event_type": self.event_type.value,
            "provider_type": self.provider_type,
            "occurred_at": self.occurred_at.isoformat(),
            "customer_ref": self.customer_ref,
            "invoice_subscription_ref": self.invoice_subscription_ref,
            "amount_paid": self.amount_paid,
            "currency": self.currency,
            "subscription": None if sub is None else {
                "subscription_ref": sub.subscription_ref,
                "status": sub.status.value if sub.status else None,
                "tier": sub.tier.value if sub.tier else None,
                "price_ref": sub.price_ref,
                "current_period_start": _iso(sub.current_period_start),
                "current_period_end": _iso(sub.current_period_end),
                "cancel_at_period_end": sub.cancel_at_period_end,
            },
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ProviderEvent":
        """
        Rebuild a stored event for replay.

        The tier is resolved again from the price ref, so an event that failed
        on a price missing from the catalog goes through once it is configured.
        """
        sub = payload.get("subscription")
        snapshot = None
        if sub:
            tier = tier_for_price_ref(sub.get("price_ref"))
            if tier is None and sub.get("tier"):
                tier = Tier(sub["tier"])
            snapshot = SubscriptionSnapshot(
                subscription_ref=sub["subscription_ref"],
                status=SubscriptionStatus(sub["status"]) if sub.get("status") else None,
                tier=tier,
                price_ref=sub.get("price_ref"),
                current_period_start=_parse_iso(sub.get("current_period_start")),
                current_period_end=_parse_iso(sub.get("current_period_end")),
                cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            )
        return cls(
            event_id=payload["event_id"],
            event_type=ProviderEventType(payload["event_type"]),
            provider_type=payload.get("provider_type", ""),
            occurred_at=_parse_iso(payload["occurred_at"]),
            customer_ref=payload.get("customer_ref"),
            subscription=snapshot,
            invoice_subscription_ref=payload.get("invoice_subscription_ref"),
            amount_paid=payload.get("amount_paid"),
            currency=payload.get("currency"),
        )


@dataclass(frozen=True)
class CheckoutConfirmation:
    """State of a hosted checkout session after the customer is redirected back."""
    session_ref: str
    customer_ref: Optional[str]
    complete: bool
    paid: bool
    account_id: Optional[str] = None
    subscription: Optional[SubscriptionSnapshot] = None


@dataclass(frozen=True)
class ProviderPrice:
    price_ref: str
    active: bool
    unit_amount: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SubscriptionGateway(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer creation without duplicates per account
    - Hosted checkout for new subscriptions
    - Scheduled and immediate cancellation
    - Price changes (prorated now, or deferred to period end)
    - Webhook signature verification and normalization
    """

    def ensure_customer(self, account_id: str, email: Optional[str] = None) -> str:
        """Return the provider customer ref for the account, creating it at most once."""
        ...

    def start_checkout(
        self,
        customer_ref: str,
        price_ref: str,
        *,
        account_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Open a hosted checkout session and return its redirect URL."""
        ...

    def schedule_cancellation(self, subscription_ref: str) -> datetime:
        """End the subscription at period close; returns the effective date."""
        ...

    def cancel_immediately(self, subscription_ref: str) -> None:
        ...

    def change_subscription_price(self, subscription_ref: str, new_price_ref: str, prorate: bool) -> Optional[datetime]:
        """
        Swap the subscription's price.

        prorate=True applies now with prorated billing, withdraws any
        scheduled cancellation and returns None.
        prorate=False defers the change to period end and returns that date.
        """
        ...

    def get_subscription(self, subscription_ref: str) -> SubscriptionSnapshot:
        ...

    def get_checkout_session(self, session_ref: str) -> CheckoutConfirmation:
        ...

    def list_prices(self) -> List[ProviderPrice]:
        ...

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> ProviderEvent:
        """
        Verify the webhook signature and normalize the event.

        Raises:
            WebhookSignatureError: If signature invalid or payload unparseable
        """
        ...
