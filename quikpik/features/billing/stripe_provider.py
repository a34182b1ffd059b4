"""
Stripe implementation of the SubscriptionGateway protocol.

Handles webhook signature verification and translates Stripe objects into
the domain dataclasses from provider.py. Nothing Stripe-specific leaves this
module.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import stripe

from quikpik.core.config import settings
from quikpik.core.errors import (
    BillingDisabledError,
    ProviderRejectedError,
    ProviderUnavailableError,
    UnknownTierError,
    WebhookSignatureError,
)
from quikpik.core.metrics import billing_provider_calls_total
from quikpik.features.billing.provider import (
    CheckoutConfirmation,
    ProviderEvent,
    ProviderEventType,
    ProviderPrice,
    SubscriptionSnapshot,
)
from quikpik.features.plans.service import tier_for_price_ref, parse_tier
from quikpik.models.subscription import SubscriptionStatus


logger = logging.getLogger("quikpik.billing")

_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    # "incomplete" maps to None: the first payment has not gone through yet
}

_EVENT_TYPE_MAP = {
    "customer.subscription.created": ProviderEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": ProviderEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": ProviderEventType.SUBSCRIPTION_DELETED,
    "invoice.payment_succeeded": ProviderEventType.PAYMENT_SUCCEEDED,
    "invoice.paid": ProviderEventType.PAYMENT_SUCCEEDED,
    "invoice.payment_failed": ProviderEventType.PAYMENT_FAILED,
    "checkout.session.completed": ProviderEventType.CHECKOUT_COMPLETED,
}


def _to_dict(obj: Any) -> Dict[str, Any]:
    """StripeObject -> plain dict (mocked calls in tests already return dicts)."""
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return json.loads(str(obj))


def _ts(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe fields are either an id or the expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _to_dict(value).get("id")


class StripeGateway:
    """Stripe implementation of SubscriptionGateway."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        """
        Initialize Stripe gateway.

        Args:
            secret_key: Stripe secret key (defaults to settings.STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to settings.STRIPE_WEBHOOK_SECRET)
            timeout: Per-request timeout in seconds (defaults to settings.STRIPE_TIMEOUT_SECONDS)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self.timeout = timeout or settings.STRIPE_TIMEOUT_SECONDS

        if not self.secret_key:
            raise BillingDisabledError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key
        stripe.max_network_retries = 1
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)

    # ------------------------------------------------------------------
    # Call wrapper
    # ------------------------------------------------------------------

    def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Run one Stripe call and classify its failure as transient or permanent."""
        try:
            result = fn(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            billing_provider_calls_total.inc(labels={"operation": operation, "result": "unavailable"})
            logger.warning("provider.unavailable", extra={"operation": operation, "error_message": str(e)})
            raise ProviderUnavailableError(
                "Billing service temporarily unavailable, please retry."
            ) from e
        except stripe.StripeError as e:
            status = getattr(e, "http_status", None)
            if status is None or status >= 500:
                billing_provider_calls_total.inc(labels={"operation": operation, "result": "unavailable"})
                logger.warning("provider.unavailable", extra={"operation": operation, "error_message": str(e), "status": status})
                raise ProviderUnavailableError(
                    "Billing service temporarily unavailable, please retry."
                ) from e
            billing_provider_calls_total.inc(labels={"operation": operation, "result": "rejected"})
            message = getattr(e, "user_message", None) or str(e)
            logger.warning("provider.rejected", extra={"operation": operation, "error_message": message, "status": status})
            raise ProviderRejectedError(message) from e
        billing_provider_calls_total.inc(labels={"operation": operation, "result": "ok"})
        return result

    # ------------------------------------------------------------------
    # Gateway operations
    # ------------------------------------------------------------------

    def ensure_customer(self, account_id: str, email: Optional[str] = None) -> str:
        """Find the Stripe customer tagged with this account, or create it once."""
        found = _to_dict(self._call(
            "customer.search",
            stripe.Customer.search,
            query=f"metadata['account_id']:'{account_id}'",
            limit=1,
        ))
        if found.get("data"):
            return _to_dict(found["data"][0])["id"]

        customer_data: Dict[str, Any] = {"metadata": {"account_id": account_id}}
        if email:
            customer_data["email"] = email
        customer = self._call(
            "customer.create",
            stripe.Customer.create,
            idempotency_key=f"customer-{account_id}",
            **customer_data,
        )
        return _to_dict(customer)["id"]

    def start_checkout(
        self,
        customer_ref: str,
        price_ref: str,
        *,
        account_id: str,
        success_url: str,
        cancel_url: str,
    ) -> str:
        """Create a subscription-mode checkout session and return its URL."""
        session = self._call(
            "checkout.create",
            stripe.checkout.Session.create,
            customer=customer_ref,
            mode="subscription",
            line_items=[{"price": price_ref, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            client_reference_id=account_id,
            metadata={"account_id": account_id},
            subscription_data={"metadata": {"account_id": account_id}},
            # Same account + price + customer returns the same open session
            idempotency_key=f"checkout-{account_id}-{customer_ref}-{price_ref}",
        )
        return _to_dict(session)["url"]

    def schedule_cancellation(self, subscription_ref: str) -> datetime:
        sub = _to_dict(self._call(
            "subscription.cancel_at_period_end",
            stripe.Subscription.modify,
            subscription_ref,
            cancel_at_period_end=True,
        ))
        _, period_end = self._period(sub)
        if period_end is None:
            raise ProviderRejectedError("Subscription has no current billing period")
        return period_end

    def cancel_immediately(self, subscription_ref: str) -> None:
        self._call("subscription.cancel", stripe.Subscription.cancel, subscription_ref)

    def change_subscription_price(self, subscription_ref: str, new_price_ref: str, prorate: bool) -> Optional[datetime]:
        sub = _to_dict(self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_ref))
        items = _to_dict(sub.get("items")).get("data") or []
        if not items:
            raise ProviderRejectedError("Subscription has no items to change")
        item = _to_dict(items[0])

        if prorate:
            # An upgrade also withdraws a scheduled cancellation
            self._call(
                "subscription.change_price",
                stripe.Subscription.modify,
                subscription_ref,
                items=[{"id": item["id"], "price": new_price_ref}],
                proration_behavior="create_prorations",
                cancel_at_period_end=False,
            )
            return None

        # Deferred change: keep the current price until period end, then switch
        _, period_end = self._period(sub)
        if period_end is None:
            raise ProviderRejectedError("Subscription has no current billing period")
        schedule_ref = _ref(sub.get("schedule"))
        if schedule_ref:
            schedule = _to_dict(self._call(
                "schedule.retrieve", stripe.SubscriptionSchedule.retrieve, schedule_ref
            ))
        else:
            schedule = _to_dict(self._call(
                "schedule.create",
                stripe.SubscriptionSchedule.create,
                from_subscription=subscription_ref,
            ))
        current_phase = _to_dict(schedule.get("current_phase"))
        phase_start = current_phase.get("start_date") or int(period_end.timestamp())
        current_price = _ref(_to_dict(item.get("price")).get("id") or item.get("price"))
        self._call(
            "schedule.modify",
            stripe.SubscriptionSchedule.modify,
            schedule["id"],
            end_behavior="release",
            proration_behavior="none",
            phases=[
                {
                    "items": [{"price": current_price, "quantity": 1}],
                    "start_date": phase_start,
                    "end_date": int(period_end.timestamp()),
                },
                {
                    "items": [{"price": new_price_ref, "quantity": 1}],
                    "iterations": 1,
                },
            ],
        )
        return period_end

    def get_subscription(self, subscription_ref: str) -> SubscriptionSnapshot:
        sub = _to_dict(self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_ref))
        return self._snapshot(sub)

    def get_checkout_session(self, session_ref: str) -> CheckoutConfirmation:
        session = _to_dict(self._call(
            "checkout.retrieve",
            stripe.checkout.Session.retrieve,
            session_ref,
            expand=["subscription"],
        ))
        subscription = session.get("subscription")
        snapshot = None
        if isinstance(subscription, str):
            snapshot = self.get_subscription(subscription)
        elif subscription:
            snapshot = self._snapshot(_to_dict(subscription))
        metadata = session.get("metadata") or {}
        return CheckoutConfirmation(
            session_ref=session["id"],
            customer_ref=_ref(session.get("customer")),
            complete=session.get("status") == "complete",
            paid=session.get("payment_status") in ("paid", "no_payment_required"),
            account_id=session.get("client_reference_id") or metadata.get("account_id"),
            subscription=snapshot,
        )

    def list_prices(self) -> List[ProviderPrice]:
        result = _to_dict(self._call("price.list", stripe.Price.list, active=True, limit=100))
        prices = []
        for raw in result.get("data") or []:
            price = _to_dict(raw)
            prices.append(ProviderPrice(
                price_ref=price["id"],
                active=bool(price.get("active")),
                unit_amount=price.get("unit_amount"),
                currency=price.get("currency"),
                metadata=dict(price.get("metadata") or {}),
            ))
        return prices

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> ProviderEvent:
        """Verify Stripe webhook signature and normalize the event."""
        if not self.webhook_secret:
            raise BillingDisabledError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}")
        except (UnicodeDecodeError, ValueError) as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> ProviderEvent:
        """Parse Stripe event into a normalized ProviderEvent."""
        provider_type = event.get("type", "")
        event_type = _EVENT_TYPE_MAP.get(provider_type, ProviderEventType.OTHER)
        data = (event.get("data") or {}).get("object") or {}
        occurred_at = _ts(event.get("created")) or datetime.now(timezone.utc)

        subscription = None
        invoice_subscription_ref = None
        amount_paid = None
        currency = None

        if event_type in (
            ProviderEventType.SUBSCRIPTION_CREATED,
            ProviderEventType.SUBSCRIPTION_UPDATED,
            ProviderEventType.SUBSCRIPTION_DELETED,
        ):
            subscription = self._snapshot(data)
        elif event_type in (ProviderEventType.PAYMENT_SUCCEEDED, ProviderEventType.PAYMENT_FAILED):
            invoice_subscription_ref = _ref(data.get("subscription"))
            if not invoice_subscription_ref:
                # Newer API versions nest it under parent.subscription_details
                details = ((data.get("parent") or {}).get("subscription_details") or {})
                invoice_subscription_ref = _ref(details.get("subscription"))
            if event_type == ProviderEventType.PAYMENT_SUCCEEDED:
                amount_paid = data.get("amount_paid")
                currency = (data.get("currency") or "").upper() or None
        elif event_type == ProviderEventType.CHECKOUT_COMPLETED:
            invoice_subscription_ref = _ref(data.get("subscription"))

        return ProviderEvent(
            event_id=event["id"],
            event_type=event_type,
            provider_type=provider_type,
            occurred_at=occurred_at,
            customer_ref=_ref(data.get("customer")),
            subscription=subscription,
            invoice_subscription_ref=invoice_subscription_ref,
            amount_paid=amount_paid,
            currency=currency,
        )

    def _snapshot(self, sub: Dict[str, Any]) -> SubscriptionSnapshot:
        items = _to_dict(sub.get("items")).get("data") or []
        price_ref = None
        if items:
            price_ref = _ref(_to_dict(items[0]).get("price"))
        tier = tier_for_price_ref(price_ref)
        if tier is None:
            # Fall back to the tier stamped on the subscription at checkout
            meta_tier = (sub.get("metadata") or {}).get("tier")
            if meta_tier:
                try:
                    tier = parse_tier(meta_tier)
                except UnknownTierError:
                    logger.warning("provider.unknown_tier_metadata", extra={"tier_value": meta_tier})
        period_start, period_end = self._period(sub)
        return SubscriptionSnapshot(
            subscription_ref=sub["id"],
            status=_STATUS_MAP.get(sub.get("status")),
            tier=tier,
            price_ref=price_ref,
            current_period_start=period_start,
            current_period_end=period_end,
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
        )

    @staticmethod
    def _period(sub: Dict[str, Any]):
        """Period bounds live on the subscription (older API) or on its items (newer)."""
        start = sub.get("current_period_start")
        end = sub.get("current_period_end")
        if start is None or end is None:
            items = _to_dict(sub.get("items")).get("data") or []
            if items:
                item = _to_dict(items[0])
                start = start if start is not None else item.get("current_period_start")
                end = end if end is not None else item.get("current_period_end")
        return _ts(start), _ts(end)
