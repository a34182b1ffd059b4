"""
HTTP tests for /subscriptions and /webhooks/billing.
"""
from datetime import datetime, timedelta, timezone

import jwt

from quikpik.conftest import NOW, PERIOD_END
from quikpik.core.config import settings
from quikpik.core.errors import (
    ProviderRejectedError,
    ProviderUnavailableError,
    WebhookSignatureError,
)
from quikpik.features.billing.provider import CheckoutConfirmation, ProviderEventType, SubscriptionSnapshot
from quikpik.features.subscriptions import store
from quikpik.features.usage.service import emit_usage_event
from quikpik.models.plan import Tier
from quikpik.models.subscription import SubscriptionStatus

ACCT = {"X-Account-Id": "acct_1"}


def test_requires_auth(client):
    response = client.get("/subscriptions/current")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "http_error"


def test_account_header_rejected_in_production(client, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")
    response = client.get("/subscriptions/current", headers=ACCT)
    assert response.status_code == 401


def test_bearer_token(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "jwt-test-secret")
    token = jwt.encode(
        {"sub": "acct_jwt", "email": "owner@shop.test", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        "jwt-test-secret",
        algorithm="HS256",
    )
    response = client.get("/subscriptions/current", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 200
    assert response.json()["subscription"]["accountId"] == "acct_jwt"


def test_bearer_token_with_wrong_key(client, monkeypatch):
    monkeypatch.setattr(settings, "AUTH_JWT_SECRET", "jwt-test-secret")
    token = jwt.encode({"sub": "acct_jwt"}, "someone-else", algorithm="HS256")
    response = client.get("/subscriptions/current", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401


def test_plans_are_public_and_ordered(client):
    response = client.get("/subscriptions/plans")
    assert response.status_code == 200
    plans = response.json()
    assert [p["tier"] for p in plans] == ["free", "standard", "premium"]
    standard = plans[1]
    assert standard["providerPriceRef"] == "price_standard_test"
    assert standard["limits"]["teamMembers"] == 3
    assert plans[2]["limits"]["products"] == -1


def test_current_for_new_account_is_free(client):
    response = client.get("/subscriptions/current", headers=ACCT)
    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["currentTier"] == "free"
    assert body["subscription"]["status"] == "active"
    assert body["plan"]["name"] == "Free"
    assert body["effectiveTier"] == "free"
    assert body["stale"] is False
    assert body["billingEnabled"] is True


def test_create_checkout_session(client, gateway):
    response = client.post(
        "/subscriptions/create-checkout-session",
        json={"priceRef": "price_premium_test"},
        headers=ACCT,
    )
    assert response.status_code == 200
    assert response.json() == {"url": "https://checkout.stripe.test/c/pay/cs_test_1", "mode": "checkout"}
    assert store.get("acct_1").current_tier == Tier.FREE


def test_create_checkout_unknown_price(client, gateway):
    response = client.post(
        "/subscriptions/create-checkout-session",
        json={"priceRef": "price_nope"},
        headers=ACCT,
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


def test_provider_unavailable_is_retryable_503(client, gateway):
    gateway.start_checkout.side_effect = ProviderUnavailableError("Billing service temporarily unavailable, please retry.")
    response = client.post(
        "/subscriptions/create-checkout-session",
        json={"priceRef": "price_standard_test"},
        headers=ACCT,
    )
    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "provider_unavailable"
    assert error["retryable"] is True
    assert response.headers["x-request-id"] == error["request_id"]


def test_provider_rejection_is_402_with_message(client, gateway):
    gateway.start_checkout.side_effect = ProviderRejectedError("No such price: 'price_standard_test'")
    response = client.post(
        "/subscriptions/create-checkout-session",
        json={"priceRef": "price_standard_test"},
        headers=ACCT,
    )
    assert response.status_code == 402
    assert "No such price" in response.json()["error"]["message"]
    assert response.json()["error"]["retryable"] is False


def test_billing_disabled(client, billing_disabled):
    response = client.post(
        "/subscriptions/create-checkout-session",
        json={"priceRef": "price_standard_test"},
        headers=ACCT,
    )
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "billing_disabled"


def test_confirm_checkout(client, gateway):
    gateway.get_checkout_session.return_value = CheckoutConfirmation(
        session_ref="cs_test_1",
        customer_ref="cus_123",
        complete=True,
        paid=True,
        account_id="acct_1",
        subscription=SubscriptionSnapshot(
            subscription_ref="sub_123",
            status=SubscriptionStatus.ACTIVE,
            tier=Tier.STANDARD,
            price_ref="price_standard_test",
            current_period_start=datetime.now(timezone.utc),
            current_period_end=datetime.now(timezone.utc) + timedelta(days=30),
        ),
    )
    response = client.post("/subscriptions/confirm-checkout", json={"sessionId": "cs_test_1"}, headers=ACCT)

    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["currentTier"] == "standard"
    assert body["subscription"]["providerSubscriptionRef"] == "sub_123"
    assert body["effectiveTier"] == "standard"


def test_confirm_checkout_of_someone_else(client, gateway):
    gateway.get_checkout_session.return_value = CheckoutConfirmation(
        session_ref="cs_other", customer_ref="cus_other", complete=True, paid=True, account_id="acct_2",
    )
    response = client.post("/subscriptions/confirm-checkout", json={"sessionId": "cs_other"}, headers=ACCT)
    assert response.status_code == 404


def test_cancel_then_provider_deletes(client, gateway, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)

    response = client.post("/subscriptions/cancel", headers=ACCT)
    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["status"] == "active"
    assert body["subscription"]["cancelAtPeriodEnd"] is True
    assert body["subscription"]["pendingDowngradeTarget"] == "free"
    assert datetime.fromisoformat(body["effectiveDate"].replace("Z", "+00:00")) == PERIOD_END
    gateway.schedule_cancellation.assert_called_once_with("sub_123")

    gateway.parse_webhook.return_value = subscription_event(
        "evt_del", ProviderEventType.SUBSCRIPTION_DELETED, status=SubscriptionStatus.CANCELED,
        occurred_at=NOW + timedelta(days=20),
    )
    response = client.post("/webhooks/billing", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert response.status_code == 200
    assert response.json() == {"received": True, "eventId": "evt_del", "outcome": "applied"}

    current = client.get("/subscriptions/current", headers=ACCT).json()
    assert current["subscription"]["status"] == "canceled"
    assert current["subscription"]["currentTier"] == "free"
    assert current["effectiveTier"] == "free"


def test_downgrade_endpoint(client, gateway, paid_account):
    paid_account(tier=Tier.PREMIUM)
    response = client.post("/subscriptions/downgrade", json={"targetTier": "standard"}, headers=ACCT)

    assert response.status_code == 200
    body = response.json()
    assert body["subscription"]["currentTier"] == "premium"
    assert body["subscription"]["pendingDowngradeTarget"] == "standard"
    assert "standard" in body["message"]
    gateway.change_subscription_price.assert_called_once_with("sub_123", "price_standard_test", prorate=False)


def test_downgrade_on_free_is_400(client, gateway):
    response = client.post("/subscriptions/downgrade", json={"targetTier": "free"}, headers=ACCT)
    assert response.status_code == 400


def test_webhook_passes_raw_body_and_headers(client, gateway, subscription_event):
    store.attach_customer_ref("acct_1", "cus_123")
    gateway.parse_webhook.return_value = subscription_event("evt_1", ProviderEventType.SUBSCRIPTION_CREATED)
    body = b'{"id": "evt_1", "type": "customer.subscription.created"}'

    response = client.post("/webhooks/billing", content=body, headers={"stripe-signature": "t=1,v1=abc"})

    assert response.status_code == 200
    headers, raw = gateway.parse_webhook.call_args[0]
    assert raw == body
    assert headers["stripe-signature"] == "t=1,v1=abc"
    assert store.get("acct_1").current_tier == Tier.STANDARD


def test_webhook_bad_signature_is_400(client, gateway):
    gateway.parse_webhook.side_effect = WebhookSignatureError("Invalid signature")
    response = client.post("/webhooks/billing", content=b"{}", headers={"stripe-signature": "t=1,v1=bad"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "invalid_signature"


def test_webhook_processing_failure_still_acknowledged(client, gateway, monkeypatch, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)

    def boom(*args, **kwargs):
        raise RuntimeError("db hiccup")

    monkeypatch.setattr(store, "apply_reconciled_state", boom)
    gateway.parse_webhook.return_value = subscription_event("evt_1", tier=Tier.PREMIUM)

    response = client.post("/webhooks/billing", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert response.status_code == 200
    assert response.json()["outcome"] == "failed"


def test_webhook_duplicate(client, gateway, paid_account, subscription_event):
    paid_account(tier=Tier.STANDARD)
    gateway.parse_webhook.return_value = subscription_event("evt_1", cancel_at_period_end=True)

    first = client.post("/webhooks/billing", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    second = client.post("/webhooks/billing", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert first.json()["outcome"] == "applied"
    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"


def test_plan_limits(client, paid_account):
    paid_account(tier=Tier.STANDARD)
    emit_usage_event("acct_1", "products")

    response = client.get("/subscriptions/plan-limits", headers=ACCT)
    assert response.status_code == 200
    body = response.json()
    assert body["tier"] == "standard"
    assert body["resources"]["products"]["usage"] == 1
    assert body["resources"]["products"]["limit"] == 10


def test_history_newest_first(client, gateway, paid_account):
    paid_account(tier=Tier.STANDARD)
    client.post("/subscriptions/cancel", headers=ACCT)

    response = client.get("/subscriptions/history", headers=ACCT)
    assert response.status_code == 200
    events = [entry["eventType"] for entry in response.json()]
    assert events[0] == "cancel_scheduled"
    assert "customer_attached" in events
    assert "upgrade_confirmed" in events
