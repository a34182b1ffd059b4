# quikpik/conftest.py
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

# Settings are read at import time; pin them before anything imports quikpik
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["STRIPE_PRICE_STANDARD"] = "price_standard_test"
os.environ["STRIPE_PRICE_PREMIUM"] = "price_premium_test"
os.environ["FRONTEND_URL"] = "https://app.quikpik.test"
os.environ["ADMIN_KEY"] = "admin-test-key"

import pytest  # noqa: E402

from quikpik.core.database import reset_database  # noqa: E402
from quikpik.core.metrics import METRICS  # noqa: E402
from quikpik.features.billing.provider import (  # noqa: E402
    ProviderEvent,
    ProviderEventType,
    SubscriptionGateway,
    SubscriptionSnapshot,
)
from quikpik.features.plans.service import seed_plans  # noqa: E402
from quikpik.features.subscriptions import reconciler, store  # noqa: E402
from quikpik.models.plan import Tier  # noqa: E402
from quikpik.models.subscription import SubscriptionStatus  # noqa: E402


# Fixed clock, far enough ahead that paid periods built from it are current
NOW = datetime(2031, 3, 15, 12, 0, tzinfo=timezone.utc)
PERIOD_START = NOW - timedelta(days=10)
PERIOD_END = NOW + timedelta(days=20)

PRICE_REFS = {
    Tier.STANDARD: "price_standard_test",
    Tier.PREMIUM: "price_premium_test",
}


@pytest.fixture(autouse=True)
def fresh_db():
    """Empty in-memory schema with the seeded catalog for every test."""
    reset_database()
    seed_plans()
    METRICS.reset()
    yield


@pytest.fixture
def gateway():
    """Fake billing gateway returned wherever the service asks for one."""
    mock_gateway = Mock(spec=SubscriptionGateway)
    mock_gateway.ensure_customer.return_value = "cus_123"
    mock_gateway.start_checkout.return_value = "https://checkout.stripe.test/c/pay/cs_test_1"
    mock_gateway.schedule_cancellation.return_value = PERIOD_END
    mock_gateway.change_subscription_price.return_value = PERIOD_END
    mock_gateway.list_prices.return_value = []
    with patch("quikpik.features.billing.service.get_gateway", return_value=mock_gateway):
        yield mock_gateway


@pytest.fixture
def billing_disabled():
    with patch("quikpik.features.billing.service.get_gateway", return_value=None):
        yield


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from quikpik.main import app

    with TestClient(app) as test_client:
        yield test_client


def _snapshot(subscription_ref, tier, status, cancel_at_period_end, period_start, period_end, price_ref=None):
    return SubscriptionSnapshot(
        subscription_ref=subscription_ref,
        status=status,
        tier=tier,
        price_ref=price_ref or PRICE_REFS.get(tier),
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=cancel_at_period_end,
    )


@pytest.fixture
def subscription_event():
    """Build a normalized subscription created/updated/deleted event."""

    def _make(
        event_id,
        event_type=ProviderEventType.SUBSCRIPTION_UPDATED,
        *,
        customer_ref="cus_123",
        subscription_ref="sub_123",
        tier=Tier.STANDARD,
        status=SubscriptionStatus.ACTIVE,
        cancel_at_period_end=False,
        occurred_at=None,
        period_start=PERIOD_START,
        period_end=PERIOD_END,
        price_ref=None,
    ):
        return ProviderEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at or NOW,
            customer_ref=customer_ref,
            subscription=_snapshot(
                subscription_ref, tier, status, cancel_at_period_end, period_start, period_end, price_ref
            ),
            provider_type=f"customer.{event_type.value}",
        )

    return _make


@pytest.fixture
def invoice_event():
    """Build a normalized invoice payment event."""

    def _make(
        event_id,
        succeeded,
        *,
        customer_ref="cus_123",
        subscription_ref="sub_123",
        occurred_at=None,
        amount_paid=None,
        currency=None,
    ):
        event_type = ProviderEventType.PAYMENT_SUCCEEDED if succeeded else ProviderEventType.PAYMENT_FAILED
        return ProviderEvent(
            event_id=event_id,
            event_type=event_type,
            occurred_at=occurred_at or NOW,
            customer_ref=customer_ref,
            invoice_subscription_ref=subscription_ref,
            amount_paid=amount_paid,
            currency=currency,
            provider_type=event_type.value,
        )

    return _make


@pytest.fixture
def paid_account(subscription_event):
    """Put an account on a paid tier the way production does: customer attached, then webhook."""

    def _make(account_id="acct_1", tier=Tier.STANDARD, customer_ref="cus_123", subscription_ref="sub_123"):
        store.attach_customer_ref(account_id, customer_ref)
        event = subscription_event(
            f"evt_setup_{account_id}",
            ProviderEventType.SUBSCRIPTION_CREATED,
            customer_ref=customer_ref,
            subscription_ref=subscription_ref,
            tier=tier,
            occurred_at=NOW - timedelta(hours=1),
        )
        assert reconciler.process_event(event) == "applied"
        return store.get(account_id)

    return _make
