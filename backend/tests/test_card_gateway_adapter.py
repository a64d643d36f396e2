from datetime import datetime, timezone

import pytest
import stripe

from renvo.enums import SubscriptionStatus
from renvo.exceptions import DefinitiveRejection, TransientNetworkFailure
from renvo.providers.card_gateway import CardGatewayAdapter, map_stripe_status

START = 1767225600  # 2026-01-01T00:00:00Z
END = 1769904000  # 2026-02-01T00:00:00Z


def _stripe_subscription(**overrides):
    sub = {
        "id": "sub_123",
        "object": "subscription",
        "status": "active",
        "customer": "cus_123",
        "cancel_at_period_end": False,
        "created": START,
        "livemode": False,
        "latest_invoice": "in_123",
        "metadata": {"user_id": "7"},
        "items": {
            "data": [
                {
                    "current_period_start": START,
                    "current_period_end": END,
                    "price": {"product": "prod_premium", "recurring": {"interval": "year", "interval_count": 1}},
                }
            ]
        },
    }
    sub.update(overrides)
    return sub


@pytest.fixture
def adapter():
    return CardGatewayAdapter(api_key="sk_test_123", webhook_secret="whsec_x")


class _Calls(list):
    """Records Stripe SDK calls made through fakes built by `fake`."""

    def fake(self, name, result=None, error=None):
        def _call(*args, **kwargs):
            self.append((name, args, kwargs))
            if error is not None:
                raise error
            return result

        return _call


@pytest.fixture
def calls():
    return _Calls()


def test_get_status_reads_period_from_items(adapter, calls, monkeypatch):
    monkeypatch.setattr(stripe.Subscription, "retrieve", calls.fake("retrieve", _stripe_subscription()))

    snapshot = adapter.get_status("sub_123")

    assert snapshot.status == SubscriptionStatus.active
    assert snapshot.customer_ref == "cus_123"
    assert snapshot.current_period_start == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert snapshot.current_period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert snapshot.billing_cycle == "yearly"
    assert snapshot.product_id == "prod_premium"
    assert snapshot.user_id == 7
    assert calls[0][1] == ("sub_123",)


def test_missing_subscription_reads_as_cancelled(adapter, calls, monkeypatch):
    missing = stripe.InvalidRequestError("No such subscription", "id", code="resource_missing")
    monkeypatch.setattr(stripe.Subscription, "retrieve", calls.fake("retrieve", error=missing))

    snapshot = adapter.get_status("sub_gone")

    assert snapshot.status == SubscriptionStatus.cancelled
    assert snapshot.subscription_ref == "sub_gone"


def test_connection_errors_are_transient(adapter, calls, monkeypatch):
    monkeypatch.setattr(
        stripe.Subscription, "retrieve", calls.fake("retrieve", error=stripe.APIConnectionError("reset"))
    )
    with pytest.raises(TransientNetworkFailure):
        adapter.get_status("sub_123")


def test_list_customer_subscriptions(adapter, calls, monkeypatch):
    listing = {
        "data": [
            _stripe_subscription(id="sub_a", status="canceled"),
            _stripe_subscription(id="sub_b", status="trialing", cancel_at_period_end=True),
        ]
    }
    monkeypatch.setattr(stripe.Subscription, "list", calls.fake("list", listing))

    snapshots = adapter.list_customer_subscriptions("cus_123")

    assert [(s.subscription_ref, s.status, s.cancel_at_period_end) for s in snapshots] == [
        ("sub_a", SubscriptionStatus.cancelled, False),
        ("sub_b", SubscriptionStatus.trialing, True),
    ]
    assert calls[0][2] == {"customer": "cus_123", "status": "all", "limit": 100}


def test_cancel_at_period_end_and_immediately(adapter, calls, monkeypatch):
    monkeypatch.setattr(stripe.Subscription, "modify", calls.fake("modify"))
    monkeypatch.setattr(stripe.Subscription, "cancel", calls.fake("cancel"))

    adapter.cancel("sub_123")
    adapter.cancel("sub_456", at_period_end=False)

    assert calls == [
        ("modify", ("sub_123",), {"cancel_at_period_end": True}),
        ("cancel", ("sub_456",), {}),
    ]


def test_checkout_session_is_accepted_as_receipt(adapter, calls, monkeypatch):
    monkeypatch.setattr(
        stripe.checkout.Session, "retrieve", calls.fake("session", {"id": "cs_1", "subscription": "sub_123"})
    )
    monkeypatch.setattr(stripe.Subscription, "retrieve", calls.fake("retrieve", _stripe_subscription()))

    receipt = adapter.validate_receipt("cs_1")

    assert receipt.environment == "sandbox"
    assert receipt.customer_ref == "cus_123"
    [product] = receipt.products
    assert product.transaction_id == "in_123"
    assert product.original_transaction_id == "sub_123"
    assert product.expires_at == datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("raw", ["", "pi_123", "eyJhbGciOi"])
def test_non_stripe_receipts_are_rejected(adapter, raw):
    with pytest.raises(DefinitiveRejection):
        adapter.validate_receipt(raw)


def test_unknown_receipt_reference_is_rejected(adapter, calls, monkeypatch):
    monkeypatch.setattr(
        stripe.Subscription,
        "retrieve",
        calls.fake("retrieve", error=stripe.InvalidRequestError("No such subscription", "id")),
    )
    with pytest.raises(DefinitiveRejection):
        adapter.validate_receipt("sub_unknown")


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("unpaid", SubscriptionStatus.past_due),
        ("incomplete_expired", SubscriptionStatus.cancelled),
        ("paused", SubscriptionStatus.paused),
        ("something_new", SubscriptionStatus.incomplete),
        (None, SubscriptionStatus.incomplete),
    ],
)
def test_status_map(raw, expected):
    assert map_stripe_status(raw) == expected
