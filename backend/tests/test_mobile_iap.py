from __future__ import annotations

import base64
import json
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from sqlmodel import select

from renvo.core.config import settings
from renvo.core.retry import RetryPolicy
from renvo.enums import Provider, ReceiptOutcome, SubscriptionStatus, Tier
from renvo.exceptions import DefinitiveRejection, SignatureInvalid, TransientNetworkFailure
from renvo.models import Subscription
from renvo.providers import apple_jws, registry
from renvo.providers.mobile_iap import MobileIapAdapter
from renvo.services.receipt_validator import ReceiptValidator

BUNDLE_ID = settings.APPLE_BUNDLE_ID
RECEIPT = base64.b64encode(b"receipt-bytes").decode()


class _Chain:
    """Throwaway root -> intermediate -> leaf chain for signing App Store style JWS."""

    def __init__(self, valid_days: int = 1) -> None:
        now = datetime.now(timezone.utc)
        self.root_key = ec.generate_private_key(ec.SECP256R1())
        self.intermediate_key = ec.generate_private_key(ec.SECP256R1())
        self.leaf_key = ec.generate_private_key(ec.SECP256R1())
        self.root = self._cert("Test Root", "Test Root", self.root_key.public_key(), self.root_key, now, valid_days)
        self.intermediate = self._cert(
            "Test Intermediate", "Test Root", self.intermediate_key.public_key(), self.root_key, now, valid_days
        )
        self.leaf = self._cert(
            "Test Leaf", "Test Intermediate", self.leaf_key.public_key(), self.intermediate_key, now, valid_days
        )

    @staticmethod
    def _cert(subject, issuer, public_key, signing_key, now, valid_days) -> x509.Certificate:
        return (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]))
            .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, issuer)]))
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=valid_days))
            .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
            .sign(signing_key, hashes.SHA256())
        )

    @property
    def fingerprint(self) -> str:
        return self.root.fingerprint(hashes.SHA256()).hex()

    def x5c(self) -> list[str]:
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode()
            for cert in (self.leaf, self.intermediate, self.root)
        ]

    def sign(self, payload: dict[str, Any], x5c: list[str] | None = None) -> str:
        return jwt.encode(
            payload, self.leaf_key, algorithm="ES256", headers={"x5c": x5c or self.x5c()}
        )


@pytest.fixture(scope="module")
def chain() -> _Chain:
    return _Chain()


def _ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


# ----------------------------------------------------------------------
# JWS verification
# ----------------------------------------------------------------------


def test_valid_chain_returns_payload(chain):
    token = chain.sign({"notificationType": "TEST"})
    assert apple_jws.verify_signed_payload(token, [chain.fingerprint]) == {"notificationType": "TEST"}


def test_fingerprint_match_ignores_case_and_colons(chain):
    fp = ":".join(chain.fingerprint[i : i + 2] for i in range(0, 64, 2)).upper()
    token = chain.sign({"ok": True})
    assert apple_jws.verify_signed_payload(token, [fp]) == {"ok": True}


def test_untrusted_root_is_rejected(chain):
    other = _Chain()
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(chain.sign({"a": 1}), [other.fingerprint])


def test_no_trusted_roots_configured_is_rejected(chain):
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(chain.sign({"a": 1}), [])


def test_tampered_payload_is_rejected(chain):
    header, _, signature = chain.sign({"price": 1}).split(".")
    forged_body = base64.urlsafe_b64encode(json.dumps({"price": 0}).encode()).decode().rstrip("=")
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(f"{header}.{forged_body}.{signature}", [chain.fingerprint])


def test_chain_too_short_is_rejected(chain):
    token = chain.sign({"a": 1}, x5c=chain.x5c()[:1])
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(token, [chain.fingerprint])


def test_broken_chain_is_rejected(chain):
    other = _Chain()
    leaf, _, root = chain.x5c()
    token = chain.sign({"a": 1}, x5c=[leaf, other.x5c()[1], root])
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(token, [chain.fingerprint])


def test_expired_certificate_is_rejected(chain):
    token = chain.sign({"a": 1})
    later = datetime.now(timezone.utc) + timedelta(days=30)
    with pytest.raises(SignatureInvalid):
        apple_jws.verify_signed_payload(token, [chain.fingerprint], now=later)


# ----------------------------------------------------------------------
# Server Notifications V2
# ----------------------------------------------------------------------


def _notification(chain, notification_type, *, subtype=None, user_id, bundle_id=BUNDLE_ID, **tx_overrides):
    now = datetime.now(timezone.utc)
    tx = {
        "originalTransactionId": "2000000001",
        "transactionId": "2000000001",
        "productId": "renvo.premium.monthly",
        "purchaseDate": _ms(now),
        "expiresDate": _ms(now + timedelta(days=30)),
        "price": 9990,
        "currency": "USD",
        "appAccountToken": str(user_id),
    }
    tx.update(tx_overrides)
    payload = {
        "notificationType": notification_type,
        "notificationUUID": str(uuid.uuid4()),
        "signedDate": _ms(now),
        "data": {
            "bundleId": bundle_id,
            "signedTransactionInfo": chain.sign(tx),
            "signedRenewalInfo": chain.sign({"autoRenewStatus": 0 if subtype == "AUTO_RENEW_DISABLED" else 1}),
        },
    }
    if subtype:
        payload["subtype"] = subtype
    return {"signedPayload": chain.sign(payload)}


@pytest.fixture
def trusted_adapter(chain):
    adapter = MobileIapAdapter(
        http_client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(503))),
        trusted_fingerprints=[chain.fingerprint],
    )
    registry.register_adapter(Provider.mobile_iap, adapter)
    return adapter


def test_subscribed_then_auto_renew_disabled(client, db, user, chain, trusted_adapter, auth_headers):
    r = client.post("/api/v1/webhooks/mobile-iap", json=_notification(chain, "SUBSCRIBED", user_id=user.id))
    assert r.status_code == 200
    assert r.json()["data"]["duplicate"] is False

    sub = db.exec(select(Subscription).where(Subscription.user_id == user.id)).one()
    assert sub.provider == Provider.mobile_iap
    assert sub.provider_subscription_ref == "2000000001"
    assert sub.status == SubscriptionStatus.active
    assert sub.billing_cycle == "monthly"

    time.sleep(0.002)
    r = client.post(
        "/api/v1/webhooks/mobile-iap",
        json=_notification(
            chain, "DID_CHANGE_RENEWAL_STATUS", subtype="AUTO_RENEW_DISABLED", user_id=user.id
        ),
    )
    assert r.status_code == 200
    db.expire_all()
    sub = db.exec(select(Subscription).where(Subscription.user_id == user.id)).one()
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.cancel_at_period_end is True
    assert sub.tier == Tier.premium


def test_notification_for_other_bundle_is_rejected(client, db, user, chain, trusted_adapter):
    r = client.post(
        "/api/v1/webhooks/mobile-iap",
        json=_notification(chain, "SUBSCRIBED", user_id=user.id, bundle_id="com.example.other"),
    )
    assert r.status_code == 401
    assert db.exec(select(Subscription)).all() == []


def test_unsigned_notification_is_rejected(client, trusted_adapter):
    r = client.post("/api/v1/webhooks/mobile-iap", json={"notificationType": "SUBSCRIBED"})
    assert r.status_code == 401
    assert r.json()["code"] == 401001


def test_renewal_failure_notification_does_not_move_period(trusted_adapter, chain):
    payload = trusted_adapter.verify_webhook(
        json.dumps(_notification(chain, "DID_FAIL_TO_RENEW", user_id=1)).encode(), {}
    )
    event = trusted_adapter.parse_event(payload)
    assert event.kind.value == "renewal_failed"
    assert event.period_end is None
    assert str(event.amount) == "9.99"


# ----------------------------------------------------------------------
# verifyReceipt
# ----------------------------------------------------------------------


def _valid_receipt_body(**overrides) -> dict[str, Any]:
    now = datetime.now(timezone.utc)
    body = {
        "status": 0,
        "receipt": {"bundle_id": BUNDLE_ID, "in_app": []},
        "latest_receipt_info": [
            {
                "product_id": "renvo.premium.monthly",
                "transaction_id": "3000000002",
                "original_transaction_id": "3000000001",
                "purchase_date_ms": str(_ms(now)),
                "expires_date_ms": str(_ms(now + timedelta(days=30))),
                "is_trial_period": "false",
            }
        ],
    }
    body.update(overrides)
    return body


class _Script:
    """Replays a list of responses (or exceptions) and remembers which URLs were hit."""

    def __init__(self, *steps) -> None:
        self.steps = list(steps)
        self.urls: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.urls.append(str(request.url))
        step = self.steps.pop(0)
        if isinstance(step, Exception):
            raise step
        if isinstance(step, httpx.Response):
            return step
        return httpx.Response(200, json=step)


def _adapter(script: _Script) -> MobileIapAdapter:
    return MobileIapAdapter(
        bundle_id=BUNDLE_ID,
        shared_secret="shared",
        http_client=httpx.Client(transport=httpx.MockTransport(script)),
        trusted_fingerprints=[],
    )


def test_sandbox_receipt_is_retried_against_sandbox_once():
    script = _Script({"status": 21007}, _valid_receipt_body())
    receipt = _adapter(script).validate_receipt(RECEIPT)
    assert receipt.environment == "sandbox"
    assert script.urls == [settings.APPLE_VERIFY_RECEIPT_URL, settings.APPLE_VERIFY_RECEIPT_SANDBOX_URL]
    assert receipt.products[0].original_transaction_id == "3000000001"


def test_transient_status_is_retried_then_succeeds():
    script = _Script({"status": 21005}, httpx.Response(503), _valid_receipt_body())
    registry.register_adapter(Provider.mobile_iap, _adapter(script))
    result = ReceiptValidator(RetryPolicy(max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)).validate(
        Provider.mobile_iap, RECEIPT
    )
    assert result.outcome == ReceiptOutcome.verified
    assert len(script.urls) == 3


def test_transient_failure_exhausts_attempts():
    script = _Script({"status": 21009}, {"status": 21100}, {"status": 21199})
    registry.register_adapter(Provider.mobile_iap, _adapter(script))
    result = ReceiptValidator(RetryPolicy(max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)).validate(
        Provider.mobile_iap, RECEIPT
    )
    assert result.outcome == ReceiptOutcome.failed_retryable
    assert len(script.urls) == 3


def test_definitive_rejection_is_not_retried():
    script = _Script({"status": 21003})
    registry.register_adapter(Provider.mobile_iap, _adapter(script))
    result = ReceiptValidator(RetryPolicy(max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)).validate(
        Provider.mobile_iap, RECEIPT
    )
    assert result.outcome == ReceiptOutcome.rejected
    assert len(script.urls) == 1


def test_timeout_is_not_retried_inline():
    script = _Script(httpx.ReadTimeout("slow"))
    registry.register_adapter(Provider.mobile_iap, _adapter(script))
    result = ReceiptValidator(RetryPolicy(max_attempts=3, backoff_seconds=0, backoff_max_seconds=0)).validate(
        Provider.mobile_iap, RECEIPT
    )
    assert result.outcome == ReceiptOutcome.failed_retryable
    assert len(script.urls) == 1


@pytest.mark.parametrize("raw", ["", "   ", "eyJhbGciOiJFUzI1NiJ9.e30.sig", "not base64!"])
def test_malformed_receipts_are_rejected_without_network(raw):
    script = _Script()
    with pytest.raises(DefinitiveRejection):
        _adapter(script).validate_receipt(raw)
    assert script.urls == []


def test_bundle_mismatch_is_rejected():
    body = _valid_receipt_body(receipt={"bundle_id": "com.example.other", "in_app": []})
    with pytest.raises(DefinitiveRejection):
        _adapter(_Script(body)).validate_receipt(RECEIPT)


def test_server_error_is_transient():
    with pytest.raises(TransientNetworkFailure) as exc_info:
        _adapter(_Script(httpx.Response(502))).validate_receipt(RECEIPT)
    assert exc_info.value.timed_out is False
