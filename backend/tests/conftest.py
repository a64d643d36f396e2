from __future__ import annotations

import json
from collections.abc import Generator
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, delete

from renvo.api.deps import get_db
from renvo.core import db as core_db
from renvo.core.config import settings
from renvo.core.security import create_access_token
from renvo.enums import Provider
from renvo.main import app
from renvo.models import (
    DeletionRecord,
    PaymentConfirmation,
    PaymentEvent,
    PendingReceipt,
    RecurringItem,
    Subscription,
    Transaction,
    User,
)
from renvo.providers import registry
from renvo.providers.base import NormalizedEvent, ProviderSnapshot, ValidatedReceipt
from renvo.providers.card_gateway import CardGatewayAdapter
from renvo.providers.mobile_iap import MobileIapAdapter
from renvo.services import notifier as notifier_module

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
JOBS_SECRET = "jobs-test-secret"


class RecordingNotifier(notifier_module.Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, dict[str, Any]]] = []

    def notify(self, user_id: int, kind: str, **data: Any) -> None:
        self.sent.append((user_id, kind, data))

    def kinds(self, kind: str) -> list[tuple[int, dict[str, Any]]]:
        return [(user_id, data) for user_id, k, data in self.sent if k == kind]


class FakeRedis:
    def __init__(self) -> None:
        self.locks: dict[str, str] = {}
        self.messages: list[tuple[str, dict[str, str]]] = []

    def acquire_lock(self, lock_key: str, lock_value: str, expire_seconds: int = 30) -> bool:
        if lock_key in self.locks:
            return False
        self.locks[lock_key] = lock_value
        return True

    def release_lock(self, lock_key: str, lock_value: str) -> bool:
        if self.locks.get(lock_key) == lock_value:
            del self.locks[lock_key]
            return True
        return False

    def xadd(self, name: str, fields: dict[str, str], maxlen: int | None = None) -> str:
        self.messages.append((name, fields))
        return f"{len(self.messages)}-0"


class FakeAdapter:
    """A scriptable payment provider: tests set snapshots and receipt outcomes directly."""

    def __init__(self, provider: Provider) -> None:
        self.provider = provider
        self.snapshots: dict[str, ProviderSnapshot] = {}
        self.status_errors: dict[str, Exception] = {}
        self.customer_subscriptions: dict[str, list[ProviderSnapshot]] = {}
        self.receipt_results: list[ValidatedReceipt | Exception] = []
        self.receipt_calls = 0
        self.status_calls: list[str] = []
        self.cancelled: list[tuple[str, bool]] = []
        self.cancel_error: Exception | None = None

    def verify_webhook(self, body: bytes, headers: dict[str, str]) -> dict[str, Any]:
        return json.loads(body)

    def parse_event(self, payload: dict[str, Any]) -> NormalizedEvent:
        raise NotImplementedError

    def validate_receipt(self, raw_receipt: str) -> ValidatedReceipt:
        self.receipt_calls += 1
        result = self.receipt_results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def get_status(self, subscription_ref: str) -> ProviderSnapshot:
        self.status_calls.append(subscription_ref)
        if subscription_ref in self.status_errors:
            raise self.status_errors[subscription_ref]
        return self.snapshots[subscription_ref]

    def list_customer_subscriptions(self, customer_ref: str) -> list[ProviderSnapshot]:
        return list(self.customer_subscriptions.get(customer_ref, []))

    def cancel(self, subscription_ref: str, at_period_end: bool = True) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append((subscription_ref, at_period_end))


def _unreachable(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("network disabled in tests", request=request)


@pytest.fixture(scope="session")
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    return engine


@pytest.fixture(autouse=True)
def _environment(engine, monkeypatch) -> Generator[RecordingNotifier, None, None]:
    # Background tasks and workers open their own sessions on core.db.engine.
    monkeypatch.setattr(core_db, "engine", engine)
    monkeypatch.setattr(settings, "PROVIDER_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(settings, "PROVIDER_BACKOFF_MAX_SECONDS", 0.0)
    monkeypatch.setattr(settings, "JOBS_SECRET", JOBS_SECRET)

    recorder = RecordingNotifier()
    notifier_module.set_notifier(recorder)

    registry.reset_adapters()
    registry.register_adapter(
        Provider.card_gateway, CardGatewayAdapter(webhook_secret=STRIPE_WEBHOOK_SECRET)
    )
    registry.register_adapter(
        Provider.mobile_iap,
        MobileIapAdapter(
            http_client=httpx.Client(transport=httpx.MockTransport(_unreachable)),
            trusted_fingerprints=[],
        ),
    )
    yield recorder
    registry.reset_adapters()
    notifier_module.set_notifier(None)


@pytest.fixture
def notifications(_environment) -> RecordingNotifier:
    return _environment


@pytest.fixture
def fake_adapter():
    def _register(provider: Provider = Provider.card_gateway) -> FakeAdapter:
        adapter = FakeAdapter(provider)
        registry.register_adapter(provider, adapter)
        return adapter

    return _register


@pytest.fixture
def fake_redis(monkeypatch) -> FakeRedis:
    fake = FakeRedis()
    monkeypatch.setattr("renvo.worker.tasks.get_redis_client", lambda: fake)
    return fake


@pytest.fixture(scope="function")
def db(engine) -> Generator[Session, None, None]:
    with Session(engine) as session:
        yield session
        session.rollback()
        # Clean tables after each test (children first).
        session.exec(delete(PaymentConfirmation))
        session.exec(delete(RecurringItem))
        session.exec(delete(Transaction))
        session.exec(delete(PendingReceipt))
        session.exec(delete(PaymentEvent))
        session.exec(delete(DeletionRecord))
        session.exec(delete(Subscription))
        session.exec(delete(User))
        session.commit()


@pytest.fixture(scope="function")
def client(engine, db) -> Generator[TestClient, None, None]:
    def _override_get_db() -> Generator[Session, None, None]:
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def user(db) -> User:
    user = User(email="payer@example.com")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def jobs_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {JOBS_SECRET}"}
