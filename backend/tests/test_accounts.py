from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import select

from renvo.core.config import settings
from renvo.enums import Provider, SubscriptionStatus, Tier
from renvo.exceptions import StateConflict
from renvo.models import DeletionRecord, Subscription, as_utc
from renvo.services import accounts

T = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)


def _live_subscription(db, user, provider=Provider.card_gateway):
    sub = Subscription(
        user_id=user.id,
        tier=Tier.premium,
        status=SubscriptionStatus.active,
        provider=provider,
        provider_subscription_ref="sub_live",
        current_period_end=T + timedelta(days=20),
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def test_request_deletion_is_idempotent(db, user):
    first = accounts.request_deletion(db, user, reason="too expensive", now=T)
    second = accounts.request_deletion(db, user, now=T + timedelta(days=2))

    assert first.id == second.id
    assert as_utc(first.purge_at) == T + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS)
    assert len(db.exec(select(DeletionRecord)).all()) == 1


def test_request_deletion_cancels_live_subscription_at_period_end(db, user, fake_adapter):
    adapter = fake_adapter(Provider.card_gateway)
    sub = _live_subscription(db, user)

    accounts.request_deletion(db, user, now=T)

    assert adapter.cancelled == [("sub_live", True)]
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.active


def test_provider_cancel_failure_does_not_block_deletion(db, user, fake_adapter):
    adapter = fake_adapter(Provider.card_gateway)
    adapter.cancel_error = RuntimeError("gateway unavailable")
    _live_subscription(db, user)

    record = accounts.request_deletion(db, user, now=T)

    assert record.id is not None
    assert accounts.deletion_status(db, user, now=T)["pending_deletion"] is True


def test_recover_inside_window(db, user):
    accounts.request_deletion(db, user, now=T)
    deadline = T + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS)

    record = accounts.recover(db, user, now=deadline - timedelta(seconds=1))

    assert record.recovered_at is not None
    assert accounts.deletion_status(db, user, now=deadline)["pending_deletion"] is False


def test_recover_after_window_is_refused(db, user):
    accounts.request_deletion(db, user, now=T)
    with pytest.raises(StateConflict):
        accounts.recover(db, user, now=T + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS))


def test_recover_without_pending_deletion_is_refused(db, user):
    with pytest.raises(StateConflict):
        accounts.recover(db, user, now=T)


def test_deletion_can_be_requested_again_after_recovery(db, user):
    first = accounts.request_deletion(db, user, now=T)
    accounts.recover(db, user, now=T + timedelta(days=1))
    second = accounts.request_deletion(db, user, now=T + timedelta(days=2))
    assert second.id != first.id


@pytest.mark.parametrize(
    "elapsed, remaining",
    [
        (timedelta(0), 30),
        (timedelta(days=29, hours=23, minutes=59), 1),
        (timedelta(days=10, hours=1), 20),
        (timedelta(days=31), 0),
    ],
)
def test_days_remaining(db, user, elapsed, remaining):
    accounts.request_deletion(db, user, now=T)
    status = accounts.deletion_status(db, user, now=T + elapsed)
    assert status["days_remaining"] == remaining
    assert status["purge_at"] == T + timedelta(days=settings.ACCOUNT_DELETION_GRACE_DAYS)


def test_account_endpoints(client, db, user, auth_headers):
    r = client.get("/api/v1/account/status", headers=auth_headers)
    assert r.json()["data"]["pending_deletion"] is False

    r = client.post("/api/v1/account/delete", json={"reason": "moving on"}, headers=auth_headers)
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["pending_deletion"] is True
    assert data["days_remaining"] == settings.ACCOUNT_DELETION_GRACE_DAYS
    record = db.exec(select(DeletionRecord).where(DeletionRecord.user_id == user.id)).one()
    assert record.reason == "moving on"

    assert client.post("/api/v1/account/delete", headers=auth_headers).status_code == 200
    assert len(db.exec(select(DeletionRecord)).all()) == 1

    r = client.post("/api/v1/account/recover", headers=auth_headers)
    assert r.status_code == 200
    assert r.json()["data"]["pending_deletion"] is False

    r = client.post("/api/v1/account/recover", headers=auth_headers)
    assert r.status_code == 409
    assert r.json()["code"] == 409301
