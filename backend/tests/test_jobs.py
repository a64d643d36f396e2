import json
from datetime import timedelta

from conftest import JOBS_SECRET, FakeRedis
from renvo.core.config import settings
from renvo.enums import Provider, SubscriptionStatus, Tier
from renvo.exceptions import TransientNetworkFailure
from renvo.models import Subscription, utc_now
from renvo.providers.base import ProviderSnapshot
from renvo.services.notifier import NOTIFICATION_STREAM_KEY, Notifier
from renvo.worker import tasks
from renvo.worker.scheduler import build_scheduler


def _past_due(db, user, days_ago):
    sub = Subscription(
        user_id=user.id,
        tier=Tier.premium,
        status=SubscriptionStatus.past_due,
        provider=Provider.card_gateway,
        provider_subscription_ref="sub_1",
        provider_customer_ref="cus_1",
        current_period_end=utc_now() + timedelta(days=3),
        past_due_since=utc_now() - timedelta(days=days_ago),
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


# ----------------------------------------------------------------------
# Auth
# ----------------------------------------------------------------------


def test_jobs_require_token(client):
    assert client.post("/api/v1/jobs/reconcile").status_code in (401, 403)
    r = client.post("/api/v1/jobs/reconcile", headers={"Authorization": "Bearer wrong"})
    assert r.status_code == 401


def test_jobs_disabled_without_secret(client, monkeypatch):
    monkeypatch.setattr(settings, "JOBS_SECRET", None)
    r = client.post("/api/v1/jobs/grace-sweep", headers={"Authorization": f"Bearer {JOBS_SECRET}"})
    assert r.status_code == 503


# ----------------------------------------------------------------------
# Endpoints
# ----------------------------------------------------------------------


def test_grace_sweep_endpoint_dry_run_then_real(client, db, user, jobs_headers, fake_adapter):
    adapter = fake_adapter()
    sub = _past_due(db, user, days_ago=settings.PAYMENT_GRACE_PERIOD_DAYS + 1)

    r = client.post("/api/v1/jobs/grace-sweep?dry_run=true", headers=jobs_headers)
    assert r.status_code == 200
    sweeps = {s["name"]: s for s in r.json()["data"]["sweeps"]}
    assert sweeps["payment_failure"]["found"] == 1
    assert sweeps["payment_failure"]["finalized"] == 0
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.past_due
    assert adapter.cancelled == []

    r = client.post("/api/v1/jobs/grace-sweep", headers=jobs_headers)
    sweeps = {s["name"]: s for s in r.json()["data"]["sweeps"]}
    assert sweeps["payment_failure"]["finalized"] == 1
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.tier == Tier.free
    assert adapter.cancelled == [("sub_1", False)]


def test_reconcile_endpoint(client, db, user, jobs_headers, fake_adapter):
    adapter = fake_adapter()
    sub = _past_due(db, user, days_ago=1)
    adapter.snapshots["sub_1"] = ProviderSnapshot(
        subscription_ref="sub_1",
        status=SubscriptionStatus.active,
        customer_ref="cus_1",
        current_period_end=utc_now() + timedelta(days=30),
    )

    r = client.post("/api/v1/jobs/reconcile?dry_run=true", headers=jobs_headers)
    data = r.json()["data"]
    assert (data["dry_run"], data["checked"], data["drifted"], data["corrected"]) == (True, 1, 1, 0)

    r = client.post("/api/v1/jobs/reconcile", headers=jobs_headers)
    assert r.json()["data"]["corrected"] == 1
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.active
    assert sub.past_due_since is None


# ----------------------------------------------------------------------
# Worker
# ----------------------------------------------------------------------


def test_worker_sweep_runs_under_lock(db, user, fake_redis, fake_adapter):
    fake_adapter()
    sub = _past_due(db, user, days_ago=settings.PAYMENT_GRACE_PERIOD_DAYS + 1)

    reports = tasks.run_grace_sweeps()

    assert {r.name for r in reports} == {"payment_failure", "account_deletion", "cancellation_lapse"}
    assert fake_redis.locks == {}
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled


def test_worker_skips_when_lock_is_held(db, user, fake_redis, fake_adapter):
    adapter = fake_adapter()
    fake_redis.locks[tasks.RECONCILE_LOCK_KEY] = "other-worker"
    _past_due(db, user, days_ago=1)

    assert tasks.run_reconciliation() is None
    assert adapter.status_calls == []
    assert fake_redis.locks[tasks.RECONCILE_LOCK_KEY] == "other-worker"


def test_worker_receipt_retry_with_nothing_due(fake_redis):
    report = tasks.retry_pending_receipts_job()
    assert report.found == 0


def test_scheduler_registers_jobs():
    scheduler = build_scheduler()
    assert {job.id for job in scheduler.get_jobs()} == {"reconcile", "grace_sweep", "receipt_retry"}


# ----------------------------------------------------------------------
# Subscription cancel and health check
# ----------------------------------------------------------------------


def test_cancel_without_subscription_is_not_found(client, user, auth_headers):
    r = client.post("/api/v1/subscription/cancel", headers=auth_headers)
    assert r.status_code == 404
    assert r.json()["code"] == 404101


def test_cancel_requests_provider_cancel(client, db, user, auth_headers, fake_adapter):
    adapter = fake_adapter()
    _past_due(db, user, days_ago=1)

    r = client.post("/api/v1/subscription/cancel", json={"at_period_end": False}, headers=auth_headers)

    assert r.status_code == 200
    assert r.json()["data"] == {"requested": True, "provider": "card_gateway", "at_period_end": False}
    assert adapter.cancelled == [("sub_1", False)]


def test_cancel_unsupported_for_app_store(client, db, user, auth_headers):
    sub = _past_due(db, user, days_ago=1)
    sub.provider = Provider.mobile_iap
    db.add(sub)
    db.commit()

    r = client.post("/api/v1/subscription/cancel", headers=auth_headers)
    assert r.status_code == 400
    assert r.json()["code"] == 400102


def test_cancel_reports_provider_outage_in_envelope(client, db, user, auth_headers, fake_adapter):
    adapter = fake_adapter()
    adapter.cancel_error = TransientNetworkFailure("Stripe connection error")
    _past_due(db, user, days_ago=1)

    r = client.post("/api/v1/subscription/cancel", headers=auth_headers)

    assert r.status_code == 503
    assert r.json()["code"] == 503101
    assert adapter.cancelled == []


def test_health_check(client):
    r = client.get("/api/v1/utils/health-check/")
    assert r.status_code == 200
    assert r.json() is True


def test_notifier_publishes_to_redis_stream(monkeypatch):
    fake = FakeRedis()
    monkeypatch.setattr("renvo.services.notifier.get_redis_client", lambda: fake)

    Notifier().notify(42, "grace_ending_soon", grace="payment_failure", ends_at="2026-05-08T08:00:00+00:00")

    [(stream, fields)] = fake.messages
    assert stream == NOTIFICATION_STREAM_KEY
    assert fields["user_id"] == "42"
    assert fields["kind"] == "grace_ending_soon"
    assert json.loads(fields["data"])["grace"] == "payment_failure"
