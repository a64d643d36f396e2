from datetime import datetime, timedelta, timezone

from renvo.core.retry import RetryPolicy
from renvo.enums import EventKind, Provider, SubscriptionStatus, Tier
from renvo.exceptions import TransientNetworkFailure
from renvo.models import Subscription, as_utc
from renvo.providers.base import NormalizedEvent, ProviderSnapshot
from renvo.services.grace_period import PAYMENT_FAILURE, GracePeriodManager
from renvo.services.reconciliation import ReconciliationJob, find_drift
from renvo.services.subscriptions import apply_event

NOW = datetime(2026, 6, 1, 0, 0, tzinfo=timezone.utc)
FAST = RetryPolicy(max_attempts=2, backoff_seconds=0, backoff_max_seconds=0)


def _local(db, user, ref, status=SubscriptionStatus.active, period_end=NOW + timedelta(days=5), **kwargs):
    sub = Subscription(
        user_id=user.id,
        tier=Tier.premium,
        status=status,
        provider=Provider.card_gateway,
        provider_customer_ref=kwargs.pop("customer_ref", "cus_1"),
        provider_subscription_ref=ref,
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
        **kwargs,
    )
    db.add(sub)
    db.commit()
    db.refresh(sub)
    return sub


def _snapshot(ref, status=SubscriptionStatus.active, period_end=NOW + timedelta(days=5), **kwargs):
    return ProviderSnapshot(
        subscription_ref=ref,
        status=status,
        customer_ref=kwargs.pop("customer_ref", "cus_1"),
        current_period_start=period_end - timedelta(days=30),
        current_period_end=period_end,
        **kwargs,
    )


def test_find_drift_reports_changed_fields(db, user):
    row = _local(db, user, "sub_1")
    assert find_drift(row, _snapshot("sub_1")) == []
    assert find_drift(row, _snapshot("sub_1", period_end=NOW + timedelta(days=35))) == ["current_period_end"]
    assert find_drift(row, _snapshot("sub_1", cancel_at_period_end=True)) == ["status", "cancel_at_period_end"]
    assert find_drift(row, _snapshot("sub_1", period_end=None)) == []


def test_drift_is_corrected_and_second_run_converges(db, user, fake_adapter, notifications):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1")
    adapter.snapshots["sub_1"] = _snapshot("sub_1", period_end=NOW + timedelta(days=35))

    report = ReconciliationJob(db, FAST).run(now=NOW)

    assert (report.checked, report.drifted, report.corrected, report.failed) == (1, 1, 1, 0)
    db.refresh(sub)
    assert as_utc(sub.current_period_end) == NOW + timedelta(days=35)
    assert sub.last_event_at is None
    assert notifications.sent == []

    second = ReconciliationJob(db, FAST).run(now=NOW + timedelta(minutes=5))
    assert (second.checked, second.drifted, second.corrected) == (1, 0, 0)


def test_scheduled_cancel_is_stored_as_cancelled(db, user, fake_adapter):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1")
    adapter.snapshots["sub_1"] = _snapshot("sub_1", cancel_at_period_end=True)

    ReconciliationJob(db, FAST).run(now=NOW)

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.cancel_at_period_end is True
    assert sub.tier == Tier.premium
    assert ReconciliationJob(db, FAST).run(now=NOW).drifted == 0


def test_provider_past_due_starts_grace(db, user, fake_adapter, notifications):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1")
    adapter.snapshots["sub_1"] = _snapshot("sub_1", status=SubscriptionStatus.past_due)

    ReconciliationJob(db, FAST).run(now=NOW)

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.past_due
    assert as_utc(sub.past_due_since) == NOW
    assert sub.tier == Tier.premium


def test_provider_cancellation_drops_tier(db, user, fake_adapter, notifications):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1")
    adapter.snapshots["sub_1"] = _snapshot(
        "sub_1", status=SubscriptionStatus.cancelled, period_end=NOW - timedelta(days=1)
    )

    ReconciliationJob(db, FAST).run(now=NOW)

    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.tier == Tier.free
    assert notifications.kinds("tier_changed")[0][1]["new"] == "free"


def test_dry_run_reports_without_writing(db, user, fake_adapter):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1")
    adapter.snapshots["sub_1"] = _snapshot("sub_1", status=SubscriptionStatus.past_due)

    report = ReconciliationJob(db, FAST).run(now=NOW, dry_run=True)

    assert report.to_dict()["dry_run"] is True
    assert (report.drifted, report.corrected) == (1, 0)
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.active
    assert sub.past_due_since is None


def test_provider_errors_are_isolated_per_row(db, user, fake_adapter):
    adapter = fake_adapter()
    _local(db, user, "sub_broken", customer_ref="cus_a")
    healthy = _local(db, user, "sub_ok", customer_ref="cus_b")
    adapter.status_errors["sub_broken"] = TransientNetworkFailure("HTTP 503")
    adapter.snapshots["sub_ok"] = _snapshot("sub_ok", customer_ref="cus_b", period_end=NOW + timedelta(days=35))

    report = ReconciliationJob(db, FAST).run(now=NOW)

    assert (report.checked, report.corrected, report.failed) == (2, 1, 1)
    assert adapter.status_calls.count("sub_broken") == 2
    assert report.errors[0]["error"] == "HTTP 503"
    db.refresh(healthy)
    assert as_utc(healthy.current_period_end) == NOW + timedelta(days=35)


def test_rows_without_provider_reference_are_skipped(db, user, fake_adapter):
    adapter = fake_adapter()
    db.add(Subscription(user_id=user.id))
    db.commit()

    report = ReconciliationJob(db, FAST).run(now=NOW)

    assert report.checked == 0
    assert adapter.status_calls == []


def _duplicates(db, user, adapter, older_cancel_flag=False):
    older = _local(db, user, "sub_old", created_at=NOW - timedelta(days=10))
    newer = _local(db, user, "sub_new", created_at=NOW - timedelta(days=1))
    snapshots = [
        _snapshot("sub_old", cancel_at_period_end=older_cancel_flag, created_at=NOW - timedelta(days=10)),
        _snapshot("sub_new", created_at=NOW - timedelta(days=1)),
    ]
    for snap in snapshots:
        adapter.snapshots[snap.subscription_ref] = snap
    adapter.customer_subscriptions["cus_1"] = snapshots
    if older_cancel_flag:
        older.status = SubscriptionStatus.cancelled
        older.cancel_at_period_end = True
        db.add(older)
        db.commit()
    return older, newer


def test_duplicate_live_subscriptions_are_collapsed(db, user, fake_adapter):
    adapter = fake_adapter()
    older, newer = _duplicates(db, user, adapter)

    report = ReconciliationJob(db, FAST).run(now=NOW)

    assert report.collapsed == 1
    assert adapter.cancelled == [("sub_old", False)]
    db.refresh(older)
    db.refresh(newer)
    assert older.status == SubscriptionStatus.cancelled
    assert older.tier == Tier.free
    assert newer.status == SubscriptionStatus.active
    assert newer.tier == Tier.premium


def test_collapse_dry_run_cancels_nothing(db, user, fake_adapter):
    adapter = fake_adapter()
    older, _ = _duplicates(db, user, adapter)

    report = ReconciliationJob(db, FAST).run(now=NOW, dry_run=True)

    assert report.collapsed == 1
    assert adapter.cancelled == []
    db.refresh(older)
    assert older.status == SubscriptionStatus.active


def test_subscription_already_scheduled_to_cancel_is_not_a_duplicate(db, user, fake_adapter):
    adapter = fake_adapter()
    _duplicates(db, user, adapter, older_cancel_flag=True)

    report = ReconciliationJob(db, FAST).run(now=NOW)

    assert report.collapsed == 0
    assert adapter.cancelled == []


# ----------------------------------------------------------------------
# Local endings survive the next reconciliation
# ----------------------------------------------------------------------


def test_refund_stays_free_after_reconciliation(db, user, fake_adapter, notifications):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1", period_end=NOW + timedelta(days=20))
    refund = NormalizedEvent(
        provider=Provider.card_gateway,
        event_id="evt_refund",
        event_type="charge.refunded",
        kind=EventKind.refunded,
        occurred_at=NOW,
        subscription_ref="sub_1",
    )

    apply_event(db, refund, NOW)
    db.commit()

    assert adapter.cancelled == [("sub_1", False)]
    # Stripe honours the cancel but keeps the original period end on the record.
    adapter.snapshots["sub_1"] = _snapshot(
        "sub_1", status=SubscriptionStatus.cancelled, period_end=NOW + timedelta(days=20)
    )

    report = ReconciliationJob(db, FAST).run(now=NOW + timedelta(hours=1))

    assert (report.drifted, report.failed) == (0, 0)
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.tier == Tier.free
    assert as_utc(sub.current_period_end) == NOW


def test_late_renewal_after_refund_and_reconciliation_stays_free(db, user, fake_adapter):
    adapter = fake_adapter()
    sub = _local(db, user, "sub_1", period_end=NOW + timedelta(days=20))
    apply_event(
        db,
        NormalizedEvent(
            provider=Provider.card_gateway,
            event_id="evt_refund",
            event_type="charge.refunded",
            kind=EventKind.refunded,
            occurred_at=NOW,
            subscription_ref="sub_1",
        ),
        NOW,
    )
    db.commit()
    adapter.snapshots["sub_1"] = _snapshot(
        "sub_1", status=SubscriptionStatus.cancelled, period_end=NOW + timedelta(days=20)
    )
    ReconciliationJob(db, FAST).run(now=NOW + timedelta(hours=1))

    late = apply_event(
        db,
        NormalizedEvent(
            provider=Provider.card_gateway,
            event_id="evt_late_renewal",
            event_type="invoice.payment_succeeded",
            kind=EventKind.renewal_succeeded,
            occurred_at=NOW - timedelta(days=10),
            subscription_ref="sub_1",
            period_end=NOW + timedelta(days=20),
        ),
        NOW + timedelta(hours=2),
    )
    db.commit()

    assert late.stale is True
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.tier == Tier.free


def test_finalized_payment_grace_is_not_restarted_by_reconciliation(db, user, fake_adapter, notifications):
    adapter = fake_adapter()
    sub = _local(
        db,
        user,
        "sub_1",
        status=SubscriptionStatus.past_due,
        period_end=NOW + timedelta(days=22),
        past_due_since=NOW - timedelta(days=8),
    )

    sweep = GracePeriodManager(db).sweep(PAYMENT_FAILURE, now=NOW)

    assert sweep.finalized == 1
    assert adapter.cancelled == [("sub_1", False)]
    adapter.snapshots["sub_1"] = _snapshot(
        "sub_1", status=SubscriptionStatus.cancelled, period_end=NOW + timedelta(days=22)
    )

    report = ReconciliationJob(db, FAST).run(now=NOW + timedelta(hours=1))

    assert report.drifted == 0
    db.refresh(sub)
    assert sub.status == SubscriptionStatus.cancelled
    assert sub.tier == Tier.free
    assert sub.past_due_since is None
    assert GracePeriodManager(db).sweep(PAYMENT_FAILURE, now=NOW + timedelta(days=8)).found == 0
