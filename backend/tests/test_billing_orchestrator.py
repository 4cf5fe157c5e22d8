from __future__ import annotations

from datetime import timedelta

import pytest
import sqlalchemy as sa

from cobros.models import Invoice, Subscription
from cobros.services import billing
from cobros.services.charges import ChargeResult
from cobros.core.security import now_utc
from tests.testkit import ChargeRecorder, RecordingNotifier, create_invoice, create_subscription, utc

NOW = utc(2026, 3, 1, 12)
DUE = utc(2026, 3, 1)


@pytest.fixture()
def recorder(monkeypatch):
    rec = ChargeRecorder("approved")
    monkeypatch.setattr(billing, "process_charge", rec)
    return rec


def _invoices(db, sub) -> list[Invoice]:
    db.expire_all()
    return list(db.execute(sa.select(Invoice).where(Invoice.subscription_id == sub.id)).scalars().all())


def _reload(db, sub) -> Subscription:
    db.expire_all()
    return db.get(Subscription, sub.id)


def test_successful_charge_pays_invoice_and_advances_cycle(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE, price=50000)
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["processed"] == 1
    assert summary["successful"] == 1
    assert summary["errors"] == []
    assert summary["results"][str(sub.id)]["success"] is True

    (invoice,) = _invoices(db, sub)
    assert invoice.status == "paid"
    assert (invoice.amount, invoice.platform_fee, invoice.net_amount) == (50000, 1000, 49000)
    assert invoice.gateway_transaction_id == "tx-1"
    assert invoice.paid_at == NOW
    assert invoice.due_date == DUE
    assert invoice.billing_period_end == utc(2026, 4, 1)

    fresh = _reload(db, sub)
    assert fresh.next_billing_date == utc(2026, 4, 1)
    assert fresh.current_period_start == DUE
    assert fresh.current_period_end == utc(2026, 4, 1)
    assert fresh.billing_cycle_count == 1

    call = recorder.calls[0]
    assert call["gateway"] == "wompi"
    assert call["token"] == "54321"
    assert call["amount"] == 50000
    assert call["reference"].startswith("INV-")
    assert call["reference"] == invoice.gateway_reference
    assert notifier.types == ["payment_success"]
    assert notifier.sent[0][1].data["invoice_number"] == invoice.invoice_number


def test_failed_charge_schedules_retry_on_same_invoice(db, session_factory, monkeypatch, notifier):
    recorder = ChargeRecorder("declined", "approved")
    monkeypatch.setattr(billing, "process_charge", recorder)
    sub = create_subscription(db, next_billing=DUE)
    db.commit()

    first = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)
    assert first["failed"] == 1
    (invoice,) = _invoices(db, sub)
    assert invoice.status == "failed"
    assert invoice.attempt_count == 1
    assert invoice.last_error == "Fondos insuficientes"
    assert invoice.next_retry_at == NOW + timedelta(hours=24)
    assert _reload(db, sub).status == "active"
    assert _reload(db, sub).next_billing_date == DUE
    assert notifier.types == ["payment_failed"]

    waiting = billing.run_billing_pass(session_factory, now=NOW + timedelta(hours=1), notifier=notifier)
    assert waiting["skipped"] == 1
    assert len(recorder.calls) == 1

    retry = billing.run_billing_pass(session_factory, now=NOW + timedelta(hours=25), notifier=notifier)
    assert retry["successful"] == 1
    (invoice,) = _invoices(db, sub)
    assert invoice.status == "paid"
    assert invoice.attempt_count == 1
    assert recorder.calls[0]["reference"] != recorder.calls[1]["reference"]
    assert _reload(db, sub).next_billing_date == utc(2026, 4, 1)


def test_retry_due_within_grace_window_runs_on_this_tick(db, session_factory, recorder, notifier):
    almost = create_subscription(db, next_billing=DUE)
    create_invoice(db, almost, status="failed", attempt_count=1, next_retry_at=NOW + timedelta(minutes=5))
    later = create_subscription(db, next_billing=DUE)
    create_invoice(db, later, status="failed", attempt_count=1, next_retry_at=NOW + timedelta(hours=1))
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["successful"] == 1
    assert summary["skipped"] == 1
    assert _invoices(db, almost)[0].status == "paid"
    assert _invoices(db, later)[0].status == "failed"
    assert len(recorder.calls) == 1


def test_exhausted_retries_move_subscription_past_due(db, session_factory, monkeypatch, notifier):
    recorder = ChargeRecorder("declined")
    monkeypatch.setattr(billing, "process_charge", recorder)
    sub = create_subscription(db, next_billing=DUE)
    db.commit()

    for hours in (0, 25, 50):
        billing.run_billing_pass(session_factory, now=NOW + timedelta(hours=hours), notifier=notifier)

    (invoice,) = _invoices(db, sub)
    assert invoice.attempt_count == 3
    assert invoice.next_retry_at is None
    assert invoice.status == "failed"
    assert _reload(db, sub).status == "past_due"

    later = billing.run_billing_pass(session_factory, now=NOW + timedelta(hours=80), notifier=notifier)
    assert later["processed"] == 0
    assert len(recorder.calls) == 3


def test_paid_invoice_is_recovered_without_charging(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE)
    create_invoice(db, sub, status="paid", paid_at=NOW - timedelta(hours=2))
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["recovered"] == 1
    assert recorder.calls == []
    fresh = _reload(db, sub)
    assert fresh.next_billing_date == utc(2026, 4, 1)
    assert fresh.billing_cycle_count == 1
    assert len(_invoices(db, sub)) == 1


def test_invoice_in_flight_is_not_charged_again(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE)
    create_invoice(db, sub, status="processing", gateway_reference="INV-INFLIGHT-1-AAAAAA")
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["skipped"] == 1
    assert recorder.calls == []
    assert _invoices(db, sub)[0].status == "processing"


def test_trial_becomes_active_after_first_charge(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE, status="trialing", trial_end=DUE)
    db.commit()

    billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    fresh = _reload(db, sub)
    assert fresh.status == "active"
    assert fresh.next_billing_date == utc(2026, 4, 1)


def test_trial_not_yet_over_is_not_charged(db, session_factory, recorder, notifier):
    create_subscription(db, next_billing=NOW + timedelta(days=3), status="trialing", trial_end=NOW + timedelta(days=3))
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)
    assert summary["processed"] == 0
    assert recorder.calls == []


def test_cancel_at_period_end_cancels_instead_of_charging(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE, cancel_at_period_end=True)
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["cancelled"] == 1
    assert recorder.calls == []
    fresh = _reload(db, sub)
    assert fresh.status == "cancelled"
    assert fresh.cancelled_at == NOW
    assert fresh.cancellation_reason == "cancel_at_period_end"
    assert notifier.types == ["cancellation"]
    assert _invoices(db, sub) == []


@pytest.mark.parametrize("status", ["paused", "cancelled", "past_due"])
def test_non_billable_statuses_are_not_selected(db, session_factory, recorder, notifier, status):
    create_subscription(db, next_billing=DUE, status=status)
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)
    assert summary["processed"] == 0
    assert recorder.calls == []


def test_notification_failure_does_not_undo_payment(db, session_factory, recorder):
    sub = create_subscription(db, next_billing=DUE)
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=RecordingNotifier(fail=True))

    assert summary["successful"] == 1
    assert summary["errors"] == []
    assert _invoices(db, sub)[0].status == "paid"
    assert _reload(db, sub).billing_cycle_count == 1


def test_broken_subscriptions_are_reported_as_anomalies(db, session_factory, recorder, notifier):
    inactive_card = create_subscription(db, next_billing=DUE)
    inactive_card.payment_method.is_active = False
    inactive_plan = create_subscription(db, next_billing=DUE)
    inactive_plan.plan.is_active = False
    no_card = create_subscription(db, next_billing=DUE)
    no_card.payment_method_id = None
    broken_config = create_subscription(db, next_billing=DUE)
    broken_config.merchant.gateway_config = {"public_key": "pub_only"}
    db.commit()

    ready, anomalies = billing.select_due_subscriptions(db, now=NOW)
    assert ready == []
    reasons = {a["subscription_id"]: a["reason"] for a in anomalies}
    assert reasons == {
        str(inactive_card.id): "payment_method_inactive",
        str(inactive_plan.id): "plan_inactive",
        str(no_card.id): "payment_method_missing",
        str(broken_config.id): "gateway_config_invalid",
    }

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)
    assert summary["anomalies"] == 4
    assert summary["processed"] == 0
    assert recorder.calls == []


def test_gateway_mismatch_is_an_anomaly(db, session_factory, recorder):
    sub = create_subscription(db, next_billing=DUE)
    sub.payment_method.gateway = "payu"
    db.commit()

    _, anomalies = billing.select_due_subscriptions(db, now=NOW)
    assert anomalies == [{"subscription_id": str(sub.id), "reason": "payment_method_gateway_mismatch"}]


def test_unexpected_dispatch_error_becomes_failed_attempt(db, session_factory, monkeypatch, notifier):
    def explode(*args, **kwargs):
        raise RuntimeError("socket cerrado")

    monkeypatch.setattr(billing, "process_charge", explode)
    sub = create_subscription(db, next_billing=DUE)
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    assert summary["failed"] == 1
    (invoice,) = _invoices(db, sub)
    assert invoice.status == "failed"
    assert invoice.last_error == "Error inesperado: socket cerrado"


def test_limit_caps_a_pass(db, session_factory, recorder, notifier):
    for day in (1, 2, 3):
        create_subscription(db, next_billing=utc(2026, 2, day))
    db.commit()

    summary = billing.run_billing_pass(session_factory, now=NOW, limit=2, notifier=notifier)
    assert summary["processed"] == 2
    assert len(recorder.calls) == 2


def test_parallel_pass_charges_each_subscription_once(file_session_factory, monkeypatch, notifier):
    recorder = ChargeRecorder("approved")
    monkeypatch.setattr(billing, "process_charge", recorder)
    db = file_session_factory()
    try:
        ids = {str(create_subscription(db, next_billing=DUE).id) for _ in range(6)}
        db.commit()
    finally:
        db.close()

    summary = billing.run_billing_pass(file_session_factory, now=NOW, max_workers=4, notifier=notifier)

    assert summary["processed"] == 6
    assert summary["successful"] == 6
    assert summary["errors"] == []
    assert set(summary["results"]) == ids
    assert len(recorder.calls) == 6
    assert len({call["reference"] for call in recorder.calls}) == 6
    assert notifier.types == ["payment_success"] * 6

    db = file_session_factory()
    try:
        invoices = db.execute(sa.select(Invoice)).scalars().all()
        assert sorted(str(i.subscription_id) for i in invoices) == sorted(ids)
        assert {i.status for i in invoices} == {"paid"}
        subs = db.execute(sa.select(Subscription)).scalars().all()
        assert {s.next_billing_date for s in subs} == {utc(2026, 4, 1)}
    finally:
        db.close()

    again = billing.run_billing_pass(file_session_factory, now=NOW, max_workers=4, notifier=notifier)
    assert again["processed"] == 0
    assert len(recorder.calls) == 6


def test_custom_fee_percent_is_applied(db, session_factory, recorder, notifier):
    sub = create_subscription(db, next_billing=DUE, price=33333)
    sub.merchant.platform_fee_percent = 3.5
    db.commit()

    billing.run_billing_pass(session_factory, now=NOW, notifier=notifier)

    (invoice,) = _invoices(db, sub)
    assert invoice.platform_fee == 1167
    assert invoice.net_amount == 32166


def _result(success: bool, tx: str = "tx-9", error: str | None = None) -> ChargeResult:
    return ChargeResult(
        success=success,
        gateway="wompi",
        amount=50000,
        currency="COP",
        timestamp=now_utc(),
        gateway_state="approved" if success else "declined",
        transaction_id=tx,
        error=error,
    )


def test_apply_outcome_ignores_terminal_invoices(db):
    sub = create_subscription(db, next_billing=DUE)
    invoice = create_invoice(db, sub, status="paid")

    out = billing.apply_charge_outcome(db, invoice, _result(False, error="tarde"), now=NOW)
    assert out["applied"] is False
    assert invoice.status == "paid"


def test_apply_outcome_ignores_repeated_failure_for_same_transaction(db):
    sub = create_subscription(db, next_billing=DUE)
    invoice = create_invoice(db, sub, status="failed", attempt_count=1, gateway_transaction_id="tx-9")

    out = billing.apply_charge_outcome(db, invoice, _result(False, tx="tx-9", error="rechazo"), now=NOW)
    assert out["applied"] is False
    assert invoice.attempt_count == 1


def test_apply_success_for_past_cycle_keeps_schedule(db):
    sub = create_subscription(db, next_billing=DUE)
    old = create_invoice(db, sub, status="failed", due_date=utc(2026, 2, 1), attempt_count=3)

    out = billing.apply_charge_outcome(db, old, _result(True), now=NOW)
    assert out["status"] == "paid"
    assert old.status == "paid"
    assert sub.next_billing_date == DUE
    assert sub.billing_cycle_count == 0


def test_late_success_reactivates_past_due_subscription(db):
    sub = create_subscription(db, next_billing=DUE, status="past_due")
    invoice = create_invoice(db, sub, status="failed", attempt_count=3)

    billing.apply_charge_outcome(db, invoice, _result(True), now=NOW)
    assert sub.status == "active"
    assert sub.next_billing_date == utc(2026, 4, 1)


def test_renewal_reminders_are_sent_once_per_cycle(db, session_factory, notifier):
    soon = create_subscription(db, next_billing=NOW + timedelta(days=2))
    create_subscription(db, next_billing=NOW + timedelta(days=10))
    create_subscription(db, next_billing=NOW + timedelta(days=1), cancel_at_period_end=True)
    db.commit()

    first = billing.send_renewal_reminders(session_factory, now=NOW, notifier=notifier)
    assert first == {"candidates": 1, "sent": 1}
    assert notifier.types == ["renewal_reminder"]
    assert notifier.sent[0][1].data["subscription_id"] == str(soon.id)

    second = billing.send_renewal_reminders(session_factory, now=NOW, notifier=notifier)
    assert second == {"candidates": 0, "sent": 0}


def test_scheduled_run_reports_every_section(db, session_factory, recorder, notifier):
    create_subscription(db, next_billing=DUE)
    db.commit()

    out = billing.run_scheduled_billing(session_factory, now=NOW, notifier=notifier)

    assert set(out) == {"subscription_charges", "merchant_charges", "renewal_reminders", "errors"}
    assert out["subscription_charges"]["successful"] == 1
    assert out["merchant_charges"]["processed"] == 0
    assert out["errors"] == []


def test_stale_processing_invoices(db):
    sub = create_subscription(db, next_billing=DUE)
    stale = create_invoice(db, sub, status="processing", updated_at=NOW - timedelta(hours=2))
    other = create_subscription(db, next_billing=DUE)
    create_invoice(db, other, status="processing", updated_at=NOW - timedelta(minutes=5))
    db.commit()

    rows = billing.stale_processing_invoices(db, now=NOW)
    assert [r.id for r in rows] == [stale.id]
