from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta
import logging
from uuid import UUID, uuid4

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload, sessionmaker

from cobros.core.config import settings
from cobros.core.security import now_utc, random_suffix, today_utc
from cobros.models import Customer, Invoice, InvoiceAttempt, Merchant, Plan, PlatformInvoice, Subscription
from cobros.models.invoice import TERMINAL_INVOICE_STATUSES
from cobros.schemas.gateways import parse_gateway_credentials
from cobros.services.billing_dates import add_months, next_billing_date
from cobros.services.charges import ChargeResult, process_charge
from cobros.services.fees import split_amount
from cobros.services.gateways.base import Payer
from cobros.services.notifications import Notifier, Recipient, notify_safely

logger = logging.getLogger(__name__)

BILLABLE_STATUSES = ("active", "trialing")


def build_payer(customer: Customer) -> Payer:
    return Payer(
        customer_id=str(customer.id),
        email=customer.email,
        name=customer.name,
        phone=customer.phone,
        document_number=customer.document_number,
    )


def build_recipient(subscription: Subscription, **data) -> Recipient:
    payload = {
        "subscription_id": str(subscription.id),
        "plan": subscription.plan.name if subscription.plan else None,
        "next_billing_date": subscription.next_billing_date,
    }
    payload.update(data)
    return Recipient(
        email=subscription.customer.email,
        name=subscription.customer.name,
        merchant_name=subscription.merchant.name,
        data=payload,
    )


def invoice_reference(invoice_id: UUID, attempt: int) -> str:
    return f"INV-{invoice_id.hex[:8].upper()}-{attempt}-{random_suffix(6)}"


def _invoice_number(merchant: Merchant, now: datetime) -> str:
    prefix = "".join(ch for ch in merchant.slug.upper() if ch.isalnum())[:6] or "INV"
    return f"{prefix}-{now:%Y%m%d}-{random_suffix(8)}"


def integrity_problem(subscription: Subscription) -> str | None:
    """Reason a due subscription cannot be charged, or None."""
    if subscription.merchant is None:
        return "merchant_missing"
    if subscription.plan is None:
        return "plan_missing"
    if subscription.customer is None:
        return "customer_missing"
    if subscription.payment_method is None:
        return "payment_method_missing"
    if not subscription.plan.is_active:
        return "plan_inactive"
    if not subscription.payment_method.is_active:
        return "payment_method_inactive"
    if subscription.payment_method.gateway != subscription.merchant.gateway:
        return "payment_method_gateway_mismatch"
    try:
        parse_gateway_credentials(subscription.merchant.gateway, subscription.merchant.gateway_config)
    except ValidationError:
        return "gateway_config_invalid"
    return None


def _due_query(now: datetime):
    return (
        sa.select(Subscription)
        .options(
            joinedload(Subscription.merchant),
            joinedload(Subscription.plan),
            joinedload(Subscription.customer),
            joinedload(Subscription.payment_method),
        )
        .where(
            Subscription.status.in_(BILLABLE_STATUSES),
            Subscription.next_billing_date <= now,
        )
    )


def select_due_subscriptions(db: Session, *, now: datetime, limit: int = 500) -> tuple[list[Subscription], list[dict]]:
    rows = (
        db.execute(_due_query(now).order_by(Subscription.next_billing_date.asc(), Subscription.id.asc()).limit(limit))
        .unique()
        .scalars()
        .all()
    )
    ready: list[Subscription] = []
    anomalies: list[dict] = []
    for sub in rows:
        problem = integrity_problem(sub)
        if problem:
            logger.warning("skipping subscription %s: %s", sub.id, problem)
            anomalies.append({"subscription_id": str(sub.id), "reason": problem})
            continue
        ready.append(sub)
    return (ready, anomalies)


def _advance_subscription(subscription: Subscription, *, plan: Plan) -> None:
    previous = subscription.next_billing_date
    following = next_billing_date(previous, plan.interval, plan.interval_count)
    subscription.current_period_start = previous
    subscription.current_period_end = following
    subscription.next_billing_date = following
    subscription.billing_cycle_count += 1
    if subscription.status in {"trialing", "past_due"}:
        subscription.status = "active"


def apply_charge_outcome(
    db: Session,
    invoice: Invoice,
    result: ChargeResult,
    *,
    now: datetime,
    attempt: InvoiceAttempt | None = None,
) -> dict:
    """Record a charge result on its invoice and subscription.

    Shared by the scheduled pass and gateway webhooks so both converge on the
    same state. ``attempt`` is the dispatched charge the result belongs to: an
    approval for any attempt pays the invoice, a failure only counts for an
    attempt newer than those already counted. Caller commits; the returned
    ``notification`` is meant to be sent after the commit.
    """
    if attempt is not None:
        if result.transaction_id:
            attempt.gateway_transaction_id = result.transaction_id
        attempt.gateway_state = result.gateway_state

    if invoice.status in TERMINAL_INVOICE_STATUSES:
        if result.success and result.transaction_id and result.transaction_id != invoice.gateway_transaction_id:
            logger.warning(
                "invoice %s already %s, extra approval tx=%s needs manual refund",
                invoice.id,
                invoice.status,
                result.transaction_id,
            )
        return {"applied": False, "status": invoice.status, "notification": None}
    if not result.success:
        if attempt is not None and attempt.attempt <= invoice.attempt_count:
            return {"applied": False, "status": invoice.status, "notification": None}
        if (
            attempt is None
            and invoice.status == "failed"
            and result.transaction_id
            and invoice.gateway_transaction_id == result.transaction_id
        ):
            return {"applied": False, "status": invoice.status, "notification": None}

    sub = db.get(Subscription, invoice.subscription_id) if invoice.subscription_id else None
    invoice.gateway_response = result.raw_response or {}
    if result.transaction_id:
        invoice.gateway_transaction_id = result.transaction_id

    if result.success:
        if attempt is not None:
            invoice.gateway_reference = attempt.gateway_reference
        invoice.status = "paid"
        invoice.paid_at = now
        invoice.next_retry_at = None
        invoice.last_error = None
        if sub is not None and sub.next_billing_date == invoice.due_date:
            _advance_subscription(sub, plan=db.get(Plan, sub.plan_id))
        logger.info(
            "invoice %s paid (subscription=%s attempt=%s tx=%s)",
            invoice.id,
            invoice.subscription_id,
            attempt.attempt if attempt is not None else invoice.attempt_count + 1,
            result.transaction_id,
        )
        return {"applied": True, "status": "paid", "notification": "payment_success", "subscription": sub}

    invoice.status = "failed"
    invoice.attempt_count += 1
    invoice.last_error = result.error
    if invoice.attempt_count < settings.BILLING_MAX_ATTEMPTS:
        invoice.next_retry_at = now + timedelta(hours=settings.BILLING_RETRY_HOURS)
    else:
        invoice.next_retry_at = None
        if sub is not None and sub.status in BILLABLE_STATUSES:
            sub.status = "past_due"
            logger.warning("subscription %s past_due after %s failed attempts", sub.id, invoice.attempt_count)
    logger.info(
        "invoice %s failed (subscription=%s attempt=%s state=%s): %s",
        invoice.id,
        invoice.subscription_id,
        invoice.attempt_count,
        result.gateway_state,
        result.error,
    )
    return {"applied": True, "status": "failed", "notification": "payment_failed", "subscription": sub}


def _lock_subscription(db: Session, subscription_id) -> Subscription | None:
    stmt = (
        sa.select(Subscription)
        .where(Subscription.id == subscription_id)
        .with_for_update(skip_locked=True)
    )
    return db.execute(stmt).scalars().first()


def _cycle_invoice(db: Session, subscription: Subscription) -> Invoice | None:
    stmt = sa.select(Invoice).where(
        Invoice.subscription_id == subscription.id,
        Invoice.due_date == subscription.next_billing_date,
    )
    return db.execute(stmt).scalars().first()


def _new_cycle_invoice(subscription: Subscription, *, now: datetime) -> Invoice:
    plan = subscription.plan
    merchant = subscription.merchant
    fee, net = split_amount(plan.price, merchant.platform_fee_percent)
    start = subscription.next_billing_date
    return Invoice(
        id=uuid4(),
        merchant_id=merchant.id,
        subscription_id=subscription.id,
        customer_id=subscription.customer_id,
        invoice_number=_invoice_number(merchant, now),
        amount=plan.price,
        currency=plan.currency,
        platform_fee=fee,
        net_amount=net,
        status="pending",
        gateway=merchant.gateway,
        due_date=start,
        attempt_count=0,
        billing_period_start=start,
        billing_period_end=next_billing_date(start, plan.interval, plan.interval_count),
    )


def _reserve_cycle(db: Session, subscription_id, *, now: datetime, notifier: Notifier | None) -> dict:
    """First transaction: decide what to do and mark the invoice processing."""
    sub = _lock_subscription(db, subscription_id)
    if sub is None:
        return {"status": "skipped", "reason": "locked_or_missing"}
    if sub.status not in BILLABLE_STATUSES or sub.next_billing_date > now:
        return {"status": "skipped", "reason": "not_due"}
    problem = integrity_problem(sub)
    if problem:
        logger.warning("skipping subscription %s: %s", sub.id, problem)
        return {"status": "anomaly", "reason": problem}

    if sub.cancel_at_period_end:
        sub.status = "cancelled"
        sub.cancelled_at = now
        sub.cancellation_reason = sub.cancellation_reason or "cancel_at_period_end"
        db.commit()
        logger.info("subscription %s cancelled at period end", sub.id)
        notify_safely(notifier, "cancellation", build_recipient(sub, effective_at=now))
        return {"status": "cancelled"}

    invoice = _cycle_invoice(db, sub)
    if invoice is not None:
        if invoice.status == "paid":
            _advance_subscription(sub, plan=sub.plan)
            db.commit()
            logger.info("subscription %s advanced from already paid invoice %s", sub.id, invoice.id)
            return {"status": "recovered", "invoice_id": str(invoice.id)}
        if invoice.status == "processing":
            return {"status": "skipped", "reason": "in_flight", "invoice_id": str(invoice.id)}
        if invoice.status in TERMINAL_INVOICE_STATUSES:
            return {"status": "skipped", "reason": f"invoice_{invoice.status}", "invoice_id": str(invoice.id)}
        if invoice.status == "failed":
            if invoice.next_retry_at is None:
                if sub.status != "past_due":
                    sub.status = "past_due"
                    db.commit()
                    logger.warning("subscription %s past_due, retries exhausted", sub.id)
                return {"status": "skipped", "reason": "retries_exhausted", "invoice_id": str(invoice.id)}
            if invoice.next_retry_at > now + timedelta(minutes=settings.BILLING_RETRY_GRACE_MINUTES):
                return {"status": "skipped", "reason": "waiting_retry", "invoice_id": str(invoice.id)}
    else:
        invoice = _new_cycle_invoice(sub, now=now)
        db.add(invoice)
        db.flush()

    attempt = invoice.attempt_count + 1
    merchant = sub.merchant
    invoice.status = "processing"
    invoice.gateway_reference = invoice_reference(invoice.id, attempt)
    db.add(
        InvoiceAttempt(
            invoice_id=invoice.id,
            attempt=attempt,
            gateway=merchant.gateway,
            gateway_reference=invoice.gateway_reference,
        )
    )
    work = {
        "status": "charge",
        "invoice_id": invoice.id,
        "attempt": attempt,
        "gateway": merchant.gateway,
        "config": dict(merchant.gateway_config or {}),
        "token": sub.payment_method.token,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "reference": invoice.gateway_reference,
        "description": f"{sub.plan.name} - {merchant.name}",
        "payer": build_payer(sub.customer),
    }
    db.commit()
    return work


def _dispatch(work: dict) -> ChargeResult:
    try:
        return process_charge(
            work["gateway"],
            work["token"],
            work["amount"],
            work["currency"],
            work["config"],
            reference=work["reference"],
            description=work["description"],
            payer=work["payer"],
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    except Exception as exc:
        logger.exception("unexpected error dispatching %s", work["reference"])
        return ChargeResult(
            success=False,
            gateway=work["gateway"],
            amount=work["amount"],
            currency=work["currency"],
            timestamp=now_utc(),
            gateway_state="error",
            error=f"Error inesperado: {exc}",
        )


def process_subscription(
    session_factory: sessionmaker,
    subscription_id,
    *,
    now: datetime,
    notifier: Notifier | None = None,
) -> dict:
    """Run one billing cycle for one subscription in its own session."""
    db = session_factory()
    try:
        work = _reserve_cycle(db, subscription_id, now=now, notifier=notifier)
        if work["status"] != "charge":
            return work

        result = _dispatch(work)

        invoice = db.get(Invoice, work["invoice_id"], with_for_update=True, populate_existing=True)
        attempt = db.execute(
            sa.select(InvoiceAttempt).where(
                InvoiceAttempt.invoice_id == invoice.id,
                InvoiceAttempt.attempt == work["attempt"],
            )
        ).scalars().first()
        applied = apply_charge_outcome(db, invoice, result, now=now, attempt=attempt)
        db.commit()

        sub = applied.get("subscription")
        if applied["notification"] and sub is not None:
            notify_safely(
                notifier,
                applied["notification"],
                build_recipient(
                    sub,
                    amount=invoice.amount,
                    currency=invoice.currency,
                    invoice_number=invoice.invoice_number,
                    attempt=invoice.attempt_count,
                    error=invoice.last_error,
                ),
            )
        return {
            "status": "successful" if result.success else "failed",
            "invoice_id": str(work["invoice_id"]),
            "result": result.as_dict(),
        }
    except IntegrityError:
        db.rollback()
        logger.warning("subscription %s: cycle invoice created concurrently", subscription_id)
        return {"status": "skipped", "reason": "concurrent_invoice"}
    except Exception as exc:
        db.rollback()
        logger.exception("billing failed for subscription %s", subscription_id)
        return {"status": "error", "error": f"{subscription_id}: {exc}"}
    finally:
        db.close()


def _empty_pass_summary() -> dict:
    return {
        "processed": 0,
        "successful": 0,
        "failed": 0,
        "skipped": 0,
        "cancelled": 0,
        "recovered": 0,
        "anomalies": 0,
        "errors": [],
        "results": {},
    }


def run_billing_pass(
    session_factory: sessionmaker,
    *,
    now: datetime | None = None,
    limit: int | None = None,
    max_workers: int | None = None,
    notifier: Notifier | None = None,
) -> dict:
    now = now or now_utc()
    summary = _empty_pass_summary()
    db = session_factory()
    try:
        ready, anomalies = select_due_subscriptions(db, now=now, limit=limit or settings.BILLING_PASS_LIMIT)
        ids = [sub.id for sub in ready]
    finally:
        db.close()
    summary["anomalies"] = len(anomalies)
    logger.info("billing pass started: due=%s anomalies=%s", len(ids), len(anomalies))

    def _run(subscription_id):
        return subscription_id, process_subscription(session_factory, subscription_id, now=now, notifier=notifier)

    workers = max(int(max_workers or settings.BILLING_MAX_WORKERS), 1)
    if workers > 1 and len(ids) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            outcomes = list(pool.map(_run, ids))
    else:
        outcomes = [_run(sid) for sid in ids]

    for subscription_id, out in outcomes:
        summary["processed"] += 1
        status = out["status"]
        if status in {"successful", "failed", "skipped", "cancelled", "recovered"}:
            summary[status] += 1
        elif status == "anomaly":
            summary["anomalies"] += 1
        else:
            summary["errors"].append(out.get("error") or str(subscription_id))
        if "result" in out:
            summary["results"][str(subscription_id)] = out["result"]

    logger.info(
        "billing pass finished: processed=%s successful=%s failed=%s skipped=%s errors=%s",
        summary["processed"],
        summary["successful"],
        summary["failed"],
        summary["skipped"],
        len(summary["errors"]),
    )
    return summary


def send_renewal_reminders(
    session_factory: sessionmaker,
    *,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> dict:
    now = now or now_utc()
    window_end = now + timedelta(days=settings.RENEWAL_REMINDER_DAYS)
    db = session_factory()
    sent = 0
    try:
        stmt = (
            sa.select(Subscription)
            .options(joinedload(Subscription.merchant), joinedload(Subscription.plan), joinedload(Subscription.customer))
            .where(
                Subscription.status == "active",
                Subscription.cancel_at_period_end.is_(False),
                Subscription.next_billing_date > now,
                Subscription.next_billing_date <= window_end,
                sa.or_(
                    Subscription.last_reminder_for.is_(None),
                    Subscription.last_reminder_for != Subscription.next_billing_date,
                ),
            )
            .limit(settings.BILLING_PASS_LIMIT)
        )
        subs = db.execute(stmt).unique().scalars().all()
        for sub in subs:
            sub.last_reminder_for = sub.next_billing_date
        db.commit()
        for sub in subs:
            amount = sub.plan.price if sub.plan else None
            if notify_safely(notifier, "renewal_reminder", build_recipient(sub, amount=amount)):
                sent += 1
    finally:
        db.close()
    return {"candidates": len(subs), "sent": sent}


def platform_gateway_config() -> dict | None:
    if not settings.PLATFORM_WOMPI_PUBLIC_KEY or not settings.PLATFORM_WOMPI_PRIVATE_KEY:
        return None
    return {
        "public_key": settings.PLATFORM_WOMPI_PUBLIC_KEY,
        "private_key": settings.PLATFORM_WOMPI_PRIVATE_KEY,
        "events_secret": settings.PLATFORM_WOMPI_EVENTS_SECRET,
        "is_production": settings.PLATFORM_WOMPI_IS_PRODUCTION,
    }


def select_merchants_due(db: Session, *, today: date) -> list[Merchant]:
    stmt = (
        sa.select(Merchant)
        .where(
            Merchant.subscription_status == "active",
            Merchant.next_platform_billing.is_not(None),
            Merchant.next_platform_billing <= today,
        )
        .order_by(Merchant.next_platform_billing.asc(), Merchant.id.asc())
        .limit(settings.BILLING_PASS_LIMIT)
    )
    return list(db.execute(stmt).scalars().all())


def _consecutive_platform_failures(db: Session, merchant_id) -> int:
    rows = db.execute(
        sa.select(PlatformInvoice.status)
        .where(PlatformInvoice.merchant_id == merchant_id)
        .order_by(PlatformInvoice.created_at.desc())
        .limit(settings.MERCHANT_MAX_FAILED_CHARGES)
    ).scalars().all()
    count = 0
    for status in rows:
        if status != "failed":
            break
        count += 1
    return count


def charge_merchant(db: Session, merchant_id, *, today: date | None = None, timeout: int | None = None) -> ChargeResult:
    """Bill a merchant's platform subscription through the platform account.

    One attempt per call; the caller commits.
    """
    today = today or today_utc()
    currency = settings.PLATFORM_CURRENCY
    merchant = db.get(Merchant, merchant_id, with_for_update=True)
    if merchant is None:
        return ChargeResult(False, "wompi", 0, currency, now_utc(), "error", error="Merchant no encontrado")

    config = platform_gateway_config()
    if config is None:
        return ChargeResult(False, "wompi", merchant.subscription_price, currency, now_utc(), "error", error="Cuenta de plataforma no configurada")

    reference = f"PLAT-{merchant.id.hex[:8].upper()}-{today:%Y%m%d}-{random_suffix(6)}"
    if not merchant.platform_payment_token:
        result = ChargeResult(
            False,
            "wompi",
            merchant.subscription_price,
            currency,
            now_utc(),
            "error",
            error="Merchant sin metodo de pago registrado",
        )
    else:
        result = process_charge(
            "wompi",
            merchant.platform_payment_token,
            merchant.subscription_price,
            currency,
            config,
            reference=reference,
            description=f"Suscripcion plataforma {merchant.subscription_plan}",
            payer=Payer(customer_id=str(merchant.id), email=merchant.email, name=merchant.name, phone=merchant.phone),
            timeout=timeout,
        )

    db.add(
        PlatformInvoice(
            merchant_id=merchant.id,
            subscription_amount=merchant.subscription_price,
            transaction_fees=0,
            total_amount=merchant.subscription_price,
            currency=currency,
            status=("paid" if result.success else "failed"),
            gateway_reference=reference,
            gateway_transaction_id=result.transaction_id,
            gateway_response=result.raw_response or {},
            last_error=result.error,
            paid_at=(result.timestamp if result.success else None),
            billing_period_start=today,
            billing_period_end=add_months(today, 1),
        )
    )
    db.flush()
    if result.success:
        merchant.next_platform_billing = add_months(today, 1)
        logger.info("merchant %s platform charge approved tx=%s", merchant.id, result.transaction_id)
    else:
        failures = _consecutive_platform_failures(db, merchant.id)
        logger.info("merchant %s platform charge failed (%s consecutive): %s", merchant.id, failures, result.error)
        if failures >= settings.MERCHANT_MAX_FAILED_CHARGES and merchant.subscription_status == "active":
            merchant.subscription_status = "past_due"
            logger.warning("merchant %s moved to past_due", merchant.id)
    return result


def run_merchant_billing(session_factory: sessionmaker, *, today: date | None = None) -> dict:
    today = today or today_utc()
    summary = {"processed": 0, "successful": 0, "failed": 0, "errors": []}
    db = session_factory()
    try:
        merchant_ids = [m.id for m in select_merchants_due(db, today=today)]
    finally:
        db.close()

    for merchant_id in merchant_ids:
        summary["processed"] += 1
        db = session_factory()
        try:
            result = charge_merchant(db, merchant_id, today=today)
            db.commit()
            summary["successful" if result.success else "failed"] += 1
        except Exception as exc:
            db.rollback()
            logger.exception("platform billing failed for merchant %s", merchant_id)
            summary["errors"].append(f"merchant {merchant_id}: {exc}")
        finally:
            db.close()
    return summary


def run_scheduled_billing(
    session_factory: sessionmaker,
    *,
    now: datetime | None = None,
    notifier: Notifier | None = None,
) -> dict:
    now = now or now_utc()
    subscriptions = run_billing_pass(session_factory, now=now, notifier=notifier)
    reminders = send_renewal_reminders(session_factory, now=now, notifier=notifier)
    merchants = run_merchant_billing(session_factory, today=now.date())
    return {
        "subscription_charges": {
            "processed": subscriptions["processed"],
            "successful": subscriptions["successful"],
            "failed": subscriptions["failed"],
            "skipped": subscriptions["skipped"],
            "cancelled": subscriptions["cancelled"],
            "recovered": subscriptions["recovered"],
            "anomalies": subscriptions["anomalies"],
        },
        "merchant_charges": {
            "processed": merchants["processed"],
            "successful": merchants["successful"],
            "failed": merchants["failed"],
        },
        "renewal_reminders": reminders,
        "errors": subscriptions["errors"] + merchants["errors"],
    }


def charge_manually(
    merchant: Merchant,
    *,
    subscription_id: str,
    gateway: str,
    token: str,
    amount: int,
    currency: str = "COP",
    api_key: str | None = None,
    payer: Payer,
) -> dict:
    """One-off charge against a stored token; nothing is persisted."""
    if amount <= 0:
        raise ValueError("amount debe ser mayor a cero")
    config = dict(merchant.gateway_config or {})
    if api_key:
        secret_field = {"payu": "api_key", "wompi": "private_key", "mercadopago": "access_token"}.get(gateway)
        if secret_field:
            config[secret_field] = api_key
    reference = f"SUB-{subscription_id}-{int(now_utc().timestamp() * 1000)}"
    result = process_charge(
        gateway,
        token,
        amount,
        currency,
        config,
        reference=reference,
        description=f"Cobro suscripcion {subscription_id}",
        payer=payer,
    )
    out = {"result": result, "reference": reference}
    if result.success:
        fee, net = split_amount(amount, merchant.platform_fee_percent)
        out.update(platform_fee=fee, net_amount=net)
    return out


def stale_processing_invoices(db: Session, *, now: datetime | None = None) -> list[Invoice]:
    now = now or now_utc()
    cutoff = now - timedelta(minutes=settings.BILLING_PROCESSING_STALE_MINUTES)
    stmt = (
        sa.select(Invoice)
        .where(Invoice.status == "processing", Invoice.updated_at <= cutoff)
        .order_by(Invoice.updated_at.asc())
    )
    return list(db.execute(stmt).scalars().all())

