from __future__ import annotations

import logging

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cobros.core.config import settings
from cobros.core.security import now_utc
from cobros.models import GatewayWebhookEvent, Invoice, InvoiceAttempt, Merchant, PlatformInvoice, Subscription
from cobros.schemas.gateways import parse_gateway_credentials
from cobros.services.billing import apply_charge_outcome, build_recipient, platform_gateway_config
from cobros.services.charges import result_from_outcome
from cobros.services.gateways.base import ChargeOutcome, WebhookNotice
from cobros.services.gateways.registry import SUPPORTED_GATEWAYS, get_gateway_adapter

logger = logging.getLogger(__name__)

PLATFORM_REFERENCE_PREFIX = "PLAT-"


def _normalize_gateway(gateway: str | None) -> str:
    code = (gateway or "").strip().lower()
    if code not in SUPPORTED_GATEWAYS:
        raise ValueError("gateway invalido")
    return code


def _find_attempt(db: Session, gateway: str, notice: WebhookNotice) -> InvoiceAttempt | None:
    if notice.reference:
        row = (
            db.execute(sa.select(InvoiceAttempt).where(InvoiceAttempt.gateway_reference == notice.reference))
            .scalars()
            .first()
        )
        if row is not None:
            return row
    if notice.transaction_id:
        return (
            db.execute(
                sa.select(InvoiceAttempt).where(
                    InvoiceAttempt.gateway == gateway,
                    InvoiceAttempt.gateway_transaction_id == notice.transaction_id,
                )
            )
            .scalars()
            .first()
        )
    return None


def _find_invoice(db: Session, gateway: str, notice: WebhookNotice) -> tuple[Invoice | None, InvoiceAttempt | None]:
    attempt = _find_attempt(db, gateway, notice)
    if attempt is not None:
        return (db.get(Invoice, attempt.invoice_id), attempt)
    if notice.reference:
        row = db.execute(sa.select(Invoice).where(Invoice.gateway_reference == notice.reference)).scalars().first()
        if row is not None:
            return (row, None)
    if notice.transaction_id:
        row = (
            db.execute(
                sa.select(Invoice).where(
                    Invoice.gateway == gateway,
                    Invoice.gateway_transaction_id == notice.transaction_id,
                )
            )
            .scalars()
            .first()
        )
        return (row, None)
    return (None, None)


def _find_platform_invoice(db: Session, notice: WebhookNotice) -> PlatformInvoice | None:
    if notice.reference and notice.reference.startswith(PLATFORM_REFERENCE_PREFIX):
        return (
            db.execute(sa.select(PlatformInvoice).where(PlatformInvoice.gateway_reference == notice.reference))
            .scalars()
            .first()
        )
    return None


def _credentials_for(db: Session, gateway: str, invoice: Invoice | None, platform_invoice: PlatformInvoice | None):
    try:
        if platform_invoice is not None:
            config = platform_gateway_config()
            return parse_gateway_credentials("wompi", config) if config else None
        if invoice is not None:
            merchant = db.get(Merchant, invoice.merchant_id)
            if merchant is None or merchant.gateway != gateway:
                return None
            return parse_gateway_credentials(gateway, merchant.gateway_config)
    except ValidationError:
        logger.warning("webhook %s: stored credentials invalid", gateway)
    return None


def _apply_platform_outcome(db: Session, platform_invoice: PlatformInvoice, outcome: ChargeOutcome) -> bool:
    if platform_invoice.status == "paid":
        return False
    if outcome.success:
        platform_invoice.status = "paid"
        platform_invoice.paid_at = now_utc()
        platform_invoice.last_error = None
        if outcome.transaction_id:
            platform_invoice.gateway_transaction_id = outcome.transaction_id
        merchant = db.get(Merchant, platform_invoice.merchant_id)
        if merchant is not None:
            current = merchant.next_platform_billing
            if current is None or current < platform_invoice.billing_period_end:
                merchant.next_platform_billing = platform_invoice.billing_period_end
        return True
    if platform_invoice.status == "pending":
        platform_invoice.status = "failed"
        platform_invoice.last_error = outcome.error_message
        return True
    return False


def ingest_webhook_event(db: Session, *, gateway: str, payload: dict, headers, raw_body: bytes) -> dict:
    """Verify, record and apply one gateway notification.

    Returns a summary dict; ``notification`` holds a (type, recipient) pair to
    send once the caller has committed. Raises PermissionError on a bad
    signature and ValueError on malformed payloads.
    """
    code = _normalize_gateway(gateway)
    adapter = get_gateway_adapter(code)
    notice = adapter.parse_webhook(payload)

    platform_invoice = _find_platform_invoice(db, notice) if code == "wompi" else None
    invoice, attempt = _find_invoice(db, code, notice) if platform_invoice is None else (None, None)
    credentials = _credentials_for(db, code, invoice, platform_invoice)

    if credentials is not None:
        if not adapter.verify_webhook(payload, headers, raw_body, credentials):
            logger.warning("webhook %s event=%s rejected: bad signature", code, notice.event_id)
            raise PermissionError("Firma de webhook invalida")
    elif settings.BILLING_REQUIRE_WEBHOOK_SIGNATURE and (invoice is not None or platform_invoice is not None):
        raise PermissionError("Firma de webhook invalida")

    existing = db.execute(
        sa.select(GatewayWebhookEvent).where(
            GatewayWebhookEvent.gateway == code,
            GatewayWebhookEvent.event_id == notice.event_id,
        )
    ).scalars().first()
    if existing is not None and existing.status != "error":
        return {
            "gateway": code,
            "event_id": notice.event_id,
            "duplicate": True,
            "processed": existing.status in ("processed", "ignored"),
            "status": existing.status,
            "notification": None,
        }

    # A status query that could not reach the gateway leaves the event retryable
    event = existing
    if event is None:
        event = GatewayWebhookEvent(
            gateway=code,
            event_id=notice.event_id,
            event_type=notice.event_type,
            reference=notice.reference,
            transaction_id=notice.transaction_id,
            payload=payload,
            status="received",
        )
        db.add(event)
        db.flush()

    final_status = "ignored"
    notification = None
    if credentials is not None:
        queried = notice.state is None and bool(notice.transaction_id)
        if queried:
            outcome = adapter.transaction_status(notice.transaction_id, credentials, timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        else:
            outcome = ChargeOutcome(
                success=(notice.state == "approved"),
                gateway_state=notice.state or "error",
                transaction_id=notice.transaction_id,
                error_message=notice.error_message,
                raw_response=payload,
            )

        if queried and outcome.gateway_state == "error":
            final_status = "error"
            logger.warning("webhook %s event=%s: status query failed: %s", code, notice.event_id, outcome.error_message)
        elif outcome.gateway_state == "pending":
            final_status = "ignored"
        elif platform_invoice is not None:
            final_status = "processed" if _apply_platform_outcome(db, platform_invoice, outcome) else "ignored"
        else:
            result = result_from_outcome(code, invoice.amount, invoice.currency, outcome)
            applied = apply_charge_outcome(db, invoice, result, now=now_utc(), attempt=attempt)
            if applied["applied"]:
                final_status = "processed"
                sub = applied.get("subscription")
                if applied["notification"] and isinstance(sub, Subscription):
                    notification = (
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

    event.status = final_status
    event.processed_at = now_utc()
    logger.info("webhook %s event=%s type=%s status=%s", code, notice.event_id, notice.event_type, final_status)
    return {
        "gateway": code,
        "event_id": notice.event_id,
        "duplicate": False,
        "processed": final_status == "processed",
        "status": final_status,
        "notification": notification,
    }
