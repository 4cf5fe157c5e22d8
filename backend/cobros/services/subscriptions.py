from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
import logging

import sqlalchemy as sa
from pydantic import ValidationError
from sqlalchemy.orm import Session

from cobros.core.config import settings
from cobros.core.security import now_utc
from cobros.models import Customer, Invoice, Merchant, PaymentMethod, Plan, Subscription
from cobros.schemas.gateways import mask_credentials, parse_gateway_credentials
from cobros.services.audit import audit
from cobros.services.billing_dates import next_billing_date
from cobros.services.fees import DEFAULT_PLATFORM_FEE_PERCENT
from cobros.services.gateways.base import CardData, Payer
from cobros.services.gateways.registry import get_gateway_adapter

logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIONS = ("pause", "resume", "cancel", "cancel_immediately", "change_plan")


def get_merchant_by_slug(db: Session, slug: str) -> Merchant:
    merchant = db.execute(sa.select(Merchant).where(Merchant.slug == slug)).scalars().first()
    if merchant is None:
        raise LookupError("Merchant no encontrado")
    return merchant


def list_public_plans(db: Session, merchant: Merchant) -> list[Plan]:
    stmt = (
        sa.select(Plan)
        .where(Plan.merchant_id == merchant.id, Plan.is_active.is_(True), Plan.is_public.is_(True))
        .order_by(Plan.price.asc(), Plan.name.asc())
    )
    return list(db.execute(stmt).scalars().all())


def _active_plan(db: Session, merchant: Merchant, plan_id) -> Plan:
    plan = db.get(Plan, plan_id)
    if plan is None or plan.merchant_id != merchant.id:
        raise LookupError("Plan no encontrado")
    if not plan.is_active:
        raise ValueError("El plan no esta activo")
    return plan


def _upsert_customer(db: Session, merchant: Merchant, *, email: str, name: str, phone: str | None, document_type: str | None, document_number: str | None) -> Customer:
    email_norm = email.strip().lower()
    customer = db.execute(
        sa.select(Customer).where(Customer.merchant_id == merchant.id, Customer.email == email_norm)
    ).scalars().first()
    if customer is None:
        customer = Customer(merchant_id=merchant.id, email=email_norm, name=name.strip())
        db.add(customer)
    else:
        customer.name = name.strip() or customer.name
    if phone:
        customer.phone = phone
    if document_type:
        customer.document_type = document_type
    if document_number:
        customer.document_number = document_number
    db.flush()
    return customer


def _store_payment_method(
    db: Session,
    merchant: Merchant,
    customer: Customer,
    *,
    token: str,
    last_four: str | None,
    brand: str | None,
    exp_month: int | None,
    exp_year: int | None,
    holder: str | None,
) -> PaymentMethod:
    db.execute(
        sa.update(PaymentMethod)
        .where(PaymentMethod.customer_id == customer.id, PaymentMethod.is_default.is_(True))
        .values(is_default=False)
    )
    method = PaymentMethod(
        merchant_id=merchant.id,
        customer_id=customer.id,
        gateway=merchant.gateway,
        token=token,
        card_last_four=last_four,
        card_brand=brand,
        card_exp_month=exp_month,
        card_exp_year=exp_year,
        cardholder_name=holder,
        is_default=True,
        is_active=True,
    )
    db.add(method)
    db.flush()
    customer.default_payment_method_id = method.id
    return method


def _start_subscription(db: Session, merchant: Merchant, plan: Plan, customer: Customer, method: PaymentMethod, *, now: datetime) -> Subscription:
    if plan.trial_days > 0:
        trial_end = now + timedelta(days=plan.trial_days)
        sub = Subscription(
            merchant_id=merchant.id,
            customer_id=customer.id,
            plan_id=plan.id,
            payment_method_id=method.id,
            status="trialing",
            current_period_start=now,
            current_period_end=trial_end,
            next_billing_date=trial_end,
            trial_end=trial_end,
        )
    else:
        first_charge = next_billing_date(now, plan.interval, plan.interval_count)
        sub = Subscription(
            merchant_id=merchant.id,
            customer_id=customer.id,
            plan_id=plan.id,
            payment_method_id=method.id,
            status="active",
            current_period_start=now,
            current_period_end=first_charge,
            next_billing_date=first_charge,
        )
    db.add(sub)
    db.flush()
    return sub


def subscribe(
    db: Session,
    merchant: Merchant,
    *,
    plan_id,
    customer: dict,
    card: CardData,
    now: datetime | None = None,
) -> Subscription:
    """Tokenize a card and start a subscription. Nothing is written when tokenization fails."""
    now = now or now_utc()
    if not (customer.get("email") or "").strip() or not (customer.get("name") or "").strip():
        raise ValueError("customer.email y customer.name son requeridos")
    if not card.digits:
        raise ValueError("card.number es requerido")
    plan = _active_plan(db, merchant, plan_id)

    adapter = get_gateway_adapter(merchant.gateway)
    if adapter is None:
        raise ValueError(f"Gateway no soportado: {merchant.gateway}")
    try:
        credentials = parse_gateway_credentials(merchant.gateway, merchant.gateway_config)
    except ValidationError:
        raise ValueError("El merchant no tiene credenciales de gateway validas")

    payer = Payer(
        customer_id=customer["email"].strip().lower(),
        email=customer["email"].strip().lower(),
        name=customer["name"].strip(),
        phone=customer.get("phone"),
        document_number=customer.get("document_number"),
    )
    token = adapter.tokenize(card, credentials, payer=payer, timeout=settings.GATEWAY_TIMEOUT_SECONDS)
    if not token.success:
        raise ValueError(token.error or "No se pudo tokenizar la tarjeta")

    row = _upsert_customer(
        db,
        merchant,
        email=customer["email"],
        name=customer["name"],
        phone=customer.get("phone"),
        document_type=customer.get("document_type"),
        document_number=customer.get("document_number"),
    )
    method = _store_payment_method(
        db,
        merchant,
        row,
        token=token.token,
        last_four=token.last_four,
        brand=token.display_brand,
        exp_month=token.exp_month,
        exp_year=token.exp_year,
        holder=card.holder_name,
    )
    sub = _start_subscription(db, merchant, plan, row, method, now=now)
    audit(db, f"merchant:{merchant.id}", "subscription", sub.id, "subscribed", {"plan_id": str(plan.id), "status": sub.status})
    logger.info("subscription %s created for merchant %s status=%s", sub.id, merchant.id, sub.status)
    return sub


def register_token(
    db: Session,
    merchant: Merchant,
    *,
    plan_id,
    customer: dict,
    token: str,
    last_four: str | None = None,
    brand: str | None = None,
    exp_month: int | None = None,
    exp_year: int | None = None,
    cardholder_name: str | None = None,
    now: datetime | None = None,
) -> Subscription:
    """Start a subscription from a token obtained by the gateway's own checkout."""
    now = now or now_utc()
    if not token or not token.strip():
        raise ValueError("token es requerido")
    if not (customer.get("email") or "").strip() or not (customer.get("name") or "").strip():
        raise ValueError("customer.email y customer.name son requeridos")
    plan = _active_plan(db, merchant, plan_id)
    row = _upsert_customer(
        db,
        merchant,
        email=customer["email"],
        name=customer["name"],
        phone=customer.get("phone"),
        document_type=customer.get("document_type"),
        document_number=customer.get("document_number"),
    )
    method = _store_payment_method(
        db,
        merchant,
        row,
        token=token.strip(),
        last_four=last_four,
        brand=brand,
        exp_month=exp_month,
        exp_year=exp_year,
        holder=cardholder_name,
    )
    sub = _start_subscription(db, merchant, plan, row, method, now=now)
    audit(db, f"merchant:{merchant.id}", "subscription", sub.id, "token_registered", {"plan_id": str(plan.id)})
    return sub


def get_subscription(db: Session, merchant: Merchant, subscription_id) -> Subscription:
    sub = db.get(Subscription, subscription_id)
    if sub is None or sub.merchant_id != merchant.id:
        raise LookupError("Suscripcion no encontrada")
    return sub


def recent_invoices(db: Session, subscription: Subscription, *, limit: int = 10) -> list[Invoice]:
    stmt = (
        sa.select(Invoice)
        .where(Invoice.subscription_id == subscription.id)
        .order_by(Invoice.created_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def manage_subscription(
    db: Session,
    merchant: Merchant,
    subscription_id,
    *,
    action: str,
    reason: str | None = None,
    plan_id=None,
    now: datetime | None = None,
) -> Subscription:
    now = now or now_utc()
    if action not in SUBSCRIPTION_ACTIONS:
        raise ValueError("accion invalida")
    sub = get_subscription(db, merchant, subscription_id)

    if action == "pause":
        if sub.status != "active":
            raise ValueError("Solo se pueden pausar suscripciones activas")
        sub.status = "paused"
    elif action == "resume":
        if sub.status != "paused":
            raise ValueError("Solo se pueden reanudar suscripciones pausadas")
        sub.status = "active"
    elif action == "cancel":
        if sub.status == "cancelled":
            raise ValueError("La suscripcion ya esta cancelada")
        sub.cancel_at_period_end = True
        sub.cancellation_reason = reason or "cancelled_by_merchant"
    elif action == "cancel_immediately":
        if sub.status == "cancelled":
            raise ValueError("La suscripcion ya esta cancelada")
        sub.status = "cancelled"
        sub.cancelled_at = now
        sub.cancellation_reason = reason or "cancelled_by_merchant"
    elif action == "change_plan":
        if plan_id is None:
            raise ValueError("plan_id es requerido")
        if sub.status == "cancelled":
            raise ValueError("La suscripcion esta cancelada")
        plan = _active_plan(db, merchant, plan_id)
        sub.plan_id = plan.id
        sub.plan = plan

    db.flush()
    audit(db, f"merchant:{merchant.id}", "subscription", sub.id, action, {"reason": reason, "status": sub.status})
    logger.info("subscription %s %s -> status=%s", sub.id, action, sub.status)
    return sub


def set_gateway_config(db: Session, merchant: Merchant, *, credentials, platform_fee_percent=None) -> dict:
    """Store validated credentials; ``credentials`` is a parsed credentials model."""
    merchant.gateway = credentials.gateway
    merchant.gateway_config = credentials.model_dump(by_alias=False, exclude={"gateway"})
    if platform_fee_percent is not None:
        merchant.platform_fee_percent = Decimal(str(platform_fee_percent))
    audit(db, f"merchant:{merchant.id}", "merchant", merchant.id, "gateway_config_updated", {"gateway": merchant.gateway})
    return gateway_config_view(merchant)


def gateway_config_view(merchant: Merchant) -> dict:
    try:
        credentials = parse_gateway_credentials(merchant.gateway, merchant.gateway_config)
        masked = mask_credentials(credentials)
    except ValidationError:
        masked = {"gateway": merchant.gateway, "configured": False}
    fee = merchant.platform_fee_percent
    return {
        "gateway": merchant.gateway,
        "credentials": masked,
        "platform_fee_percent": float(fee if fee is not None else DEFAULT_PLATFORM_FEE_PERCENT),
    }
