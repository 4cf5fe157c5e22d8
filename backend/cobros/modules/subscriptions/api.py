from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cobros.api.deps import get_current_merchant, get_notifier_dep
from cobros.db.session import get_db
from cobros.schemas.billing import (
    InvoiceOut,
    RegisterTokenIn,
    SubscriptionActionIn,
    SubscriptionDetailOut,
    SubscriptionOut,
)
from cobros.services.billing import build_recipient
from cobros.services.notifications import notify_safely
from cobros.services.subscriptions import get_subscription, manage_subscription, recent_invoices, register_token

router = APIRouter()


def _detail(db: Session, sub) -> SubscriptionDetailOut:
    return SubscriptionDetailOut(
        subscription=SubscriptionOut.model_validate(sub),
        invoices=[InvoiceOut.model_validate(inv) for inv in recent_invoices(db, sub, limit=10)],
    )


@router.post("/tokens", response_model=SubscriptionOut, status_code=201)
def register_subscription_token(
    payload: RegisterTokenIn,
    current=Depends(get_current_merchant),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier_dep),
):
    try:
        sub = register_token(
            db,
            current,
            plan_id=payload.plan_id,
            customer=payload.customer.model_dump(),
            token=payload.token,
            last_four=payload.last_four,
            brand=payload.brand,
            exp_month=payload.exp_month,
            exp_year=payload.exp_year,
            cardholder_name=payload.cardholder_name,
        )
    except LookupError as exc:
        db.rollback()
        raise HTTPException(404, str(exc))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    db.commit()
    notify_safely(notifier, "welcome", build_recipient(sub))
    return SubscriptionOut.model_validate(sub)


@router.get("/{subscription_id}", response_model=SubscriptionDetailOut)
def read_subscription(subscription_id: UUID, current=Depends(get_current_merchant), db: Session = Depends(get_db)):
    try:
        sub = get_subscription(db, current, subscription_id)
    except LookupError as exc:
        raise HTTPException(404, str(exc))
    return _detail(db, sub)


def _apply_action(db: Session, current, subscription_id: UUID, payload: SubscriptionActionIn, notifier):
    try:
        sub = manage_subscription(
            db,
            current,
            subscription_id,
            action=payload.action,
            reason=payload.reason,
            plan_id=payload.plan_id,
        )
    except LookupError as exc:
        db.rollback()
        raise HTTPException(404, str(exc))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    db.commit()
    if payload.action in {"cancel", "cancel_immediately"}:
        notify_safely(
            notifier,
            "cancellation",
            build_recipient(sub, reason=sub.cancellation_reason, immediate=(payload.action == "cancel_immediately")),
        )
    return _detail(db, sub)


@router.patch("/{subscription_id}", response_model=SubscriptionDetailOut)
def update_subscription(
    subscription_id: UUID,
    payload: SubscriptionActionIn,
    current=Depends(get_current_merchant),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier_dep),
):
    return _apply_action(db, current, subscription_id, payload, notifier)


@router.delete("/{subscription_id}", response_model=SubscriptionDetailOut)
def delete_subscription(
    subscription_id: UUID,
    current=Depends(get_current_merchant),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier_dep),
):
    payload = SubscriptionActionIn(action="cancel_immediately", reason="deleted_by_merchant")
    return _apply_action(db, current, subscription_id, payload, notifier)
