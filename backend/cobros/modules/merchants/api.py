from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from cobros.api.deps import get_current_merchant, get_notifier_dep
from cobros.db.session import get_db
from cobros.schemas.billing import PlanOut, SubscribeIn, SubscriptionOut
from cobros.schemas.gateways import GatewayConfigIn, GatewayConfigOut
from cobros.services.billing import build_recipient
from cobros.services.gateways.base import CardData
from cobros.services.notifications import notify_safely
from cobros.services.subscriptions import (
    gateway_config_view,
    get_merchant_by_slug,
    list_public_plans,
    set_gateway_config,
    subscribe,
)

router = APIRouter()


@router.get("/me/gateway", response_model=GatewayConfigOut)
def read_gateway_config(current=Depends(get_current_merchant)):
    return GatewayConfigOut(**gateway_config_view(current))


@router.put("/me/gateway", response_model=GatewayConfigOut)
def write_gateway_config(payload: GatewayConfigIn, current=Depends(get_current_merchant), db: Session = Depends(get_db)):
    out = set_gateway_config(
        db,
        current,
        credentials=payload.credentials,
        platform_fee_percent=payload.platform_fee_percent,
    )
    db.commit()
    return GatewayConfigOut(**out)


@router.get("/{slug}/plans", response_model=list[PlanOut])
def public_plans(slug: str, db: Session = Depends(get_db)):
    try:
        merchant = get_merchant_by_slug(db, slug)
    except LookupError as exc:
        raise HTTPException(404, str(exc))
    return [PlanOut.model_validate(p) for p in list_public_plans(db, merchant)]


@router.post("/{slug}/subscribe", response_model=SubscriptionOut, status_code=201)
def subscribe_customer(
    slug: str,
    payload: SubscribeIn,
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier_dep),
):
    try:
        merchant = get_merchant_by_slug(db, slug)
        sub = subscribe(
            db,
            merchant,
            plan_id=payload.plan_id,
            customer=payload.customer.model_dump(),
            card=CardData(
                number=payload.card.number,
                exp_month=payload.card.exp_month,
                exp_year=payload.card.exp_year,
                cvc=payload.card.cvc,
                holder_name=payload.card.holder_name,
                document_number=payload.customer.document_number,
            ),
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
