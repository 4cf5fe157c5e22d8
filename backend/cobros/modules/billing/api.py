from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from cobros.api.deps import get_current_merchant
from cobros.schemas.billing import ChargeTransactionOut, ManualChargeIn, ManualChargeOut
from cobros.services.billing import charge_manually
from cobros.services.gateways.base import Payer

router = APIRouter()

REQUIRED_CHARGE_FIELDS = ("subscription_id", "merchant_id", "gateway", "token", "amount")


@router.post("/charges", response_model=ManualChargeOut)
def manual_charge(payload: ManualChargeIn, current=Depends(get_current_merchant)):
    missing = [name for name in REQUIRED_CHARGE_FIELDS if getattr(payload, name) in (None, "")]
    if missing:
        raise HTTPException(400, f"Faltan campos requeridos: {', '.join(missing)}")
    if payload.merchant_id != str(current.id):
        raise HTTPException(403, "merchant_id no corresponde al token")

    try:
        out = charge_manually(
            current,
            subscription_id=payload.subscription_id,
            gateway=payload.gateway.strip().lower(),
            token=payload.token,
            amount=payload.amount,
            currency=payload.currency,
            api_key=payload.api_key,
            payer=Payer(
                customer_id=payload.subscription_id,
                email=payload.customer_email or current.email,
                name=payload.customer_name or current.name,
            ),
        )
    except ValueError as exc:
        raise HTTPException(400, str(exc))

    result = out["result"]
    if not result.success:
        body = ManualChargeOut(success=False, error=result.error, message="Cobro fallido")
        return JSONResponse(status_code=400, content=body.model_dump(mode="json"))
    return ManualChargeOut(
        success=True,
        message="Cobro procesado",
        transaction=ChargeTransactionOut(
            id=result.transaction_id,
            reference=out["reference"],
            subscription_id=payload.subscription_id,
            amount=result.amount,
            currency=result.currency,
            platform_fee=out["platform_fee"],
            net_amount=out["net_amount"],
            gateway=result.gateway,
            timestamp=result.timestamp,
        ),
    )
