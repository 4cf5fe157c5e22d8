import json
from urllib import parse as urlparse

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cobros.api.deps import get_notifier_dep
from cobros.db.session import get_db
from cobros.schemas.billing import GatewayWebhookOut
from cobros.services.notifications import notify_safely
from cobros.services.webhooks import ingest_webhook_event

router = APIRouter()


def _parse_body(raw: bytes, content_type: str) -> dict:
    text = raw.decode("utf-8", errors="replace")
    if "application/x-www-form-urlencoded" in content_type:
        return {k: v for k, v in urlparse.parse_qsl(text, keep_blank_values=True)}
    payload = json.loads(text)
    if not isinstance(payload, dict):
        raise ValueError("Payload JSON invalido")
    return payload


async def raw_body(request: Request) -> bytes:
    return await request.body()


# Runs in the threadpool; MercadoPago notices make a blocking status query
@router.post("/{gateway}", response_model=GatewayWebhookOut)
def gateway_webhook(
    gateway: str,
    request: Request,
    raw: bytes = Depends(raw_body),
    db: Session = Depends(get_db),
    notifier=Depends(get_notifier_dep),
):
    try:
        payload = _parse_body(raw, request.headers.get("content-type") or "")
    except ValueError:
        raise HTTPException(400, "Payload JSON invalido")

    try:
        out = ingest_webhook_event(db, gateway=gateway, payload=payload, headers=request.headers, raw_body=raw)
        db.commit()
    except PermissionError as exc:
        db.rollback()
        raise HTTPException(401, str(exc))
    except ValueError as exc:
        db.rollback()
        raise HTTPException(400, str(exc))
    except IntegrityError:
        db.rollback()
        raise HTTPException(409, "Evento en proceso")

    notification = out.pop("notification", None)
    if notification:
        notify_safely(notifier, notification[0], notification[1])
    return GatewayWebhookOut(**out)
