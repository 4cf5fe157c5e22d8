from uuid import UUID

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from cobros.core.config import settings
from cobros.core.security import constant_time_equals, decode_token
from cobros.db.session import SessionLocal, get_db
from cobros.models.merchant import Merchant
from cobros.services.notifications import Notifier, get_notifier

bearer = HTTPBearer()


def get_current_merchant(
    creds: HTTPAuthorizationCredentials = Depends(bearer),
    db: Session = Depends(get_db),
) -> Merchant:
    try:
        payload = decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Token invalido")
    if payload.get("type") != "merchant_api":
        raise HTTPException(status_code=401, detail="Tipo de token invalido")
    merchant = db.get(Merchant, _uuid_or_401(payload.get("sub")))
    if not merchant:
        raise HTTPException(status_code=401, detail="Merchant no encontrado")
    if merchant.subscription_status == "cancelled":
        raise HTTPException(status_code=403, detail="Merchant cancelado")
    return merchant


def _uuid_or_401(value):
    try:
        return UUID(str(value))
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Token invalido")


def get_session_factory():
    return SessionLocal


def get_notifier_dep() -> Notifier:
    return get_notifier()


def require_cron(request: Request) -> str:
    auth = request.headers.get("authorization") or ""
    if settings.CRON_SECRET and auth.startswith("Bearer ") and constant_time_equals(auth[7:], settings.CRON_SECRET):
        return "secret"
    header = (settings.CRON_PLATFORM_HEADER or "").strip()
    if header and request.headers.get(header) == "1":
        return "platform"
    raise HTTPException(status_code=401, detail="No autorizado")
